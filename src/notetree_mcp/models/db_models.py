"""SQLAlchemy database models for the NoteTree MCP server."""
import datetime
import threading
from typing import Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notetree_mcp.config import config

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBProject(Base):
    """Database model for a project."""
    __tablename__ = "projects"
    id = Column(String(255), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.now, nullable=False)

    def __repr__(self) -> str:
        return f"<Project(id='{self.id}', name='{self.name}')>"


class DBNode(Base):
    """Database model for a node in a project's tree.

    ``parent_id`` is not a foreign key: children outlive their
    parent when promoted, and the validator must cope with dangling
    references in a damaged store.
    """
    __tablename__ = "nodes"
    id = Column(String(255), primary_key=True, index=True)
    project_id = Column(
        String(255), ForeignKey("projects.id"), nullable=False, index=True
    )
    parent_id = Column(String(255), nullable=True, index=True)
    # Exact rational text, e.g. "3" or "-1/2" (see models.order_keys)
    order_key = Column(String(64), default="0", nullable=False)
    content = Column(Text, nullable=False, default="")
    url = Column(Text, nullable=True)
    link_text = Column(Text, nullable=True)
    youtube_link = Column(Text, nullable=True)
    time_marker = Column(String(64), nullable=True)
    is_discussion = Column(Boolean, default=False, nullable=False)
    images_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.now, nullable=False)

    __table_args__ = (
        Index("ix_nodes_project_parent", "project_id", "parent_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Node(id='{self.id}', parent='{self.parent_id}', "
            f"order='{self.order_key}')>"
        )


def create_db_engine(db_url: Optional[str] = None, timeout: Optional[float] = None) -> Engine:
    """Create an engine with the SQLite settings the tree store relies on.

    In-memory URLs get a ``StaticPool`` so every session sees the same
    database. File databases use WAL with ``NORMAL`` synchronous mode and a
    small ``QueuePool``. The busy timeout bounds how long any statement
    waits on a lock before failing with a retryable error.
    """
    url = db_url or config.get_db_url()
    busy_timeout = timeout if timeout is not None else config.store_timeout
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=busy_timeout,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
        cursor.close()

    return engine


_engine_locks: Dict[Engine, threading.RLock] = {}
_engine_locks_guard = threading.Lock()


def get_engine_lock(engine: Engine) -> threading.RLock:
    """Re-entrant lock shared by every repository bound to ``engine``.

    In-memory engines hand the same SQLite connection to every session, so
    sessions from different threads must not interleave.
    """
    with _engine_locks_guard:
        lock = _engine_locks.get(engine)
        if lock is None:
            lock = _engine_locks[engine] = threading.RLock()
        return lock


def init_db(db_url: Optional[str] = None) -> Engine:
    """Create the engine and make sure both tables exist."""
    engine = create_db_engine(db_url)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
