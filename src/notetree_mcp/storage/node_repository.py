"""Repository for node storage and retrieval."""

import json
import logging
from typing import Any, ContextManager, List, Optional, Sequence

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from notetree_mcp.models.db_models import (
    DBNode,
    get_engine_lock,
    get_session_factory,
    init_db,
)
from notetree_mcp.models.order_keys import from_storage, to_storage
from notetree_mcp.models.schema import Node, ensure_timezone_aware, utc_now
from notetree_mcp.storage.base import NodeStore, translated_session

logger = logging.getLogger(__name__)

_DESCENDANTS_SQL = text(
    """
    WITH RECURSIVE descendants(id) AS (
        SELECT id FROM nodes WHERE parent_id = :root_id
        UNION
        SELECT n.id FROM nodes n JOIN descendants d ON n.parent_id = d.id
    )
    SELECT id FROM descendants
    """
)


class NodeRepository(NodeStore):
    """SQLite-backed node store.

    Sibling groups are sorted in Python because order keys are stored as
    exact rational text. All access goes through one re-entrant lock:
    in-memory databases share a single connection, and the import
    pipeline calls in from worker threads.
    """

    def __init__(self, engine: Optional[Any] = None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None, one is
                created from config via init_db().
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        self._lock = get_engine_lock(self.engine)
        logger.info("NodeRepository initialized")

    def _session(self, operation: str) -> ContextManager[Session]:
        return translated_session(self.session_factory, self._lock, operation)

    # ---- conversion ------------------------------------------------------

    @staticmethod
    def _db_node_to_model(db_node: DBNode) -> Node:
        images: List[str] = []
        if db_node.images_json:
            try:
                loaded = json.loads(db_node.images_json)
                images = [i for i in loaded if isinstance(i, str)]
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Ignoring unreadable image list on node {db_node.id}")
        return Node(
            id=db_node.id,
            project_id=db_node.project_id,
            parent_id=db_node.parent_id,
            order=from_storage(db_node.order_key),
            content=db_node.content or "",
            url=db_node.url,
            link_text=db_node.link_text,
            youtube_link=db_node.youtube_link,
            time_marker=db_node.time_marker,
            is_discussion=bool(db_node.is_discussion),
            images=images,
            created_at=ensure_timezone_aware(db_node.created_at),
            updated_at=ensure_timezone_aware(db_node.updated_at),
        )

    @staticmethod
    def _apply_to_db(db_node: DBNode, node: Node) -> None:
        db_node.project_id = node.project_id
        db_node.parent_id = node.parent_id
        db_node.order_key = to_storage(node.order)
        db_node.content = node.content
        db_node.url = node.url
        db_node.link_text = node.link_text
        db_node.youtube_link = node.youtube_link
        db_node.time_marker = node.time_marker
        db_node.is_discussion = node.is_discussion
        db_node.images_json = json.dumps(node.images) if node.images else None
        db_node.created_at = node.created_at
        db_node.updated_at = node.updated_at

    def _upsert(self, session: Session, node: Node) -> None:
        db_node = session.get(DBNode, node.id)
        if db_node is None:
            db_node = DBNode(id=node.id)
            session.add(db_node)
        self._apply_to_db(db_node, node)

    # ---- NodeStore -------------------------------------------------------

    def get(self, id: str) -> Optional[Node]:
        with self._session("get") as session:
            db_node = session.get(DBNode, id)
            if db_node is None:
                return None
            return self._db_node_to_model(db_node)

    def get_siblings(self, project_id: str, parent_id: Optional[str]) -> List[Node]:
        with self._session("get_siblings") as session:
            query = select(DBNode).where(DBNode.project_id == project_id)
            if parent_id is None:
                query = query.where(DBNode.parent_id.is_(None))
            else:
                query = query.where(DBNode.parent_id == parent_id)
            nodes = [self._db_node_to_model(row) for row in session.scalars(query)]
        return sorted(nodes, key=Node.sort_key)

    def put(self, node: Node) -> Node:
        node.updated_at = utc_now()
        with self._session("put") as session:
            self._upsert(session, node)
            session.commit()
        return node

    def put_many(self, nodes: Sequence[Node]) -> int:
        if not nodes:
            return 0
        now = utc_now()
        with self._session("put_many") as session:
            for node in nodes:
                node.updated_at = now
                self._upsert(session, node)
            # Single commit point: the whole batch lands or none of it
            session.commit()
        return len(nodes)

    def delete_many(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        with self._session("delete_many") as session:
            result = session.execute(
                DBNode.__table__.delete().where(DBNode.id.in_(list(ids)))
            )
            session.commit()
            deleted = result.rowcount or 0
        logger.debug(f"Deleted {deleted} nodes")
        return deleted

    def get_descendant_ids(self, id: str) -> List[str]:
        with self._session("get_descendant_ids") as session:
            rows = session.execute(_DESCENDANTS_SQL, {"root_id": id}).scalars().all()
        # A damaged store can loop back to the root; never report it as its own descendant
        return [row for row in rows if row != id]

    def list_project(self, project_id: str) -> List[Node]:
        with self._session("list_project") as session:
            rows = session.scalars(
                select(DBNode).where(DBNode.project_id == project_id)
            )
            return [self._db_node_to_model(row) for row in rows]

    def get_parent_ids(self, project_id: str) -> List[Optional[str]]:
        with self._session("get_parent_ids") as session:
            parents = set(
                session.scalars(
                    select(DBNode.parent_id)
                    .where(DBNode.project_id == project_id)
                    .distinct()
                )
            )
        ordered: List[Optional[str]] = [None] if None in parents else []
        ordered.extend(sorted(p for p in parents if p is not None))
        return ordered
