"""Storage contracts for the NoteTree engine."""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from notetree_mcp.exceptions import (
    ErrorCode,
    NotFoundError,
    StorageError,
    TransientStoreError,
)
from notetree_mcp.models.schema import Node

T = TypeVar("T")

# SQLite messages that mean "try again later" rather than "this will never work"
_TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy")


@contextmanager
def translated_session(
    session_factory: Callable[[], Session],
    lock: threading.RLock,
    operation: str,
) -> Iterator[Session]:
    """Open a locked session and translate driver errors.

    Lock contention, pool timeouts and disconnects become
    TransientStoreError; every other SQLAlchemy failure becomes
    StorageError. Domain errors pass through untouched.
    """
    with lock:
        try:
            with session_factory() as session:
                yield session
        except (PoolTimeoutError, DisconnectionError) as e:
            raise TransientStoreError(
                f"Storage unavailable during {operation}",
                operation=operation,
                original_error=e,
            ) from e
        except OperationalError as e:
            message = str(e).lower()
            if any(marker in message for marker in _TRANSIENT_MARKERS):
                raise TransientStoreError(
                    f"Storage busy during {operation}",
                    operation=operation,
                    original_error=e,
                ) from e
            raise StorageError(
                f"Storage failure during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            raise StorageError(
                f"Storage failure during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e


class Repository(ABC, Generic[T]):
    """Minimal CRUD contract shared by the repositories."""

    @abstractmethod
    def create(self, item: T) -> T:
        """Persist a new item and return it."""

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        """Return the item with the given ID, or None."""

    @abstractmethod
    def get_all(self) -> List[T]:
        """Return every item."""

    @abstractmethod
    def delete(self, id: str) -> None:
        """Remove the item with the given ID."""


class NodeStore(ABC):
    """Persistence collaborator used by the ordering engine.

    Implementations must return sibling groups in display order and must
    apply :meth:`put_many` atomically: either every node is written or
    none is. Any call may raise ``TransientStoreError`` for a retryable
    failure or ``StorageError`` otherwise, and none may block longer than
    the store's configured timeout.
    """

    @abstractmethod
    def get(self, id: str) -> Optional[Node]:
        """Point read; None when the node does not exist."""

    @abstractmethod
    def get_siblings(self, project_id: str, parent_id: Optional[str]) -> List[Node]:
        """All nodes of ``project_id`` whose parent is ``parent_id``, in
        display order. ``parent_id=None`` returns the root group."""

    @abstractmethod
    def put(self, node: Node) -> Node:
        """Insert or replace a single node."""

    @abstractmethod
    def put_many(self, nodes: Sequence[Node]) -> int:
        """Insert or replace several nodes in one transaction."""

    @abstractmethod
    def delete_many(self, ids: Sequence[str]) -> int:
        """Delete the given nodes, returning how many existed."""

    @abstractmethod
    def get_descendant_ids(self, id: str) -> List[str]:
        """Transitive children of ``id`` (excluding ``id`` itself), in no
        particular order. Must terminate on cyclic data."""

    @abstractmethod
    def list_project(self, project_id: str) -> List[Node]:
        """Every node of a project."""

    def require(self, id: str) -> Node:
        """Like get(), but raise NotFoundError for a missing node."""
        node = self.get(id)
        if node is None:
            raise NotFoundError(id)
        return node

    def get_children(self, node: Node) -> List[Node]:
        return self.get_siblings(node.project_id, node.id)

    def get_parent_ids(self, project_id: str) -> List[Optional[str]]:
        """Distinct parent IDs in the project, root (None) first."""
        parents = {node.parent_id for node in self.list_project(project_id)}
        ordered: List[Optional[str]] = [None] if None in parents else []
        ordered.extend(sorted(p for p in parents if p is not None))
        return ordered
