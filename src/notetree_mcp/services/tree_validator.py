"""Parent/child legality checks for reparent operations."""
import logging
from typing import Callable, Optional

from notetree_mcp.exceptions import CycleError, ErrorCode, InvalidParentError
from notetree_mcp.models.schema import Node
from notetree_mcp.storage.base import NodeStore

logger = logging.getLogger(__name__)

ParentLookup = Callable[[str], Optional[str]]


def creates_cycle(node_id: str, candidate_parent_id: Optional[str], parent_of: ParentLookup) -> bool:
    """True if placing ``node_id`` under ``candidate_parent_id`` closes a loop.

    Walks the ancestor chain of the candidate parent. ``parent_of`` returns
    the parent ID of a node, or None both for roots and for records that do
    not exist, so a dangling reference simply ends the chain. A chain that
    revisits a node without reaching ``node_id`` (pre-existing damage
    elsewhere) also ends the walk.
    """
    if candidate_parent_id is None:
        return False
    seen = set()
    current: Optional[str] = candidate_parent_id
    while current is not None:
        if current == node_id:
            return True
        if current in seen:
            logger.warning(f"Ancestor chain of {candidate_parent_id} loops at {current}")
            return False
        seen.add(current)
        current = parent_of(current)
    return False


class TreeValidator:
    """Checks that a reparent keeps the project a forest.

    Reads go straight to the store on every call; nothing is cached.
    """

    def __init__(self, store: NodeStore):
        self.store = store

    def _parent_of(self, node_id: str) -> Optional[str]:
        node = self.store.get(node_id)
        return node.parent_id if node is not None else None

    def validate_parent(self, node: Node, new_parent_id: Optional[str]) -> Optional[Node]:
        """Check that ``new_parent_id`` is a legal parent for ``node``.

        Returns:
            The parent node, or None when moving to the project root.

        Raises:
            CycleError: The parent is the node itself or one of its descendants.
            InvalidParentError: The parent does not exist or belongs to
                another project.
        """
        if new_parent_id is None:
            return None

        if new_parent_id == node.id:
            raise CycleError(node.id, new_parent_id, f"Node '{node.id}' cannot be its own parent")

        parent = self.store.get(new_parent_id)
        if parent is None:
            raise InvalidParentError(
                f"Parent node '{new_parent_id}' does not exist",
                node_id=node.id,
                parent_id=new_parent_id,
            )
        if parent.project_id != node.project_id:
            raise InvalidParentError(
                f"Parent node '{new_parent_id}' belongs to project "
                f"'{parent.project_id}', not '{node.project_id}'",
                node_id=node.id,
                parent_id=new_parent_id,
                code=ErrorCode.CROSS_SCOPE_PARENT,
            )
        if creates_cycle(node.id, parent.parent_id, self._parent_of):
            raise CycleError(node.id, new_parent_id)
        return parent
