"""Structural mutations of a project's note tree.

Every operation follows the same sequence: validate, mutate, then
normalize the affected sibling groups. Validation failures raise before
anything is written. A normalization failure after a successful mutation
is logged and remembered so it can be retried; the mutation itself stands.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from notetree_mcp.exceptions import (
    ErrorCode,
    InvalidParentError,
    NormalizationFailure,
    NotFoundError,
    ProjectLockedError,
    ValidationError,
)
from notetree_mcp.models.order_keys import (
    OrderKeyLike,
    key_after,
    key_at_head,
    key_at_tail,
    key_before,
    parse_order_key,
)
from notetree_mcp.models.schema import Node, Placement, PlacementKind
from notetree_mcp.observability import traced
from notetree_mcp.services.order_normalizer import OrderNormalizer
from notetree_mcp.services.tree_validator import TreeValidator
from notetree_mcp.storage.base import NodeStore
from notetree_mcp.storage.project_repository import ProjectRepository

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, Optional[str]]


class ReorganizeService:
    """Create, delete and move nodes while keeping sibling order consistent."""

    def __init__(
        self,
        store: NodeStore,
        projects: Optional[ProjectRepository] = None,
        normalizer: Optional[OrderNormalizer] = None,
        validator: Optional[TreeValidator] = None,
    ):
        """Initialize the service.

        Args:
            store: Node persistence.
            projects: Project registry used for existence and lock checks.
                When None, any project ID is accepted and never locked.
            normalizer: Defaults to an OrderNormalizer over ``store``.
            validator: Defaults to a TreeValidator over ``store``.
        """
        self.store = store
        self.projects = projects
        self.normalizer = normalizer or OrderNormalizer(store)
        self.validator = validator or TreeValidator(store)
        self._pending: Set[GroupKey] = set()
        self._pending_lock = threading.Lock()

    # =========================================================================
    # Helpers
    # =========================================================================

    def ensure_mutable(self, project_id: str, operation: str) -> None:
        """Raise if the project is unknown or locked."""
        if self.projects is None:
            return
        project = self.projects.get(project_id)
        if project is None:
            raise NotFoundError(project_id, entity="project")
        if project.is_locked:
            raise ProjectLockedError(project_id, operation=operation)

    def _normalize_group(self, project_id: str, parent_id: Optional[str]) -> bool:
        """Normalize one group; on failure log a warning and queue a retry."""
        group = (project_id, parent_id)
        try:
            self.normalizer.normalize(project_id, parent_id)
        except NormalizationFailure as e:
            logger.warning(f"{e}; queued for retry")
            with self._pending_lock:
                self._pending.add(group)
            return False
        with self._pending_lock:
            self._pending.discard(group)
        return True

    @property
    def pending_normalizations(self) -> List[GroupKey]:
        with self._pending_lock:
            return sorted(self._pending, key=lambda g: (g[0], g[1] or ""))

    def retry_pending_normalizations(self) -> int:
        """Retry every group whose normalization failed earlier.

        Returns:
            Number of groups that are now normalized.
        """
        recovered = 0
        for project_id, parent_id in self.pending_normalizations:
            if self._normalize_group(project_id, parent_id):
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} pending normalizations")
        return recovered

    def _refresh(self, node: Node) -> Node:
        """Re-read a node after normalization may have changed its key."""
        return self.store.get(node.id) or node

    # =========================================================================
    # Operations
    # =========================================================================

    @traced("create_node")
    def create_node(
        self,
        project_id: str,
        parent_id: Optional[str] = None,
        order: Optional[OrderKeyLike] = None,
        normalize: bool = True,
        **attributes: Any,
    ) -> Node:
        """Create a node at the tail of its sibling group.

        Args:
            project_id: Owning project.
            parent_id: Parent node, or None for a root node.
            order: Explicit order key. Defaults to one past the current tail.
            normalize: Renumber the group afterwards. Bulk callers pass
                False and normalize once at the end.
            **attributes: Content and auxiliary fields (content, url,
                link_text, youtube_link, time_marker, is_discussion, images).

        Raises:
            InvalidParentError: The parent is missing or in another project.
            ValidationError: The order key or an attribute is invalid.
        """
        self.ensure_mutable(project_id, "create_node")

        if parent_id is not None:
            parent = self.store.get(parent_id)
            if parent is None:
                raise InvalidParentError(
                    f"Parent node '{parent_id}' does not exist", parent_id=parent_id
                )
            if parent.project_id != project_id:
                raise InvalidParentError(
                    f"Parent node '{parent_id}' belongs to project '{parent.project_id}'",
                    parent_id=parent_id,
                    code=ErrorCode.CROSS_SCOPE_PARENT,
                )

        if order is None:
            siblings = self.store.get_siblings(project_id, parent_id)
            key = key_at_tail(s.order for s in siblings)
        else:
            try:
                key = parse_order_key(order)
            except ValueError as e:
                raise ValidationError(
                    str(e), field="order", value=order, code=ErrorCode.INVALID_ORDER_KEY
                ) from e

        try:
            node = Node(project_id=project_id, parent_id=parent_id, order=key, **attributes)
        except (ValueError, TypeError) as e:
            raise ValidationError(
                f"Invalid node: {e}", code=ErrorCode.NODE_VALIDATION_FAILED
            ) from e

        self.store.put(node)
        logger.debug(f"Created node {node.id} under {parent_id or 'ROOT'} at {key}")

        if normalize:
            self._normalize_group(project_id, parent_id)
            return self._refresh(node)
        return node

    @traced("delete_subtree")
    def delete_subtree(self, node_id: str) -> int:
        """Delete a node and all of its descendants.

        Returns:
            Number of nodes removed (the node plus its descendants).

        Raises:
            NotFoundError: The node does not exist.
        """
        node = self.store.require(node_id)
        self.ensure_mutable(node.project_id, "delete_subtree")

        descendants = self.store.get_descendant_ids(node_id)
        removed = self.store.delete_many([node_id] + descendants)
        logger.info(f"Deleted node {node_id} with {len(descendants)} descendants")

        self._normalize_group(node.project_id, node.parent_id)
        return removed

    @traced("delete_promoting")
    def delete_promoting(self, node_id: str) -> int:
        """Delete a node and promote its children to the node's parent.

        The children are appended after the node's surviving siblings,
        keeping their relative order.

        Returns:
            Number of children promoted.

        Raises:
            NotFoundError: The node does not exist.
        """
        node = self.store.require(node_id)
        self.ensure_mutable(node.project_id, "delete_promoting")

        children = self.store.get_children(node)
        siblings = [
            s for s in self.store.get_siblings(node.project_id, node.parent_id)
            if s.id != node.id
        ]
        tail = key_at_tail(s.order for s in siblings)

        promoted = [
            child.model_copy(update={"parent_id": node.parent_id, "order": tail + offset})
            for offset, child in enumerate(children)
        ]
        # Children move first: if the delete then fails the tree is still a forest
        self.store.put_many(promoted)
        self.store.delete_many([node.id])
        logger.info(
            f"Deleted node {node_id}, promoted {len(promoted)} children "
            f"to {node.parent_id or 'ROOT'}"
        )

        # Former sibling group and new home of the children are the same group
        self._normalize_group(node.project_id, node.parent_id)
        return len(promoted)

    def _resolve_anchor(self, node: Node, new_parent_id: Optional[str], placement: Placement) -> Optional[Node]:
        """Check the placement against the requested parent; return the sibling anchor."""
        if placement.kind.is_child:
            if placement.anchor_id != new_parent_id:
                raise InvalidParentError(
                    f"{placement.kind.value} targets '{placement.anchor_id or 'ROOT'}' "
                    f"but the new parent is '{new_parent_id or 'ROOT'}'",
                    node_id=node.id,
                    parent_id=new_parent_id,
                    code=ErrorCode.INVALID_PLACEMENT,
                )
            return None

        if placement.anchor_id is None:
            raise ValidationError(
                f"{placement.kind.value} placement requires a sibling anchor",
                field="placement",
                code=ErrorCode.INVALID_PLACEMENT,
            )
        if placement.anchor_id == node.id:
            raise ValidationError(
                f"Node '{node.id}' cannot be placed relative to itself",
                field="placement",
                value=str(placement),
                code=ErrorCode.INVALID_PLACEMENT,
            )

        anchor = self.store.require(placement.anchor_id)
        if anchor.project_id != node.project_id:
            raise InvalidParentError(
                f"Anchor '{anchor.id}' belongs to project '{anchor.project_id}'",
                node_id=node.id,
                parent_id=anchor.parent_id,
                code=ErrorCode.CROSS_SCOPE_PARENT,
            )
        if anchor.parent_id != new_parent_id:
            raise InvalidParentError(
                f"Anchor '{anchor.id}' is not a child of '{new_parent_id or 'ROOT'}'",
                node_id=node.id,
                parent_id=new_parent_id,
                code=ErrorCode.INVALID_PLACEMENT,
            )
        return anchor

    @staticmethod
    def _placement_key(siblings: List[Node], placement: Placement, anchor: Optional[Node]):
        keys = [s.order for s in siblings]
        if placement.kind == PlacementKind.APPEND_CHILD:
            return key_at_tail(keys)
        if placement.kind == PlacementKind.PREPEND_CHILD:
            return key_at_head(keys)

        index = next(i for i, s in enumerate(siblings) if s.id == anchor.id)
        if placement.kind == PlacementKind.BEFORE:
            previous = siblings[index - 1].order if index > 0 else None
            return key_before(siblings[index].order, previous)
        following = siblings[index + 1].order if index + 1 < len(siblings) else None
        return key_after(siblings[index].order, following)

    @traced("reparent_and_order")
    def reparent_and_order(
        self, node_id: str, new_parent_id: Optional[str], placement: Placement
    ) -> Node:
        """Move a node under ``new_parent_id`` at the given placement.

        For ``before``/``after`` the anchor must already be a child of
        ``new_parent_id``; for the child placements the anchor is
        ``new_parent_id`` itself.

        Returns:
            The moved node after normalization.

        Raises:
            NotFoundError: The node or the anchor does not exist.
            CycleError: ``new_parent_id`` is the node or one of its descendants.
            InvalidParentError: The parent is missing, in another project, or
                does not match the placement anchor.
            ValidationError: The placement is relative to the node itself.
        """
        node = self.store.require(node_id)
        self.ensure_mutable(node.project_id, "reparent_and_order")

        anchor = self._resolve_anchor(node, new_parent_id, placement)
        self.validator.validate_parent(node, new_parent_id)

        # Neighbours are computed without the moving node
        siblings = [
            s for s in self.store.get_siblings(node.project_id, new_parent_id)
            if s.id != node.id
        ]
        key = self._placement_key(siblings, placement, anchor)

        old_parent_id = node.parent_id
        moved = node.model_copy(update={"parent_id": new_parent_id, "order": key})
        self.store.put(moved)
        logger.debug(f"Moved node {node_id} to {placement} with interim key {key}")

        self._normalize_group(node.project_id, new_parent_id)
        if old_parent_id != new_parent_id:
            self._normalize_group(node.project_id, old_parent_id)
        return self._refresh(moved)

    def move(self, node_id: str, placement: Placement) -> Node:
        """Move a node, deriving the new parent from the placement anchor."""
        if placement.kind.is_child:
            new_parent_id = placement.anchor_id
        else:
            if placement.anchor_id is None:
                raise ValidationError(
                    f"{placement.kind.value} placement requires a sibling anchor",
                    field="placement",
                    code=ErrorCode.INVALID_PLACEMENT,
                )
            new_parent_id = self.store.require(placement.anchor_id).parent_id
        return self.reparent_and_order(node_id, new_parent_id, placement)

    def move_node(self, node_id: str, target_id: str, intent) -> Node:
        """Apply a drop of ``node_id`` onto ``target_id`` with a drop intent.

        ``intent`` is a PlacementKind or its name. Dropping a node onto
        itself changes nothing.
        """
        if isinstance(intent, PlacementKind):
            kind = intent
        else:
            try:
                kind = PlacementKind.parse(str(intent))
            except ValueError as e:
                raise ValidationError(
                    f"Unknown drop intent '{intent}'",
                    field="intent",
                    value=intent,
                    code=ErrorCode.INVALID_PLACEMENT,
                ) from e
        if target_id == node_id:
            logger.debug(f"Ignoring drop of node {node_id} onto itself")
            return self.store.require(node_id)
        return self.move(node_id, Placement(kind, target_id))

    def get_tree(self, project_id: str) -> List[Dict[str, Any]]:
        """The project's forest as nested ``{"node", "children"}`` dicts.

        Each level is in display order. Nodes whose parent is missing from
        the project are listed as roots.
        """
        nodes = self.store.list_project(project_id)
        ids = {n.id for n in nodes}
        by_parent: Dict[Optional[str], List[Node]] = {}
        for node in nodes:
            parent = node.parent_id if node.parent_id in ids else None
            by_parent.setdefault(parent, []).append(node)

        seen: Set[str] = set()

        def build(parent_id: Optional[str]) -> List[Dict[str, Any]]:
            level = []
            for node in sorted(by_parent.get(parent_id, []), key=Node.sort_key):
                if node.id in seen:
                    continue
                seen.add(node.id)
                level.append({"node": node, "children": build(node.id)})
            return level

        return build(None)
