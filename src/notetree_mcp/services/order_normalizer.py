"""Renumbering of sibling groups to contiguous integer order keys."""
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence

from notetree_mcp.exceptions import NormalizationFailure, StorageError
from notetree_mcp.models.schema import Node
from notetree_mcp.observability import traced
from notetree_mcp.storage.base import NodeStore

logger = logging.getLogger(__name__)


def plan_normalization(siblings: Sequence[Node]) -> List[Node]:
    """Nodes that need a new key so ``siblings`` reads ``0 .. n-1``.

    ``siblings`` must already be in display order. Returns updated copies
    of only the nodes whose key differs from their index; an empty list
    means the group is already normalized.
    """
    changed = []
    for index, node in enumerate(siblings):
        if node.order != index:
            changed.append(node.model_copy(update={"order": Fraction(index)}))
    return changed


@dataclass
class ProjectNormalizeReport:
    """Outcome of normalizing every sibling group in a project."""

    project_id: str
    groups: int = 0
    writes: int = 0
    failed_groups: List[Optional[str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_groups

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "groups": self.groups,
            "writes": self.writes,
            "failed_groups": [g or "ROOT" for g in self.failed_groups],
            "ok": self.ok,
        }


class OrderNormalizer:
    """Renumbers sibling groups to ``0 .. n-1`` in display order.

    Writes go through a single ``put_many`` per group, so a group is either
    fully renumbered or left exactly as it was.
    """

    def __init__(self, store: NodeStore):
        self.store = store

    @traced("normalize")
    def normalize(self, project_id: str, parent_id: Optional[str] = None) -> int:
        """Normalize the children of ``parent_id`` (the root group for None).

        Returns:
            Number of nodes rewritten; 0 when the group was already
            normalized or empty.

        Raises:
            NormalizationFailure: The group could not be read or written.
                Its keys are unchanged and the call can be repeated.
        """
        try:
            siblings = self.store.get_siblings(project_id, parent_id)
            changed = plan_normalization(siblings)
            if not changed:
                return 0
            self.store.put_many(changed)
        except StorageError as e:
            raise NormalizationFailure(project_id, parent_id, original_error=e) from e

        logger.debug(
            f"Normalized {len(changed)}/{len(siblings)} keys under "
            f"{parent_id or 'ROOT'} in project {project_id}"
        )
        return len(changed)

    @traced("normalize_project")
    def normalize_project(self, project_id: str) -> ProjectNormalizeReport:
        """Normalize every sibling group of a project, root group first.

        A failing group is recorded in the report and does not stop the
        remaining groups.
        """
        report = ProjectNormalizeReport(project_id=project_id)
        try:
            parent_ids = self.store.get_parent_ids(project_id)
        except StorageError as e:
            raise NormalizationFailure(project_id, None, original_error=e) from e

        for parent_id in parent_ids:
            report.groups += 1
            try:
                report.writes += self.normalize(project_id, parent_id)
            except NormalizationFailure as e:
                logger.warning(str(e))
                report.failed_groups.append(parent_id)

        logger.info(
            f"Normalized project {project_id}: {report.groups} groups, "
            f"{report.writes} writes, {len(report.failed_groups)} failed"
        )
        return report
