"""MCP server exposing the note tree engine as tools."""

import atexit
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from notetree_mcp.config import config
from notetree_mcp.exceptions import ErrorCode, NoteTreeError, ValidationError
from notetree_mcp.models.schema import Placement, PlacementKind, Project
from notetree_mcp.observability import metrics, timed_operation
from notetree_mcp.services.drag_zones import Rect, drop_intent_from_client, resolve_drop_intent
from notetree_mcp.services.import_pipeline import BulkImportPipeline, flatten_import_payload
from notetree_mcp.services.import_status import ImportStatusRegistry
from notetree_mcp.services.reorganize_service import ReorganizeService
from notetree_mcp.storage.node_repository import NodeRepository
from notetree_mcp.storage.project_repository import ProjectRepository

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB
MAX_IMPORT_PAYLOAD = 50_000_000  # 50 MB of JSON

# How each error category is introduced to the caller
_CATEGORY_PREFIX = {
    "structural": "Structural violation",
    "transient": "Temporary failure (safe to retry)",
    "not_found": "Not found (refresh and try again)",
    "validation": "Invalid input",
    "storage": "Storage error",
}


def format_tree(tree: List[Dict[str, Any]], depth: int = 0) -> List[str]:
    """Render nested ``{"node", "children"}`` dicts as indented lines."""
    lines = []
    for entry in tree:
        node = entry["node"]
        preview = node.content.strip().splitlines()[0][:60] if node.content.strip() else "(empty)"
        lines.append(f"{'  ' * depth}- [{node.id}] #{node.order} {preview}")
        lines.extend(format_tree(entry["children"], depth + 1))
    return lines


def _format_import_status(status: Dict[str, Any]) -> str:
    output = (
        f"Import {status['import_id']}: {status['phase']} ({status['progress']}%)\n"
        f"Processed: {status['processed']}/{status['total']}\n"
        f"Elapsed: {status['elapsed_seconds']}s\n"
        f"Status: {status['status']}\n"
    )
    result = status.get("result")
    if result:
        output += (
            f"Succeeded: {result['succeeded']}, failed: {result['failed']}, "
            f"relinked: {result['relinked']}, relink failures: {result['relink_failed']}\n"
        )
        if result["failures"]:
            output += "Failures:\n" + "\n".join(f"  - {f}" for f in result["failures"][:50])
    if status.get("error"):
        output += f"Error: {status['error']}\n"
    return output.rstrip()


class NoteTreeMcpServer:
    """MCP server for the NoteTree ordering engine."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by every
                repository. When None, each repository creates its own.
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        self.project_repository = ProjectRepository(engine=engine)
        self.node_repository = NodeRepository(engine=engine)
        self.reorganize_service = ReorganizeService(
            self.node_repository, projects=self.project_repository
        )
        self.import_pipeline = BulkImportPipeline(
            self.reorganize_service, status=ImportStatusRegistry()
        )
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info("NoteTree MCP server initialized")

    def _shutdown(self) -> None:
        """Retry normalizations that failed while the server was running."""
        pending = self.reorganize_service.pending_normalizations
        if pending:
            logger.info(f"Retrying {len(pending)} pending normalizations before exit")
            self.reorganize_service.retry_pending_normalizations()

    def format_error_response(self, error: Exception) -> str:
        """Format an error so the caller can tell what kind of failure it was.

        Domain errors are prefixed by category (structural violation,
        temporary failure, stale reference). Anything else gets a generic
        message with a reference ID that appears in the logs.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NoteTreeError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            prefix = _CATEGORY_PREFIX.get(error.category, "Error")
            return f"Error: {prefix}: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="nt_create_project")
        def nt_create_project(name: str, project_id: Optional[str] = None) -> str:
            """Create a project, the container of one note tree.
            Args:
                name: Display name
                project_id: Explicit ID (letters, digits, '_', '-'); generated when omitted
            """
            with timed_operation("nt_create_project") as op:
                try:
                    project = Project(name=name, id=project_id) if project_id else Project(name=name)
                    created = self.project_repository.create(project)
                    op["project_id"] = created.id
                    return f"Project created: {created.id} ({created.name})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_lock_project")
        def nt_lock_project(project_id: str, locked: bool = True) -> str:
            """Lock or unlock a project. Locked projects refuse every structural edit.
            Args:
                project_id: The project to change
                locked: True to lock, False to unlock
            """
            with timed_operation("nt_lock_project", project_id=project_id):
                try:
                    project = self.project_repository.set_locked(project_id, locked)
                    state = "locked" if project.is_locked else "unlocked"
                    return f"Project {project.id} is now {state}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_create_node")
        def nt_create_node(
            project_id: str,
            content: str = "",
            parent_id: Optional[str] = None,
            url: Optional[str] = None,
            link_text: Optional[str] = None,
            time_marker: Optional[str] = None,
            is_discussion: bool = False,
        ) -> str:
            """Create a note at the end of its parent's children.
            Args:
                project_id: Owning project
                content: Note text
                parent_id: Parent note ID; omit for a top-level note
                url: Optional link
                link_text: Display text for the link
                time_marker: Optional time marker (e.g. "12:30")
                is_discussion: Mark as a discussion point
            """
            with timed_operation("nt_create_node", project_id=project_id) as op:
                try:
                    if len(content) > MAX_CONTENT_LENGTH:
                        raise ValidationError(
                            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
                            field="content",
                        )
                    node = self.reorganize_service.create_node(
                        project_id,
                        parent_id=parent_id or None,
                        content=content,
                        url=url,
                        link_text=link_text,
                        time_marker=time_marker,
                        is_discussion=is_discussion,
                    )
                    op["node_id"] = node.id
                    return (
                        f"Node created: {node.id} under {node.parent_id or 'ROOT'} "
                        f"at position {node.order}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_move_node")
        def nt_move_node(node_id: str, placement: str, anchor_id: Optional[str] = None) -> str:
            """Move a note relative to another note.
            Args:
                node_id: The note to move
                placement: One of before, after, append_child, prepend_child
                anchor_id: For before/after, the sibling to move next to. For
                    the child placements, the new parent (omit for top level).
            """
            with timed_operation("nt_move_node", node_id=node_id) as op:
                try:
                    try:
                        kind = PlacementKind.parse(placement)
                    except ValueError:
                        valid = ", ".join(k.value for k in PlacementKind)
                        return f"Invalid placement: {placement}. Valid placements are: {valid}"
                    moved = self.reorganize_service.move(
                        node_id, Placement(kind, anchor_id or None)
                    )
                    op["parent_id"] = moved.parent_id
                    return (
                        f"Node {moved.id} moved under {moved.parent_id or 'ROOT'} "
                        f"at position {moved.order}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_drop_node")
        def nt_drop_node(
            node_id: str,
            target_id: str,
            width: float,
            height: float,
            x: float,
            y: float,
            left: float = 0.0,
            top: float = 0.0,
            client_coordinates: bool = False,
        ) -> str:
            """Apply a drag-and-drop of one note onto another.

            The drop position inside the target's box decides the placement:
            top/bottom edges place before/after, the right side nests the
            note as a child.
            Args:
                node_id: The dragged note
                target_id: The note it was dropped on
                width: Target box width
                height: Target box height
                x: Pointer X (relative to the box, or page X with client_coordinates)
                y: Pointer Y (relative to the box, or page Y with client_coordinates)
                left: Box left edge in page coordinates
                top: Box top edge in page coordinates
                client_coordinates: Treat x/y as page coordinates
            """
            with timed_operation("nt_drop_node", node_id=node_id) as op:
                try:
                    rect = Rect(left, top, width, height)
                    if client_coordinates:
                        intent = drop_intent_from_client(rect, x, y)
                    else:
                        intent = resolve_drop_intent(rect, x, y)
                    op["intent"] = intent.value
                    moved = self.reorganize_service.move_node(node_id, target_id, intent)
                    return (
                        f"Dropped {moved.id} ({intent.value} {target_id}): now under "
                        f"{moved.parent_id or 'ROOT'} at position {moved.order}"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_delete_node")
        def nt_delete_node(node_id: str, mode: str = "cascade") -> str:
            """Delete a note.
            Args:
                node_id: The note to delete
                mode: "cascade" removes the whole subtree; "promote" keeps the
                    children and moves them up to the note's parent
            """
            with timed_operation("nt_delete_node", node_id=node_id, mode=mode) as op:
                try:
                    if mode == "cascade":
                        removed = self.reorganize_service.delete_subtree(node_id)
                        op["removed"] = removed
                        return f"Deleted {removed} notes"
                    if mode == "promote":
                        promoted = self.reorganize_service.delete_promoting(node_id)
                        op["promoted"] = promoted
                        return f"Deleted note {node_id}; promoted {promoted} children"
                    return f"Invalid mode: {mode}. Valid modes are: cascade, promote"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_get_tree")
        def nt_get_tree(project_id: str) -> str:
            """Show a project's notes as an indented tree.
            Args:
                project_id: The project to show
            """
            with timed_operation("nt_get_tree", project_id=project_id) as op:
                try:
                    self.project_repository.require(project_id)
                    tree = self.reorganize_service.get_tree(project_id)
                    lines = format_tree(tree)
                    op["line_count"] = len(lines)
                    if not lines:
                        return f"Project {project_id} has no notes."
                    count = self.project_repository.get_node_count(project_id)
                    return f"Project {project_id} ({count} notes):\n" + "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_normalize_project")
        def nt_normalize_project(project_id: str) -> str:
            """Renumber every sibling group of a project to 0..n-1.
            Args:
                project_id: The project to normalize
            """
            with timed_operation("nt_normalize_project", project_id=project_id):
                try:
                    self.reorganize_service.ensure_mutable(project_id, "normalize_project")
                    report = self.reorganize_service.normalizer.normalize_project(project_id)
                    output = (
                        f"Normalized {report.groups} groups in {project_id} "
                        f"({report.writes} keys rewritten)"
                    )
                    if not report.ok:
                        failed = ", ".join(g or "ROOT" for g in report.failed_groups)
                        output += f"\nFailed groups (safe to retry): {failed}"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_import_nodes")
        def nt_import_nodes(payload: str, project_id: Optional[str] = None, wait: bool = True) -> str:
            """Import notes from a JSON export.

            The payload is a JSON list of notes, or an object
            {"project": {"name": ...}, "notes": [...]}. Each note needs an
            "id"; "parentId" links it to another note in the same payload and
            nested "children" lists are accepted.
            Args:
                payload: The JSON text
                project_id: Target project. When omitted, a project is created
                    from the payload's "project" object
                wait: Block until the import finishes (otherwise poll with
                    nt_import_status)
            """
            with timed_operation("nt_import_nodes") as op:
                try:
                    if len(payload) > MAX_IMPORT_PAYLOAD:
                        raise ValidationError(
                            "Import payload is too large",
                            field="payload",
                            code=ErrorCode.IMPORT_RECORD_INVALID,
                        )
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError as e:
                        raise ValidationError(
                            f"Import payload is not valid JSON: {e.msg}",
                            field="payload",
                            code=ErrorCode.IMPORT_RECORD_INVALID,
                        ) from e
                    records, project_meta = flatten_import_payload(data)

                    if not project_id:
                        if not project_meta or not project_meta.get("name"):
                            return "Error: Invalid input: project_id is required"
                        project_id = self.project_repository.create(
                            Project(name=str(project_meta["name"]))
                        ).id

                    op["project_id"] = project_id
                    op["records"] = len(records)
                    if wait:
                        result = self.import_pipeline.run(project_id, records)
                        output = f"{result.summary()}\nProject: {project_id}"
                        if result.failures:
                            output += "\nFailures:\n" + "\n".join(
                                f"  - {f}" for f in result.failures[:50]
                            )
                        return output
                    import_id = self.import_pipeline.start(project_id, records)
                    return (
                        f"Import started: {import_id} ({len(records)} records into "
                        f"{project_id}). Poll with nt_import_status."
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_import_status")
        def nt_import_status(import_id: str) -> str:
            """Show the progress of an import.
            Args:
                import_id: Handle returned by nt_import_nodes
            """
            with timed_operation("nt_import_status"):
                try:
                    status = self.import_pipeline.get_status(import_id)
                    if status is None:
                        return f"Import {import_id} not found (finished imports expire after {int(config.import_status_retention)}s)"
                    return _format_import_status(status)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_cancel_import")
        def nt_cancel_import(import_id: str) -> str:
            """Stop a running import at its next batch boundary.

            Notes already imported stay, in a normalized tree.
            Args:
                import_id: Handle returned by nt_import_nodes
            """
            with timed_operation("nt_cancel_import"):
                try:
                    if self.import_pipeline.cancel(import_id):
                        return f"Cancellation requested for import {import_id}"
                    return f"Import {import_id} is not running"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_metrics")
        def nt_metrics() -> str:
            """Show operation counts and timings since the server started."""
            summary = metrics.get_summary()
            return json.dumps(
                {"summary": summary, "operations": metrics.get_metrics()}, indent=2, default=str
            )

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
