"""Tests for the MCP server tools."""
import json
from unittest.mock import MagicMock, patch

import pytest

from notetree_mcp.exceptions import CycleError, NotFoundError, TransientStoreError
from notetree_mcp.server.mcp_server import NoteTreeMcpServer
from tests.conftest import PROJECT_ID


class TestMcpServer:
    """Tests for NoteTreeMcpServer, with real services on in-memory SQLite."""

    @pytest.fixture(autouse=True)
    def server(self, engine, project):
        # Capture the tool functions as FastMCP registers them
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper

        self.mock_mcp.tool = mock_tool_decorator

        with patch("notetree_mcp.server.mcp_server.FastMCP", return_value=self.mock_mcp), \
                patch("notetree_mcp.server.mcp_server.atexit"):
            self.server = NoteTreeMcpServer(engine=engine)
        yield self.server

    def call(self, tool_name, /, **kwargs):
        return self.registered_tools[tool_name](**kwargs)

    def create(self, content, parent_id=None):
        return self.server.reorganize_service.create_node(
            PROJECT_ID, parent_id=parent_id, content=content
        )

    def test_tools_registered(self):
        assert set(self.registered_tools) == {
            "nt_create_project",
            "nt_lock_project",
            "nt_create_node",
            "nt_move_node",
            "nt_drop_node",
            "nt_delete_node",
            "nt_get_tree",
            "nt_normalize_project",
            "nt_import_nodes",
            "nt_import_status",
            "nt_cancel_import",
            "nt_metrics",
        }

    def test_create_project(self):
        result = self.call("nt_create_project", name="Lectures", project_id="lectures")
        assert result == "Project created: lectures (Lectures)"
        assert self.server.project_repository.exists("lectures")

    def test_create_duplicate_project(self):
        result = self.call("nt_create_project", name="Again", project_id=PROJECT_ID)
        assert result.startswith("Error: Invalid input:")

    def test_create_node(self):
        result = self.call("nt_create_node", project_id=PROJECT_ID, content="Hello")
        assert result.startswith("Node created:")
        assert "under ROOT at position 0" in result

    def test_create_node_missing_parent(self):
        result = self.call("nt_create_node", project_id=PROJECT_ID, parent_id="ghost")
        assert result.startswith("Error: Structural violation:")

    def test_create_node_content_too_long(self):
        with patch("notetree_mcp.server.mcp_server.MAX_CONTENT_LENGTH", 5):
            result = self.call("nt_create_node", project_id=PROJECT_ID, content="too long")
        assert result.startswith("Error: Invalid input:")

    def test_move_node(self):
        a, b = self.create("A"), self.create("B")
        result = self.call("nt_move_node", node_id=b.id, placement="before", anchor_id=a.id)
        assert result == f"Node {b.id} moved under ROOT at position 0"

    def test_move_node_invalid_placement(self):
        a = self.create("A")
        result = self.call("nt_move_node", node_id=a.id, placement="sideways")
        assert result.startswith("Invalid placement: sideways")

    def test_move_into_descendant(self):
        parent = self.create("P")
        child = self.create("C", parent_id=parent.id)
        result = self.call(
            "nt_move_node", node_id=parent.id, placement="append_child", anchor_id=child.id
        )
        assert result.startswith("Error: Structural violation:")

    def test_drop_node(self):
        a, b = self.create("A"), self.create("B")
        result = self.call(
            "nt_drop_node", node_id=b.id, target_id=a.id, width=100, height=20, x=90, y=10
        )
        assert "append_child" in result
        assert self.server.node_repository.get(b.id).parent_id == a.id

    def test_drop_node_client_coordinates(self):
        a, b = self.create("A"), self.create("B")
        result = self.call(
            "nt_drop_node",
            node_id=a.id,
            target_id=b.id,
            width=100,
            height=20,
            x=510,
            y=218,
            left=500,
            top=200,
            client_coordinates=True,
        )
        assert "(after" in result
        assert [n.id for n in self.server.node_repository.get_siblings(PROJECT_ID, None)] == [
            b.id,
            a.id,
        ]

    def test_drop_node_degenerate_rect(self):
        a, b = self.create("A"), self.create("B")
        result = self.call(
            "nt_drop_node", node_id=a.id, target_id=b.id, width=0, height=20, x=1, y=1
        )
        assert result.startswith("Error: Invalid input:")

    def test_delete_cascade_and_promote(self):
        p = self.create("P")
        self.create("x", parent_id=p.id)
        q = self.create("Q")
        self.create("y", parent_id=q.id)

        assert self.call("nt_delete_node", node_id=p.id) == "Deleted 2 notes"
        assert (
            self.call("nt_delete_node", node_id=q.id, mode="promote")
            == f"Deleted note {q.id}; promoted 1 children"
        )
        assert self.call("nt_delete_node", node_id=q.id, mode="bogus").startswith("Invalid mode")

    def test_delete_missing_node(self):
        result = self.call("nt_delete_node", node_id="ghost")
        assert result.startswith("Error: Not found (refresh and try again):")

    def test_get_tree(self):
        p = self.create("Parent")
        self.create("Child", parent_id=p.id)
        result = self.call("nt_get_tree", project_id=PROJECT_ID)
        lines = result.splitlines()
        assert lines[0] == f"Project {PROJECT_ID} (2 notes):"
        assert lines[1].endswith("#0 Parent")
        assert lines[2].startswith("  - [")
        assert lines[2].endswith("#0 Child")

    def test_get_tree_empty_and_unknown(self):
        assert self.call("nt_get_tree", project_id=PROJECT_ID) == f"Project {PROJECT_ID} has no notes."
        assert self.call("nt_get_tree", project_id="ghost").startswith("Error: Not found")

    def test_lock_blocks_edits(self):
        a = self.create("A")
        assert self.call("nt_lock_project", project_id=PROJECT_ID) == f"Project {PROJECT_ID} is now locked"
        result = self.call("nt_delete_node", node_id=a.id)
        assert result.startswith("Error: Structural violation:")
        self.call("nt_lock_project", project_id=PROJECT_ID, locked=False)
        assert self.call("nt_delete_node", node_id=a.id) == "Deleted 1 notes"

    def test_normalize_project(self):
        self.server.reorganize_service.create_node(PROJECT_ID, order=5, normalize=False)
        result = self.call("nt_normalize_project", project_id=PROJECT_ID)
        assert result == f"Normalized 1 groups in {PROJECT_ID} (1 keys rewritten)"

    def test_import_nodes_wait(self):
        payload = json.dumps(
            {"notes": [{"id": "a", "content": "A", "children": [{"id": "b", "content": "B"}]}]}
        )
        result = self.call("nt_import_nodes", payload=payload, project_id=PROJECT_ID)
        assert "2/2 records imported" in result
        assert "1 relinked" in result

    def test_import_creates_project(self):
        payload = json.dumps({"project": {"name": "From export"}, "notes": [{"id": "a"}]})
        result = self.call("nt_import_nodes", payload=payload)
        assert "1/1 records imported" in result
        assert len(self.server.project_repository.get_all()) == 2

    def test_import_requires_project(self):
        result = self.call("nt_import_nodes", payload="[]")
        assert result == "Error: Invalid input: project_id is required"

    def test_import_invalid_json(self):
        result = self.call("nt_import_nodes", payload="{nope", project_id=PROJECT_ID)
        assert result.startswith("Error: Invalid input: Import payload is not valid JSON")

    def test_import_background_and_status(self):
        payload = json.dumps([{"id": "a"}, {"id": "b", "parentId": "a"}])
        result = self.call("nt_import_nodes", payload=payload, project_id=PROJECT_ID, wait=False)
        assert result.startswith("Import started: ")
        import_id = result.split()[2]

        self.server.import_pipeline.wait(import_id, timeout=10)
        status = self.call("nt_import_status", import_id=import_id)
        assert status.startswith(f"Import {import_id}: completed (100%)")
        assert "relinked: 1" in status
        assert self.call("nt_cancel_import", import_id=import_id) == f"Import {import_id} is not running"

    def test_import_status_unknown(self):
        assert self.call("nt_import_status", import_id="nope").startswith("Import nope not found")

    def test_metrics(self):
        self.call("nt_get_tree", project_id=PROJECT_ID)
        data = json.loads(self.call("nt_metrics"))
        assert "nt_get_tree" in data["operations"]


class TestErrorFormatting:
    """Tests for category-prefixed error messages."""

    @pytest.fixture
    def server(self, engine):
        with patch("notetree_mcp.server.mcp_server.FastMCP"), \
                patch("notetree_mcp.server.mcp_server.atexit"):
            return NoteTreeMcpServer(engine=engine)

    def test_structural(self, server):
        message = server.format_error_response(CycleError("a", "b"))
        assert message.startswith("Error: Structural violation:")

    def test_transient(self, server):
        message = server.format_error_response(TransientStoreError("busy"))
        assert message == "Error: Temporary failure (safe to retry): busy"

    def test_not_found(self, server):
        message = server.format_error_response(NotFoundError("n1"))
        assert message == "Error: Not found (refresh and try again): Node with ID 'n1' not found"

    def test_plain_value_error_hides_details(self, server):
        message = server.format_error_response(ValueError("secret detail"))
        assert message.startswith("Error: Invalid input (ref: ")
        assert "secret" not in message

    def test_unexpected(self, server):
        message = server.format_error_response(RuntimeError("boom"))
        assert message.startswith("Error: An unexpected error occurred")
