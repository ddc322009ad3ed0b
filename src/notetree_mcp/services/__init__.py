"""Service layer for the NoteTree MCP server."""
