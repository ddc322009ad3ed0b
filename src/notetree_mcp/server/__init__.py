"""MCP server surface for the NoteTree engine."""
