"""Data models for the NoteTree MCP server."""
