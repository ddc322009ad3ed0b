"""
NoteTree MCP - an outliner note tree served over the Model Context Protocol.
This package keeps per-project note trees consistent: sibling ordering with
fractional interim keys, structural edits (create, delete, promote, move),
drag-and-drop intent classification and bulk import of flat note lists.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notetree-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
