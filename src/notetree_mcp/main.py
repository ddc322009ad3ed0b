#!/usr/bin/env python
"""Main entry point for the NoteTree MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from notetree_mcp.config import config
from notetree_mcp.models.db_models import init_db
from notetree_mcp.observability import configure_logging, metrics
from notetree_mcp.server.mcp_server import NoteTreeMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="NoteTree MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTETREE_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTETREE_LOG_LEVEL", "INFO").upper(),
    )
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    config.log_level = args.log_level


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    if metrics.save_metrics():
        logging.getLogger(__name__).info("Metrics saved to disk on shutdown")


def main(argv=None):
    """Run the NoteTree MCP server."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=config.get_log_dir(), level=log_level, console=True)
    except OSError as e:
        # Fall back to console logging when the log directory is not writable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    # Single engine shared by every repository
    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info("Starting NoteTree MCP server")
        server = NoteTreeMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
