"""Logging configuration for the Neon MCP server."""

import logging
import os
import sys
from contextvars import ContextVar

# Request id shared across the awaits of a single HTTP request
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    """Logging filter that adds request_id to log records."""

    def filter(self, record):
        request_id = request_id_ctx.get()
        record.request_id = f"[{request_id}] " if request_id else ""
        return True


def configure_logging() -> logging.Logger:
    """Configure and return the logger for the application.

    Every record goes to stderr: stdout belongs to the stdio transport. The
    package logger is the parent of every module logger, so ``MCP_DEBUG``
    applies to all of them.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(request_id)s%(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    logger = logging.getLogger("neon_mcp")

    request_filter = RequestIdFilter()
    for handler in logger.handlers:
        handler.addFilter(request_filter)
    for handler in logging.root.handlers:
        handler.addFilter(request_filter)

    if os.getenv("MCP_DEBUG", "").lower() in ("true", "1", "yes"):
        logger.setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")

    return logger


logger = configure_logging()
