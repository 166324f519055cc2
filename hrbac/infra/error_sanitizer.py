from __future__ import annotations

from typing import Any

import structlog

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "We are facing some issues in our system, please try again later."


def sanitize_error(exc: BaseException, **context: Any) -> str:
    """Log ``exc`` with full detail and return the message safe to show a caller."""
    logger.error(
        "request failed",
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
        **context,
    )
    return GENERIC_ERROR_MESSAGE
