"""
structlog configuration shared by the API process and the worker.

Every line is one JSON object on stdout. Socket handlers bind
`socket_id`/`user_id` through contextvars so hub logs can be grouped per
connection without passing them around.
"""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: False renders coloured key=value lines for local runs
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Provider calls and websocket frames are logged by us already
    for noisy in ("httpx", "httpcore", "uvicorn.access", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_connection_context(socket_id: str, user_id: str | None = None) -> None:
    """Attach socket identity to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(socket_id=socket_id)
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_connection_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_delivery(user_id: str, notification_type: str, succeeded: int, attempted: int) -> None:
    """One line per dispatched notification; warning level when no channel got through."""
    logger = get_logger("notifications.delivery")
    fields = {
        "user_id": user_id,
        "notification_type": notification_type,
        "succeeded": succeeded,
        "attempted": attempted,
    }
    if succeeded == 0:
        logger.warning("Notification undelivered", **fields)
    else:
        logger.info("Notification dispatched", **fields)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user_id: str | None = None):
    logger = get_logger("http")
    fields = {"method": method, "path": path, "status_code": status_code, "duration_ms": duration_ms}
    if user_id:
        fields["user_id"] = user_id

    if status_code == 429:
        logger.info("HTTP request rate limited", **fields)
    elif status_code >= 400:
        logger.warning("HTTP request failed", **fields)
    else:
        logger.info("HTTP request completed", **fields)
