"""Loguru configuration for the campus client.

Every record carries three context fields, taken from context variables so
they follow a coroutine across awaits and into the tasks it spawns:

- ``request_id``: one gateway HTTP request (also sent as ``X-Request-ID``)
- ``user_id``: the signed-in user
- ``operation``: the user action being carried out (``like_post``, ``feed``, ...)

Console output is meant for someone running the terminal client; JSON lines
are for shipping logs elsewhere.

Example:
    >>> from campusfeed.logging import logger, set_request_context
    >>> set_request_context(user_id="42", operation="like_post")
    >>> logger.info("Like applied")
"""

import json
import sys
import traceback
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

from loguru import logger as loguru_logger

from campusfeed.config import settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "user_id": user_id_var,
    "operation": operation_var,
}

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<magenta>{extra[operation]}</magenta> "
    "<dim>{name}</dim> "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} {level} [{extra[operation]}] {message}"


def _context() -> dict[str, str]:
    return {name: value for name, var in _CONTEXT_VARS.items() if (value := var.get())}


def to_json(record: dict[str, Any]) -> str:
    """One JSON line per record: message, origin, context and bound extras."""
    line: dict[str, Any] = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "logger": record["name"],
        "line": record["line"],
    }
    line.update(record["extra"])
    if line.get("operation") == "-":
        del line["operation"]

    if exc := record["exception"]:
        line["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value),
            "traceback": traceback.format_exception(exc.type, exc.value, exc.traceback),
        }
    return json.dumps(line, default=str)


def _attach_context(record: dict[str, Any]) -> None:
    record["extra"].update(_context())
    record["extra"].setdefault("operation", "-")
    record["extra"]["json"] = to_json(record)


def _json_format(_record: dict[str, Any]) -> str:
    return "{extra[json]}\n"


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | None = None,
    colorize: bool = True,
) -> Any:
    """Replace all Loguru sinks with the client's console and file sinks.

    Args:
        level: Minimum level for every sink
        json_logs: JSON lines on stderr instead of the console format
        log_file: Rotating log file, if any
        colorize: Colour the console format

    Returns:
        The context-patched logger
    """
    loguru_logger.remove()
    patched = loguru_logger.patch(_attach_context)

    if json_logs:
        patched.add(sys.stderr, level=level, format=_json_format)
    else:
        patched.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=colorize)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        patched.add(
            log_file,
            level=level,
            format=_json_format if json_logs else FILE_FORMAT,
            rotation="5 MB",
            retention=3,
            enqueue=True,
        )

    return patched


logger = setup_logging(
    level=settings.log_level,
    json_logs=settings.log_json,
    log_file=settings.log_file if settings.log_to_file else None,
    colorize=not settings.log_json,
)


def set_request_context(
    request_id: str | None = None,
    user_id: str | None = None,
    operation: str | None = None,
) -> None:
    """Set context fields for the current task and the tasks it spawns."""
    for name, value in (
        ("request_id", request_id),
        ("user_id", user_id),
        ("operation", operation),
    ):
        if value is not None:
            _CONTEXT_VARS[name].set(value)


def clear_request_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


@contextmanager
def request_scope() -> Iterator[str]:
    """Tag everything logged inside the block with a fresh request id."""
    request_id = uuid.uuid4().hex[:12]
    token = request_id_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_var.reset(token)


__all__ = [
    "logger",
    "request_id_var",
    "user_id_var",
    "operation_var",
    "set_request_context",
    "clear_request_context",
    "request_scope",
    "setup_logging",
]
