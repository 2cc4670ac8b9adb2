"""Structured logging for orderflow.

``setup_logging()`` routes structlog and the stdlib loggers (aiosqlite,
uvicorn) through one processor chain: a rich console for operators and
a rotating JSON-lines file for machines.  Modules take a logger from
``get_logger(__name__, component=...)``.

Order and request context is carried in contextvars rather than passed
around: the engine wraps every mutation in ``order_context`` and the API
wraps every request in ``request_context``, so any line logged underneath
(stores, notifications, retries) is tagged with the order and the caller.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

import structlog
from rich.console import Console
from rich.logging import RichHandler

_LOGGING_CONFIGURED: bool = False

_DEFAULT_LOG_DIR = Path(__file__).resolve().parents[2] / "data" / "logs"
_LOG_FILE_NAME = "orderflow.log"
_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("aiosqlite", "httpx", "stripe")
# uvicorn installs its own handlers; they are removed so its records reach ours.
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _render_money(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Log ``Decimal`` amounts as plain strings ("19.99")."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def _drop_color_message(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # uvicorn duplicates every message with ANSI codes under this key.
    event_dict.pop("color_message", None)
    return event_dict


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ],
        ),
        _render_money,
        _drop_color_message,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(log_level: str = "INFO", log_dir: Path | None = None) -> None:
    """Configure structlog, stdlib logging, and both handlers.

    Calling this more than once is a no-op.

    Parameters
    ----------
    log_level:
        Root log level as an uppercase string (``DEBUG``, ``INFO``, etc.).
    log_dir:
        Where ``orderflow.log`` rotates.  Defaults to ``$ORDERFLOW_LOG_DIR``
        and then ``data/logs`` under the project root.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if _LOGGING_CONFIGURED:
        return

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    if log_dir is None:
        log_dir = Path(os.environ.get("ORDERFLOW_LOG_DIR", str(_DEFAULT_LOG_DIR)))
    log_dir.mkdir(parents=True, exist_ok=True)

    shared = _shared_processors()

    rich_handler = RichHandler(
        console=Console(stderr=True, width=140),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    rich_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=True),
            foreign_pre_chain=shared,
        ),
    )

    file_handler = RotatingFileHandler(
        filename=str(log_dir / _LOG_FILE_NAME),
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=shared,
        ),
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    for handler in (rich_handler, file_handler):
        handler.setLevel(numeric_level)
        root_logger.addHandler(handler)

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _LOGGING_CONFIGURED = True


def get_logger(name: str, **initial_binds: Any) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for *name* with *initial_binds* attached.

    Every module binds a ``component`` (``engine``, ``api``, ...).
    """
    if not _LOGGING_CONFIGURED:
        setup_logging()
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    if initial_binds:
        logger = logger.bind(**initial_binds)
    return logger


@contextmanager
def order_context(order_id: str, actor_id: str | None = None) -> Iterator[None]:
    """Tag every line logged inside the block with the order and its actor."""
    binds: dict[str, Any] = {"order_id": order_id}
    if actor_id is not None:
        binds["actor_id"] = actor_id
    with structlog.contextvars.bound_contextvars(**binds):
        yield


@contextmanager
def request_context(request_id: str, method: str, path: str) -> Iterator[None]:
    """Tag every line logged while an API request is handled."""
    with structlog.contextvars.bound_contextvars(
        request_id=request_id, method=method, path=path
    ):
        yield
