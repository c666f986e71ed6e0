"""
Structured logging utilities.
Routes structlog JSON events through stdlib logging into a single log file.
Events emitted while an engine operation holds its gate carry the operation
kind and entity id.
"""
from __future__ import annotations

import logging
from pathlib import Path

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars


_CONFIGURED = False
_OPERATION_KEYS = ("operation", "entity_id")


def configure_logging(log_path: str | Path):
    """Configures process-wide structured logging to a file."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.INFO)

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(file_handler)

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def bind_operation(kind: str, entity_id: str):
    bind_contextvars(operation=kind, entity_id=entity_id)


def unbind_operation():
    unbind_contextvars(*_OPERATION_KEYS)


def get_logger(name: str):
    return structlog.get_logger(name)
