"""Structured logging setup for PoolForge.

The supervisor and every worker process log under the ``poolforge``
namespace. Every record is stamped with the worker id of the process that
wrote it (``None`` in the supervisor), so interleaved output from several
workers on one stderr stays attributable to a pool slot.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime


class _WorkerContext(logging.Filter):
    """Adds ``worker_id`` and a ``role`` label to every record."""

    def __init__(self, worker_id: int | None = None) -> None:
        super().__init__()
        self.worker_id = worker_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.worker_id = self.worker_id
        record.role = "supervisor" if self.worker_id is None else f"worker-{self.worker_id}"
        return True


class _JsonFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Emits one-line JSON objects with keys: timestamp, level, logger,
    role, worker_id, pid, message.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A single-line JSON string.
        """
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "role": getattr(record, "role", "supervisor"),
            "worker_id": getattr(record, "worker_id", None),
            "pid": record.process,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
    worker_id: int | None = None,
) -> logging.Logger:
    """Configure and return the root PoolForge logger.

    Installs a single stderr handler on the ``poolforge`` logger. Calling
    it again only updates levels and the worker id, so worker processes and
    tests can call it freely.

    Args:
        level: Logging level (e.g., ``logging.DEBUG``). Defaults to INFO.
        json_format: Emit one JSON object per line instead of plain text.
        worker_id: Id of the worker this process runs, None in the supervisor.

    Returns:
        The configured ``poolforge`` root logger.
    """
    logger = logging.getLogger("poolforge")
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
            for context in handler.filters:
                if isinstance(context, _WorkerContext):
                    context.worker_id = worker_id
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(_WorkerContext(worker_id))

    if json_format:
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(role)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``poolforge`` namespace.

    Args:
        name: Logger name, appended to the ``poolforge.`` prefix, e.g.
            ``get_logger("engine.pool")``.

    Returns:
        The child logger.
    """
    return logging.getLogger(f"poolforge.{name}")
