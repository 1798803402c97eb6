from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from .models import LOG_ERROR, LOG_INFO, LOG_TYPES, LOG_WARNING

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .store import RecordStore

logger = logging.getLogger(__name__)

_LEVELS = {
    LOG_INFO: logging.INFO,
    LOG_WARNING: logging.WARNING,
    LOG_ERROR: logging.ERROR,
}


class OperationLog:
    """
    Append-only operational log.

    Each entry is persisted to the processing_logs table and mirrored to the
    stdlib logger. A failing write is reported but never raised.
    """

    def __init__(self, store: Optional["RecordStore"] = None):
        self._store = store

    def log(self, log_type: str, operation: str, message: str, **details: Any) -> None:
        if log_type not in LOG_TYPES:
            raise ValueError(f"Unknown log type: {log_type}")
        logger.log(_LEVELS[log_type], "[%s] %s: %s %s", log_type.upper(), operation, message, details or "")
        if self._store is None:
            return
        try:
            self._store.append_log(log_type, operation, message, details)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist log entry for operation=%s", operation)

    def info(self, operation: str, message: str, **details: Any) -> None:
        self.log(LOG_INFO, operation, message, **details)

    def warning(self, operation: str, message: str, **details: Any) -> None:
        self.log(LOG_WARNING, operation, message, **details)

    def error(self, operation: str, message: str, **details: Any) -> None:
        self.log(LOG_ERROR, operation, message, **details)
