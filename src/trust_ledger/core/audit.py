# SPDX-License-Identifier: MPL-2.0
"""Structured audit trail.

Every security- or provenance-relevant action emits one audit event with a
stable name. Events go to the ``trust_ledger.audit`` logger as JSON and,
when a path is configured, are appended to a JSON-lines file that can be
shipped or replayed independently of the application logs.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

_audit_logger = logging.getLogger("trust_ledger.audit")

_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class AuditLogger:
    """Writes audit events to the log and, optionally, a JSON-lines file."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    def configure(self, path: Optional[Union[str, Path]]) -> None:
        self.path = Path(path) if path else None

    def info(self, event: str, message: str, **payload: Any) -> Dict[str, Any]:
        return self._append("info", event, message, payload)

    def warn(self, event: str, message: str, **payload: Any) -> Dict[str, Any]:
        return self._append("warn", event, message, payload)

    def error(self, event: str, message: str, **payload: Any) -> Dict[str, Any]:
        return self._append("error", event, message, payload)

    def _append(self, level: str, event: str, message: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry = {
            "level": level,
            "event": event,
            "message": message,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        line = json.dumps(entry, default=str, sort_keys=True)
        _audit_logger.log(_LEVELS[level], line)

        if self.path is not None:
            try:
                with self._lock:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with self.path.open("a", encoding="utf-8") as handle:
                        handle.write(line + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log {self.path}: {e}")

        return entry


# Process-wide audit logger; configured from Settings at startup.
audit_logger = AuditLogger()
