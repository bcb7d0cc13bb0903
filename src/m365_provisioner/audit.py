from __future__ import annotations

import json
import logging
import sys
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

_RESERVED = {"tenant_id", "correlation_id"}


@dataclass
class AuditEvent:
    timestamp: str
    level: str
    event: str
    tenant_id: Optional[str] = None
    correlation_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemoryAuditStore:
    """Bounded, thread-safe buffer of recent events (newest first) for the UI."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.appendleft(event)

    def list(self, limit: int = 100, tenant_id: Optional[str] = None) -> List[AuditEvent]:
        with self._lock:
            events = list(self._events)
        if tenant_id is not None:
            events = [event for event in events if event.tenant_id == tenant_id]
        return events[:limit]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class JsonAuditLogger:
    """Structured logger for session, discovery and provisioning events.

    Each call emits one JSON line on stdout and, when a store is attached, keeps a
    copy for the web UI. Keyword arguments become top-level JSON fields; values
    that are not JSON serializable are rendered with ``str``.
    """

    def __init__(
        self,
        name: str = "m365_provisioner",
        level: int = logging.INFO,
        store: Optional[InMemoryAuditStore] = None,
    ):
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(_JsonFormatter())
            self.logger.addHandler(handler)
        self.logger.setLevel(level)
        self.logger.propagate = False
        self.store = store

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, **fields)

    def _log(self, level: int, event: str, **fields: Any) -> None:
        if self.store and self.logger.isEnabledFor(level):
            self.store.append(
                AuditEvent(
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    level=logging.getLevelName(level),
                    event=event,
                    tenant_id=fields.get("tenant_id"),
                    correlation_id=fields.get("correlation_id"),
                    extra={k: v for k, v in fields.items() if k not in _RESERVED},
                )
            )
        self.logger.log(level, event, extra={"fields": fields})


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
        }

        fields: Optional[Dict[str, Any]] = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)
