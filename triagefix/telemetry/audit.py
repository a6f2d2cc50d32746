from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AuditLogger:
    """
    Append-only JSONL trail of pipeline events (one record per line).

    Records carry a correlation id so every stage of one repair attempt
    (orchestration, review rounds, branch/commit calls) can be grouped later.
    """

    def __init__(self, path: str):
        self.path = path
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Any) -> Optional["AuditLogger"]:
        path = getattr(settings, "audit_log_path", None)
        return cls(path) if path else None

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "triagefix",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": payload,
        }
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


@dataclass
class AuditTrail:
    """Binds an optional AuditLogger to one correlation id; a no-op without a logger."""

    logger: Optional[AuditLogger] = None
    actor: str = "triagefix"
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def emit(self, event_type: str, **payload: Any) -> None:
        if self.logger is None:
            return
        self.logger.write(self.correlation_id, event_type, payload, actor=self.actor)
