"""
Audit trail for guardrail decisions and resilience events.

Each event is one JSON object per line in EVENTS_FILE
(FLOWGUARD_EVENTS_FILE, default .hive-mind/events.jsonl).
"""

import json
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class EventType(Enum):
    GUARDRAIL_EVALUATED = "guardrail_evaluated"
    POLICY_FALLBACK = "policy_fallback"
    RULE_EVALUATION_FAILED = "rule_evaluation_failed"
    CIRCUIT_STATE_CHANGED = "circuit_state_changed"
    CIRCUIT_REJECTED = "circuit_rejected"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"
    OPERATION_TIMED_OUT = "operation_timed_out"
    IDEMPOTENCY_HIT = "idempotency_hit"
    IDEMPOTENCY_CREATED = "idempotency_created"


EVENTS_FILE = Path(os.getenv("FLOWGUARD_EVENTS_FILE", ".hive-mind/events.jsonl"))

_append_lock = threading.Lock()


@dataclass
class AuditEvent:
    event_type: EventType
    payload: dict[str, Any]
    metadata: Optional[dict[str, Any]] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_line(self) -> str:
        record = {
            "timestamp": self.timestamp,
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
        }
        if self.metadata:
            record["metadata"] = self.metadata
        # Decimals and datetimes in payloads are written as strings
        return json.dumps(record, default=str)


def log_event(
    event_type: EventType,
    payload: dict[str, Any],
    metadata: Optional[dict[str, Any]] = None
) -> str:
    """
    Append an event to the audit trail.

    Returns:
        The generated event_id
    """
    event = AuditEvent(event_type=event_type, payload=payload, metadata=metadata)
    line = event.to_line()

    with _append_lock:
        EVENTS_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(EVENTS_FILE, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    return event.event_id


def read_events(
    event_type: Optional[EventType] = None,
    since: Optional[datetime] = None
) -> list[dict[str, Any]]:
    """Return logged events in write order, optionally filtered by type and start time."""
    if not EVENTS_FILE.exists():
        return []

    cutoff = since.isoformat() if since else None
    with open(EVENTS_FILE, "r", encoding="utf-8") as f:
        records = [json.loads(line) for line in f if line.strip()]

    return [
        r for r in records
        if (event_type is None or r["event_type"] == event_type.value)
        and (cutoff is None or r["timestamp"] >= cutoff)
    ]
