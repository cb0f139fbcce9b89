"""Bounded in-memory audit log of approval decisions.

One entry per decision (and per emergency-stop toggle). The buffer keeps the
newest ``capacity`` entries and silently drops the oldest beyond that.

Entries are not persisted. A caller that wants durable history should read
them through ``query`` and store them itself.
"""

from __future__ import annotations

import secrets
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Union


DEFAULT_AUDIT_CAPACITY = 1000


class AuditDecision(Enum):
    APPROVED = "approved"
    DENIED = "denied"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class AuditEntry:
    id: str
    timestamp: float
    operation: Dict[str, Any]
    decision: AuditDecision
    reason: str
    risk_level: Optional[str] = None

    @property
    def operation_type(self) -> Optional[str]:
        return self.operation.get("type")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "operation": dict(self.operation),
            "decision": self.decision.value,
            "reason": self.reason,
            "riskLevel": self.risk_level,
        }


def _new_audit_id() -> str:
    return secrets.token_hex(4)


class AuditLog:
    """Append-only ring buffer."""

    def __init__(self, capacity: int = DEFAULT_AUDIT_CAPACITY, enabled: bool = True):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self.enabled = bool(enabled)
        self._lock = threading.Lock()
        self._entries: Deque[AuditEntry] = deque(maxlen=self.capacity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(
        self,
        operation: Dict[str, Any],
        decision: Union[AuditDecision, str],
        reason: str,
        timestamp: float,
        risk_level: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Append an entry. Returns None when logging is disabled."""
        if not self.enabled:
            return None
        entry = AuditEntry(
            id=_new_audit_id(),
            timestamp=float(timestamp),
            operation=dict(operation),
            decision=AuditDecision(decision),
            reason=str(reason),
            risk_level=risk_level,
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def count_since(self, cutoff: float) -> int:
        with self._lock:
            return sum(1 for e in self._entries if e.timestamp >= cutoff)

    def query(
        self,
        now: float,
        time_range: Optional[float] = None,
        decision: Optional[Union[AuditDecision, str]] = None,
        operation_type: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Filtered entries, newest first.

        time_range: seconds before ``now``; entries older than that are skipped.
        An unknown decision value matches nothing.
        """
        with self._lock:
            entries = list(self._entries)

        if time_range:
            cutoff = now - float(time_range)
            entries = [e for e in entries if e.timestamp >= cutoff]
        if decision:
            try:
                wanted = AuditDecision(decision)
            except ValueError:
                return []
            entries = [e for e in entries if e.decision is wanted]
        if operation_type:
            entries = [e for e in entries if e.operation_type == operation_type]

        # Reverse first so equal timestamps keep newest-first order (sort is stable).
        entries.reverse()
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
