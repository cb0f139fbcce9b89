"""Session statistics for the approval engine.

Lightweight in-memory counters. They reset with the engine (or on process
restart) and are not audit evidence; use the audit log for that.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class _Counters:
    total_requests: int = 0
    approved_requests: int = 0
    denied_requests: int = 0
    risk_blocked: int = 0
    confirmation_requests: int = 0
    emergency_stops: int = 0


class SessionStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._c = _Counters()

    def record_request(self) -> None:
        with self._lock:
            self._c.total_requests += 1

    def record_approved(self) -> None:
        with self._lock:
            self._c.approved_requests += 1

    def record_denied(self) -> None:
        with self._lock:
            self._c.denied_requests += 1

    def record_risk_blocked(self) -> None:
        with self._lock:
            self._c.risk_blocked += 1

    def record_confirmation(self) -> None:
        with self._lock:
            self._c.confirmation_requests += 1

    def record_emergency_stop(self) -> None:
        with self._lock:
            self._c.emergency_stops += 1

    def reset(self) -> None:
        with self._lock:
            self._c = _Counters()

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "totalRequests": c.total_requests,
                "approvedRequests": c.approved_requests,
                "deniedRequests": c.denied_requests,
                "riskBlocked": c.risk_blocked,
                "confirmationRequests": c.confirmation_requests,
                "emergencyStops": c.emergency_stops,
                "approvalRate": (
                    (c.approved_requests / c.total_requests) * 100 if c.total_requests > 0 else 0
                ),
            }
        if extra:
            snap.update(extra)
        return snap
