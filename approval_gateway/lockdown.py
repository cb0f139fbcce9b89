"""Emergency stop for auto-approval.

While active, every decision is a denial, whatever the settings, rate limits
or risk score say. There is no expiry: the switch stays on until someone
turns it off.

Audit entries for activation/deactivation are written by ``PolicyEngine``,
which owns the audit log.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class EmergencyStopState:
    active: bool
    reason: Optional[str]
    activated_at: Optional[float]
    activation_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "reason": self.reason,
            "activatedAt": self.activated_at,
            "activationCount": self.activation_count,
        }


class EmergencyStop:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = False
        self._reason: Optional[str] = None
        self._activated_at: Optional[float] = None
        self._activation_count = 0

    def is_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def activation_count(self) -> int:
        with self._lock:
            return self._activation_count

    def activate(self, reason: str, now: float) -> None:
        with self._lock:
            self._active = True
            self._reason = reason
            self._activated_at = now
            self._activation_count += 1

    def deactivate(self) -> bool:
        """Clear the switch. Returns whether it was active."""
        with self._lock:
            was_active = self._active
            self._active = False
            self._reason = None
            self._activated_at = None
            return was_active

    def state(self) -> EmergencyStopState:
        with self._lock:
            return EmergencyStopState(
                active=self._active,
                reason=self._reason,
                activated_at=self._activated_at,
                activation_count=self._activation_count,
            )
