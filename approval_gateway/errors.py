"""Stable error taxonomy for the approval gateway.

Every verdict carries one of these codes next to its human-readable reason,
so callers can branch on the code and show the reason verbatim.

Configuration problems (bad settings, malformed CLI input) are the only
things that raise; they use the single exception type defined here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Verdict codes
APG_OK = "APG_OK"
APG_E_EMERGENCY_STOP = "APG_E_EMERGENCY_STOP"
APG_E_RATE_LIMITED = "APG_E_RATE_LIMITED"
APG_E_REQUEST_DELAY = "APG_E_REQUEST_DELAY"
APG_E_RATE_LIMIT_KEYS = "APG_E_RATE_LIMIT_KEYS"
APG_E_RISK_CRITICAL = "APG_E_RISK_CRITICAL"
APG_E_CONFIRMATION_REQUIRED = "APG_E_CONFIRMATION_REQUIRED"
APG_E_UNKNOWN_OPERATION = "APG_E_UNKNOWN_OPERATION"
APG_E_TYPE_DISABLED = "APG_E_TYPE_DISABLED"
APG_E_COMMAND_DENIED = "APG_E_COMMAND_DENIED"
APG_E_COMMAND_NOT_ALLOWED = "APG_E_COMMAND_NOT_ALLOWED"
APG_E_OUTSIDE_WORKSPACE = "APG_E_OUTSIDE_WORKSPACE"
APG_E_PROTECTED_PATH = "APG_E_PROTECTED_PATH"

# Configuration / input
APG_E_INVALID_SETTINGS = "APG_E_INVALID_SETTINGS"
APG_E_BAD_REQUEST = "APG_E_BAD_REQUEST"


@dataclass
class ApprovalGatewayError(Exception):
    """Base exception with stable error code."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def gateway_error(code: str, message: str, **details: Any) -> ApprovalGatewayError:
    return ApprovalGatewayError(code=code, message=message, details=details)
