"""Approval gateway package.

Decides whether an autonomous coding agent may perform an operation without
asking a human first, using:

- Risk scoring of operation type, file path and command
- Per-key hourly caps and minimum request delay
- Per-type auto-approval toggles, command allow/deny lists, protected paths
- A manual emergency stop
- A bounded in-memory audit log

Convenience imports
------------------
The package avoids heavy import-time side effects. These names are loaded
lazily from the package root:

    from approval_gateway import PolicyEngine, OperationDescriptor, AutoApproveSettings
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "PolicyEngine",
    "Verdict",
    "OperationDescriptor",
    "OperationType",
    "AutoApproveSettings",
    "EngineConfig",
    "RiskAssessment",
    "RiskLevel",
    "RiskScorer",
    "AuditDecision",
    "AuditEntry",
    "ApprovalGatewayError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "PolicyEngine": ("approval_gateway.engine", "PolicyEngine"),
    "Verdict": ("approval_gateway.engine", "Verdict"),
    "OperationDescriptor": ("approval_gateway.operations", "OperationDescriptor"),
    "OperationType": ("approval_gateway.operations", "OperationType"),
    "AutoApproveSettings": ("approval_gateway.settings", "AutoApproveSettings"),
    "EngineConfig": ("approval_gateway.settings", "EngineConfig"),
    "RiskAssessment": ("approval_gateway.risk", "RiskAssessment"),
    "RiskLevel": ("approval_gateway.risk", "RiskLevel"),
    "RiskScorer": ("approval_gateway.risk", "RiskScorer"),
    "AuditDecision": ("approval_gateway.audit_log", "AuditDecision"),
    "AuditEntry": ("approval_gateway.audit_log", "AuditEntry"),
    "ApprovalGatewayError": ("approval_gateway.errors", "ApprovalGatewayError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(list(globals().keys()) + list(_LAZY_EXPORTS.keys()))
