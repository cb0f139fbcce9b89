"""Auto-approval settings and engine wiring configuration.

``AutoApproveSettings`` is the object an external settings manager hands to
the engine. It accepts the camelCase option names the settings UI stores as
well as their snake_case field names; unknown keys are ignored.

``EngineConfig`` covers process wiring (workspace root, buffer sizes) and is
read from ``APG_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import APG_E_INVALID_SETTINGS, gateway_error


DEFAULT_DENIED_COMMANDS = ["rm -rf", "del /f /s /q", "format", "mkfs", "dd if="]


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class SafetyThresholds(BaseModel):
    """Risk score cut points. Only ``medium`` and ``high`` are compared;
    ``low`` is the fallthrough bucket."""

    model_config = ConfigDict(frozen=True)

    low: float = Field(default=0.3, ge=0.0, le=1.0)
    medium: float = Field(default=0.6, ge=0.0, le=1.0)
    high: float = Field(default=0.8, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "SafetyThresholds":
        if not (self.low <= self.medium <= self.high):
            raise ValueError("safety thresholds must satisfy low <= medium <= high")
        return self


class AutoApproveSettings(BaseModel):
    model_config = ConfigDict(
        alias_generator=_to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    # Per-type toggles
    always_allow_read_only: bool = False
    always_allow_read_only_outside_workspace: bool = False
    always_allow_write: bool = False
    always_allow_write_outside_workspace: bool = False
    always_allow_write_protected: bool = False
    always_allow_execute: bool = False
    always_allow_browser: bool = False
    always_allow_mcp: bool = False
    always_allow_mode_switch: bool = False
    always_allow_subtasks: bool = False
    always_allow_followup_questions: bool = False
    always_allow_update_todo_list: bool = False
    always_approve_resubmit: bool = False

    # Command filtering
    allowed_commands: List[str] = Field(default_factory=list)
    denied_commands: List[str] = Field(default_factory=lambda: list(DEFAULT_DENIED_COMMANDS))

    # Rate limiting
    allowed_max_requests: int = Field(default=100, ge=0)
    request_delay_seconds: int = Field(default=0, ge=0)
    followup_auto_approve_timeout_ms: int = Field(default=30000, ge=0)

    # Safety
    emergency_stop_enabled: bool = True
    audit_logging_enabled: bool = True
    risk_assessment_enabled: bool = True
    safety_thresholds: SafetyThresholds = Field(default_factory=SafetyThresholds)
    max_auto_approvals_per_hour: int = Field(default=50, ge=0)
    require_confirmation_for_high_risk: bool = True

    @field_validator("allowed_commands", "denied_commands", mode="before")
    @classmethod
    def _clean_patterns(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, set)):
            return value
        return normalize_patterns(value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AutoApproveSettings":
        """Validate a settings mapping, raising ApprovalGatewayError on failure."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise gateway_error(
                APG_E_INVALID_SETTINGS,
                "Invalid auto-approve settings",
                errors=[
                    {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
                    for err in e.errors()
                ],
            ) from e

    def merged(self, updates: Mapping[str, Any]) -> "AutoApproveSettings":
        """Return a new validated settings object with ``updates`` applied."""
        data = self.to_dict()
        for key, value in updates.items():
            data[_alias_for(str(key))] = value
        return AutoApproveSettings.from_mapping(data)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def _alias_for(key: str) -> str:
    field = AutoApproveSettings.model_fields.get(key)
    if field is not None and field.alias:
        return field.alias
    return key


def normalize_patterns(patterns: Any) -> List[str]:
    """Dedupe command patterns, keep order, drop blanks."""
    seen = set()
    out: List[str] = []
    for p in patterns or []:
        s = str(p).strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


@dataclass
class EngineConfig:
    """Process wiring for PolicyEngine.

    Environment variables:
    - APG_WORKSPACE_DIR: workspace root used for containment checks.
    - APG_AUDIT_CAPACITY: audit ring buffer size.
    - APG_RISK_CACHE_SIZE: number of cached risk assessments.
    - APG_RATE_LIMIT_MAX_KEYS: bound on distinct rate-limit keys.
    """

    workspace_dir: str = "./"
    audit_capacity: int = 1000
    risk_cache_size: int = 1000
    rate_limit_max_keys: int = 20000

    @classmethod
    def from_env(cls) -> "EngineConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except Exception:
                return default

        workspace = (os.getenv("APG_WORKSPACE_DIR", "") or "").strip() or cls.workspace_dir
        capacity = _get_int("APG_AUDIT_CAPACITY", cls.audit_capacity)
        cache = _get_int("APG_RISK_CACHE_SIZE", cls.risk_cache_size)
        max_keys = _get_int("APG_RATE_LIMIT_MAX_KEYS", cls.rate_limit_max_keys)

        # Clamp
        if capacity < 1:
            capacity = cls.audit_capacity
        if cache < 1:
            cache = cls.risk_cache_size
        if max_keys < 1:
            max_keys = cls.rate_limit_max_keys

        return cls(
            workspace_dir=workspace,
            audit_capacity=capacity,
            risk_cache_size=cache,
            rate_limit_max_keys=max_keys,
        )
