"""Auto-approval policy engine.

``PolicyEngine.decide`` turns an operation descriptor into a verdict by
running a fixed sequence of gates. The first gate that fails decides:

    1. emergency stop
    2. rate limits (hourly cap, minimum delay)
    3. risk: critical -> deny
    4. risk: high + confirmation required -> ask a human
    5. per-type auto-approval toggle
    6. command deny/allow lists (execute)
    7. workspace containment and protected paths (read/write/delete)
    8. approve

``decide`` never raises. Every outcome is a ``Verdict`` with a readable
reason and a stable code, and every outcome writes exactly one audit entry
(while audit logging is enabled).

The engine owns all of its state (settings, limiter counters, audit log,
emergency stop, stats). A single re-entrant lock serializes public calls, so
concurrent callers cannot both pass the hourly cap on the same key.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

from . import metrics
from .audit_log import AuditDecision, AuditEntry, AuditLog
from .errors import (
    APG_E_COMMAND_DENIED,
    APG_E_COMMAND_NOT_ALLOWED,
    APG_E_CONFIRMATION_REQUIRED,
    APG_E_EMERGENCY_STOP,
    APG_E_OUTSIDE_WORKSPACE,
    APG_E_PROTECTED_PATH,
    APG_E_RATE_LIMITED,
    APG_E_RISK_CRITICAL,
    APG_E_TYPE_DISABLED,
    APG_E_UNKNOWN_OPERATION,
    APG_OK,
    ApprovalGatewayError,
)
from .lockdown import EmergencyStop
from .operations import OperationDescriptor, OperationType, generate_operation_id
from .ops_stats import SessionStats
from .ratelimit import ApprovalRateLimiter
from .risk import RiskAssessment, RiskLevel, RiskScorer, is_outside_workspace
from .settings import AutoApproveSettings, EngineConfig


logger = logging.getLogger("approval_gateway")


# Operation type -> settings toggle. Types missing here can never be
# auto-approved.
TYPE_TOGGLES: Dict[OperationType, str] = {
    OperationType.READ: "always_allow_read_only",
    OperationType.WRITE: "always_allow_write",
    OperationType.EXECUTE: "always_allow_execute",
    OperationType.BROWSER: "always_allow_browser",
    OperationType.MCP: "always_allow_mcp",
    OperationType.MODE_SWITCH: "always_allow_mode_switch",
    OperationType.SUBTASK: "always_allow_subtasks",
    OperationType.FOLLOWUP: "always_allow_followup_questions",
    OperationType.TODO_UPDATE: "always_allow_update_todo_list",
    OperationType.RESUBMIT: "always_approve_resubmit",
}

# Path-checked operation type -> toggle allowing paths outside the workspace.
# Delete is absent: the type gate refuses it before paths are looked at.
OUTSIDE_WORKSPACE_TOGGLES: Dict[OperationType, str] = {
    OperationType.READ: "always_allow_read_only_outside_workspace",
    OperationType.WRITE: "always_allow_write_outside_workspace",
}

PROTECTED_WRITE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"package\.json$"),
    re.compile(r"package-lock\.json$"),
    re.compile(r"\.git[\\/]"),
    re.compile(r"node_modules[\\/]"),
    re.compile(r"\.env$"),
)


@dataclass(frozen=True)
class Verdict:
    approved: bool
    reason: str
    code: str
    risk_level: Optional[str] = None
    auto_approved: bool = False
    requires_confirmation: bool = False
    risk_factors: Tuple[str, ...] = ()
    operation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "approved": self.approved,
            "reason": self.reason,
            "code": self.code,
        }
        if self.risk_level is not None:
            d["riskLevel"] = self.risk_level
        if self.approved:
            d["autoApproved"] = self.auto_approved
        if self.requires_confirmation:
            d["requiresConfirmation"] = True
            d["riskFactors"] = list(self.risk_factors)
        if self.operation_id is not None:
            d["operationId"] = self.operation_id
        return d


@dataclass(frozen=True)
class _GateResult:
    allowed: bool
    reason: str = ""
    code: str = APG_OK


_PASS = _GateResult(True)


def _now_local() -> datetime:
    return datetime.now().astimezone()


class PolicyEngine:
    """Decides whether an agent operation may proceed without a human."""

    def __init__(
        self,
        settings: Union[AutoApproveSettings, Mapping[str, Any], None] = None,
        workspace_dir: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.workspace_dir = workspace_dir if workspace_dir is not None else self.config.workspace_dir
        self._clock = clock or _now_local
        self._lock = threading.RLock()
        self._settings = self._coerce_settings(settings)

        self.audit_log = AuditLog(
            capacity=self.config.audit_capacity,
            enabled=self._settings.audit_logging_enabled,
        )
        self.rate_limiter = ApprovalRateLimiter(now=self._now(), max_keys=self.config.rate_limit_max_keys)
        self.risk_scorer = RiskScorer(
            workspace_dir=self.workspace_dir,
            audit_log=self.audit_log,
            clock=self._clock,
            thresholds=self._settings.safety_thresholds,
        )
        self.emergency_stop = EmergencyStop()
        self.stats = SessionStats()
        self._risk_cache: "OrderedDict[str, RiskAssessment]" = OrderedDict()

        logger.info("Auto-approve engine initialized (workspace=%s)", self.workspace_dir)

    @classmethod
    def from_env(
        cls,
        settings: Union[AutoApproveSettings, Mapping[str, Any], None] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "PolicyEngine":
        return cls(settings=settings, clock=clock, config=EngineConfig.from_env())

    # ---------------------------
    # Settings
    # ---------------------------

    @staticmethod
    def _coerce_settings(settings: Union[AutoApproveSettings, Mapping[str, Any], None]) -> AutoApproveSettings:
        if settings is None:
            return AutoApproveSettings()
        if isinstance(settings, AutoApproveSettings):
            return settings
        return AutoApproveSettings.from_mapping(settings)

    @property
    def settings(self) -> AutoApproveSettings:
        with self._lock:
            return self._settings

    def _apply_settings(self, new: AutoApproveSettings) -> None:
        self._settings = new
        self.audit_log.enabled = new.audit_logging_enabled
        self.risk_scorer.thresholds = new.safety_thresholds

    def configure(self, settings: Union[AutoApproveSettings, Mapping[str, Any]]) -> AutoApproveSettings:
        """Replace all settings; omitted options fall back to defaults."""
        with self._lock:
            try:
                new = self._coerce_settings(settings)
            except ApprovalGatewayError:
                logger.warning("Rejected auto-approve settings; keeping previous configuration")
                raise
            self._apply_settings(new)
            return new

    def update_settings(self, updates: Mapping[str, Any]) -> AutoApproveSettings:
        """Apply a partial update (camelCase or snake_case keys)."""
        with self._lock:
            try:
                new = self._settings.merged(updates)
            except ApprovalGatewayError:
                logger.warning("Rejected auto-approve settings update: %s", sorted(updates))
                raise
            self._apply_settings(new)
            return new

    def update_allowed_commands(self, patterns: Iterable[str]) -> AutoApproveSettings:
        return self.update_settings({"allowedCommands": list(patterns)})

    def update_denied_commands(self, patterns: Iterable[str]) -> AutoApproveSettings:
        return self.update_settings({"deniedCommands": list(patterns)})

    # ---------------------------
    # Decision
    # ---------------------------

    def _now(self) -> float:
        return self._clock().timestamp()

    def decide(self, operation: OperationDescriptor) -> Verdict:
        with self._lock:
            now = self._now()
            op_id = operation.id or generate_operation_id(operation, int(now * 1000))
            settings = self._settings
            self.stats.record_request()

            if self.emergency_stop.is_active():
                self.stats.record_denied()
                return self._finish(operation, op_id, now, AuditDecision.DENIED,
                                    "Emergency stop is active", APG_E_EMERGENCY_STOP)

            rl = self.rate_limiter.check(
                operation,
                now,
                max_per_hour=settings.max_auto_approvals_per_hour,
                delay_seconds=settings.request_delay_seconds,
            )
            if not rl.allowed:
                self.stats.record_denied()
                self._safe_metric(metrics.record_rate_limited, rl.code)
                return self._finish(operation, op_id, now, AuditDecision.DENIED,
                                    rl.reason or "Rate limit exceeded", rl.code or APG_E_RATE_LIMITED)

            assessment = self._assess(operation, op_id)
            level = assessment.level.value

            if assessment.level is RiskLevel.CRITICAL:
                self.stats.record_risk_blocked()
                return self._finish(operation, op_id, now, AuditDecision.DENIED,
                                    "Operation deemed too risky", APG_E_RISK_CRITICAL, risk_level=level)

            if assessment.level is RiskLevel.HIGH and settings.require_confirmation_for_high_risk:
                self.stats.record_confirmation()
                return self._finish(operation, op_id, now, AuditDecision.REQUIRES_CONFIRMATION,
                                    "High risk operation requires confirmation", APG_E_CONFIRMATION_REQUIRED,
                                    risk_level=level, risk_factors=tuple(assessment.factors))

            for gate in (self._check_operation_type, self._check_command, self._check_file_path):
                result = gate(operation, settings)
                if not result.allowed:
                    self.stats.record_denied()
                    return self._finish(operation, op_id, now, AuditDecision.DENIED,
                                        result.reason, result.code, risk_level=level)

            self.stats.record_approved()
            self.rate_limiter.track(operation, now)
            return self._finish(operation, op_id, now, AuditDecision.APPROVED,
                                "Auto-approved", APG_OK, risk_level=level)

    def _finish(
        self,
        operation: OperationDescriptor,
        op_id: str,
        now: float,
        decision: AuditDecision,
        reason: str,
        code: str,
        risk_level: Optional[str] = None,
        risk_factors: Tuple[str, ...] = (),
    ) -> Verdict:
        self.audit_log.record(operation.summary(), decision, reason, timestamp=now, risk_level=risk_level)
        self._safe_metric(metrics.record_decision, decision, risk_level)
        logger.debug("%s %s operation %s: %s", decision.value, operation.type, op_id, reason)
        approved = decision is AuditDecision.APPROVED
        return Verdict(
            approved=approved,
            reason=reason,
            code=code,
            risk_level=risk_level,
            auto_approved=approved,
            requires_confirmation=decision is AuditDecision.REQUIRES_CONFIRMATION,
            risk_factors=risk_factors,
            operation_id=op_id,
        )

    @staticmethod
    def _safe_metric(fn: Callable[..., None], *args: Any) -> None:
        # metrics must never break a decision
        try:
            fn(*args)
        except Exception:
            logger.debug("metric %s failed", getattr(fn, "__name__", fn), exc_info=True)

    # ---------------------------
    # Gates
    # ---------------------------

    def _check_operation_type(self, operation: OperationDescriptor, settings: AutoApproveSettings) -> _GateResult:
        op_type = operation.operation_type
        if op_type is None:
            return _GateResult(False, f"Unknown operation type: {operation.type}", APG_E_UNKNOWN_OPERATION)
        toggle = TYPE_TOGGLES.get(op_type)
        if toggle is None:
            return _GateResult(False, f"Auto-approval not available for {op_type.value} operations",
                               APG_E_TYPE_DISABLED)
        if not getattr(settings, toggle):
            return _GateResult(False, f"Auto-approval disabled for {op_type.value} operations", APG_E_TYPE_DISABLED)
        return _PASS

    def _check_command(self, operation: OperationDescriptor, settings: AutoApproveSettings) -> _GateResult:
        if operation.operation_type is not OperationType.EXECUTE:
            return _PASS
        command = (operation.command or "").lower()

        for denied in settings.denied_commands:
            if denied.lower() in command:
                return _GateResult(False, f"Command contains denied pattern: {denied}", APG_E_COMMAND_DENIED)

        if settings.allowed_commands:
            if not any(allowed.lower() in command for allowed in settings.allowed_commands):
                return _GateResult(False, "Command not in allowed list", APG_E_COMMAND_NOT_ALLOWED)

        return _PASS

    def _check_file_path(self, operation: OperationDescriptor, settings: AutoApproveSettings) -> _GateResult:
        op_type = operation.operation_type
        toggle = OUTSIDE_WORKSPACE_TOGGLES.get(op_type)
        if toggle is None:
            return _PASS
        file_path = operation.file_path or ""

        if is_outside_workspace(file_path, self.workspace_dir):
            if not getattr(settings, toggle):
                return _GateResult(
                    False,
                    f"{op_type.value.capitalize()} operations outside workspace not allowed",
                    APG_E_OUTSIDE_WORKSPACE,
                )

        if op_type is OperationType.WRITE and not settings.always_allow_write_protected:
            for pattern in PROTECTED_WRITE_PATTERNS:
                if pattern.search(file_path):
                    return _GateResult(False, f"Write to protected file not allowed: {file_path}",
                                       APG_E_PROTECTED_PATH)

        return _PASS

    # ---------------------------
    # Risk
    # ---------------------------

    def _assess(self, operation: OperationDescriptor, op_id: str) -> RiskAssessment:
        if not self._settings.risk_assessment_enabled:
            assessment = RiskAssessment.disabled(timestamp=self._now())
        else:
            assessment = self.risk_scorer.score(operation, self._settings.safety_thresholds)
        self._risk_cache[op_id] = assessment
        self._risk_cache.move_to_end(op_id)
        while len(self._risk_cache) > self.config.risk_cache_size:
            self._risk_cache.popitem(last=False)
        return assessment

    def assess_risk(self, operation: OperationDescriptor) -> RiskAssessment:
        """Score an operation without deciding on it."""
        with self._lock:
            op_id = operation.id or generate_operation_id(operation, int(self._now() * 1000))
            return self._assess(operation, op_id)

    def cached_assessment(self, operation_id: str) -> Optional[RiskAssessment]:
        with self._lock:
            return self._risk_cache.get(operation_id)

    # ---------------------------
    # Emergency stop
    # ---------------------------

    def activate_emergency_stop(self, reason: str = "Manual activation") -> None:
        with self._lock:
            now = self._now()
            self.emergency_stop.activate(reason, now)
            self.stats.record_emergency_stop()
            self.audit_log.record({"type": "emergency_stop"}, AuditDecision.ACTIVATED, reason, timestamp=now)
            self._safe_metric(metrics.set_emergency_stop_active, True)
        logger.warning("Emergency stop activated: %s", reason)

    def deactivate_emergency_stop(self) -> None:
        with self._lock:
            self.emergency_stop.deactivate()
            self.audit_log.record({"type": "emergency_stop"}, AuditDecision.DEACTIVATED,
                                  "Manual deactivation", timestamp=self._now())
            self._safe_metric(metrics.set_emergency_stop_active, False)
        logger.info("Emergency stop deactivated")

    def is_emergency_stop_active(self) -> bool:
        return self.emergency_stop.is_active()

    # ---------------------------
    # Reporting
    # ---------------------------

    def get_audit_log(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        time_range: Optional[float] = None,
        decision: Optional[Union[AuditDecision, str]] = None,
        operation_type: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Audit entries, newest first.

        ``filters`` accepts the camelCase keys a UI sends (``timeRange`` in
        seconds, ``decision``, ``operationType``); keyword arguments win.
        """
        filters = dict(filters or {})
        with self._lock:
            return self.audit_log.query(
                now=self._now(),
                time_range=time_range if time_range is not None else filters.get("timeRange"),
                decision=decision or filters.get("decision"),
                operation_type=operation_type or filters.get("operationType"),
            )

    def get_session_stats(self) -> Dict[str, Any]:
        with self._lock:
            return self.stats.snapshot(
                extra={
                    "emergencyStopActive": self.emergency_stop.is_active(),
                    "currentHourlyCount": self.rate_limiter.current_hourly_count(self._now()),
                }
            )

    def reset(self) -> None:
        """Clear audit log, limiter state, risk cache and stats.

        The emergency stop is left as it is.
        """
        with self._lock:
            self.audit_log.clear()
            self.rate_limiter.clear(self._now())
            self._risk_cache.clear()
            self.stats.reset()
