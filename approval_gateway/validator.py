"""Safety review of auto-approval settings.

``AutoApproveSettings`` already rejects settings that are malformed. This
module looks at settings that are *valid but risky* and explains why, for a
settings UI or the ``validate-settings`` CLI command.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

from .errors import ApprovalGatewayError
from .settings import AutoApproveSettings


@dataclass
class ValidationIssue:
    field: str
    message: str
    suggestion: str = ""

    def to_dict(self) -> Dict[str, str]:
        d = {"field": self.field, "message": self.message}
        if self.suggestion:
            d["suggestion"] = self.suggestion
        return d


@dataclass
class ValidationReport:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class SecurityAnalysis:
    risk_level: str = "low"
    risks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "riskLevel": self.risk_level,
            "risks": list(self.risks),
            "recommendations": list(self.recommendations),
        }


def _any_auto_approval(s: AutoApproveSettings) -> bool:
    return any(
        (
            s.always_allow_read_only,
            s.always_allow_write,
            s.always_allow_execute,
            s.always_allow_browser,
            s.always_allow_mcp,
            s.always_allow_mode_switch,
            s.always_allow_subtasks,
            s.always_allow_followup_questions,
            s.always_allow_update_todo_list,
            s.always_approve_resubmit,
        )
    )


def safety_warnings(s: AutoApproveSettings) -> List[ValidationIssue]:
    warnings: List[ValidationIssue] = []

    if s.always_allow_write_protected:
        warnings.append(ValidationIssue(
            "alwaysAllowWriteProtected",
            "Allowing writes to protected files poses significant security risks",
            "Consider using selective auto-approve rules instead",
        ))

    if s.always_allow_execute and s.always_allow_write:
        warnings.append(ValidationIssue(
            "autoApprove",
            "Both execute and write permissions are auto-approved - high risk configuration",
            "Consider limiting auto-approve to specific commands or file patterns",
        ))

    if s.request_delay_seconds == 0 and (s.always_allow_write or s.always_allow_execute):
        warnings.append(ValidationIssue(
            "requestDelaySeconds",
            "No delay with auto-approve enabled may lead to rapid unintended actions",
            "Add a small delay (1-2 seconds) to allow for review",
        ))

    if s.always_allow_execute and not s.denied_commands:
        warnings.append(ValidationIssue(
            "deniedCommands",
            "Command execution is auto-approved with an empty deny list",
            "Keep destructive patterns such as 'rm -rf' and 'mkfs' denied",
        ))

    if _any_auto_approval(s):
        if not s.risk_assessment_enabled:
            warnings.append(ValidationIssue(
                "riskAssessmentEnabled",
                "Risk assessment is disabled while auto-approval is enabled",
                "Enable risk assessment so critical operations are blocked",
            ))
        if not s.audit_logging_enabled:
            warnings.append(ValidationIssue(
                "auditLoggingEnabled",
                "Audit logging is disabled while auto-approval is enabled",
                "Enable audit logging to keep a record of auto-approved operations",
            ))
        if not s.require_confirmation_for_high_risk:
            warnings.append(ValidationIssue(
                "requireConfirmationForHighRisk",
                "High risk operations will be auto-approved without confirmation",
                "Require confirmation for high risk operations",
            ))

    return warnings


def validate_settings(data: Union[AutoApproveSettings, Mapping[str, Any]]) -> ValidationReport:
    """Validate settings and collect safety warnings.

    Malformed settings come back as errors instead of raising.
    """
    report = ValidationReport()
    if isinstance(data, AutoApproveSettings):
        settings = data
    else:
        try:
            settings = AutoApproveSettings.from_mapping(data)
        except ApprovalGatewayError as e:
            for err in e.details.get("errors", []):
                report.errors.append(ValidationIssue(err.get("field", ""), err.get("message", "")))
            if not report.errors:
                report.errors.append(ValidationIssue("", e.message))
            return report

    report.warnings.extend(safety_warnings(settings))
    return report


def analyze_security_risks(s: AutoApproveSettings) -> SecurityAnalysis:
    analysis = SecurityAnalysis()

    def _raise_to_medium() -> None:
        if analysis.risk_level != "high":
            analysis.risk_level = "medium"

    if s.always_allow_write_protected:
        analysis.risks.append("Auto-approval for protected file writes")
        analysis.risk_level = "high"

    if s.always_allow_execute and s.always_allow_write:
        analysis.risks.append("Auto-approval for both execution and file modification")
        _raise_to_medium()

    if s.request_delay_seconds == 0 and (s.always_allow_write or s.always_allow_execute):
        analysis.risks.append("No delay for auto-approved dangerous operations")
        _raise_to_medium()

    if s.always_allow_write_outside_workspace:
        analysis.risks.append("Auto-approval for writes outside the workspace")
        _raise_to_medium()

    if analysis.risk_level != "low":
        analysis.recommendations.append("Review auto-approval settings for security implications")
        if any("protected" in r for r in analysis.risks):
            analysis.recommendations.append("Disable auto-approval for protected files")
        if any("delay" in r for r in analysis.risks):
            analysis.recommendations.append("Add delay for dangerous auto-approved operations")
        if any("outside the workspace" in r for r in analysis.risks):
            analysis.recommendations.append("Restrict auto-approved writes to the workspace")

    return analysis
