"""Risk scoring for agent operations.

The score is a plain sum of independent terms. Nothing is clamped while the
terms accumulate; only the final bucketing into a level uses thresholds.
Terms are evaluated in a fixed order so ``factors`` reads the same way every
time:

1. operation type base risk
2. file path (critical system files, outside workspace, hidden files)
3. command patterns (execute only)
4. recent operation frequency (from the audit log)
5. time of day

The pattern tables below are data. Add patterns there, not in the scoring
code.
"""

from __future__ import annotations

import ntpath
import os
import posixpath
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from .audit_log import AuditLog
from .operations import OperationDescriptor, OperationType
from .settings import SafetyThresholds


# Float comparisons against thresholds tolerate accumulated rounding
# (0.6 + 0.3 must reach 0.9).
FLOAT_EPSILON = 1e-9


def _float_ge(a: float, b: float, epsilon: float = FLOAT_EPSILON) -> bool:
    return a > b - epsilon


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RiskPattern:
    pattern: Pattern[str]
    weight: float
    label: str


TYPE_BASE_RISK: Dict[str, float] = {
    OperationType.READ.value: 0.1,
    OperationType.WRITE.value: 0.4,
    OperationType.EXECUTE.value: 0.6,
    OperationType.DELETE.value: 0.8,
    OperationType.BROWSER.value: 0.3,
    OperationType.MCP.value: 0.4,
    OperationType.MODE_SWITCH.value: 0.2,
}
DEFAULT_TYPE_RISK = 0.3
HIGH_RISK_TYPE_FLOOR = 0.5

CRITICAL_PATH_WEIGHT = 0.4
OUTSIDE_WORKSPACE_WEIGHT = 0.2
HIDDEN_FILE_WEIGHT = 0.1

# First match wins; a path never collects this weight twice.
CRITICAL_PATH_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"/etc/passwd"),
    re.compile(r"/etc/shadow"),
    re.compile(r"/boot/"),
    re.compile(r"/proc/"),
    re.compile(r"/sys/"),
    re.compile(r"C:\\Windows\\System32", re.IGNORECASE),
    re.compile(r"C:\\Program Files", re.IGNORECASE),
    re.compile(r"\.ssh/id_"),
    re.compile(r"\.aws/credentials"),
    re.compile(r"\.env$"),
)

# Every matching pattern adds its weight.
COMMAND_RISK_PATTERNS: Tuple[RiskPattern, ...] = (
    RiskPattern(re.compile(r"rm\s+-rf", re.IGNORECASE), 0.8, "Recursive force delete"),
    RiskPattern(re.compile(r"del\s+/[fs]", re.IGNORECASE), 0.8, "Force delete (Windows)"),
    RiskPattern(re.compile(r"format\s+[a-z]:", re.IGNORECASE), 0.9, "Disk format"),
    RiskPattern(re.compile(r"mkfs", re.IGNORECASE), 0.9, "Create filesystem"),
    RiskPattern(re.compile(r"dd\s+if=", re.IGNORECASE), 0.7, "Disk copy/wipe"),
    RiskPattern(re.compile(r"chmod\s+777", re.IGNORECASE), 0.4, "Overly permissive permissions"),
    RiskPattern(re.compile(r"sudo\s+", re.IGNORECASE), 0.3, "Elevated privileges"),
    RiskPattern(re.compile(r"curl.*\|\s*sh", re.IGNORECASE), 0.6, "Download and execute"),
    RiskPattern(re.compile(r"wget.*\|\s*sh", re.IGNORECASE), 0.6, "Download and execute"),
    RiskPattern(re.compile(r">.*/dev/null", re.IGNORECASE), 0.2, "Output redirection"),
    RiskPattern(re.compile(r"&\s*$", re.IGNORECASE), 0.2, "Background execution"),
)

LONG_COMMAND_CHARS = 200
LONG_COMMAND_WEIGHT = 0.2
SHELL_METACHARS = re.compile(r"[;&|><(){}\[\]\\]")
MAX_SHELL_METACHARS = 5
SHELL_METACHARS_WEIGHT = 0.2

FREQUENCY_WINDOW_SECONDS = 300
FREQUENCY_MAX_OPERATIONS = 20
FREQUENCY_WEIGHT = 0.3

QUIET_HOURS_START = 6   # hour < 6
QUIET_HOURS_END = 22    # hour > 22
QUIET_HOURS_WEIGHT = 0.1

CRITICAL_SCORE = 0.9


@dataclass
class RiskAssessment:
    level: RiskLevel
    score: float
    factors: List[str] = field(default_factory=list)
    timestamp: float = 0.0

    @classmethod
    def disabled(cls, timestamp: float = 0.0) -> "RiskAssessment":
        """Assessment used when risk scoring is switched off."""
        return cls(level=RiskLevel.LOW, score=0.1, factors=[], timestamp=timestamp)

    def to_dict(self) -> Dict[str, object]:
        return {
            "level": self.level.value,
            "score": self.score,
            "factors": list(self.factors),
            "timestamp": self.timestamp,
        }


def _is_windows_path(path: str) -> bool:
    return bool(re.match(r"^[A-Za-z]:[\\/]", path)) or path.startswith("\\\\")


def resolve_path(path: str, workspace_dir: str) -> str:
    """Absolute, normalized form of ``path``; relative paths resolve against
    the workspace. Pure string manipulation, no filesystem access."""
    mod = ntpath if _is_windows_path(path) or _is_windows_path(workspace_dir) else posixpath
    root = workspace_dir if mod.isabs(workspace_dir) else os.path.abspath(workspace_dir)
    joined = path if mod.isabs(path) else mod.join(root, path)
    return mod.normcase(mod.normpath(joined))


def is_outside_workspace(path: str, workspace_dir: str) -> bool:
    """Segment-aware containment: ``/workspace-evil`` is outside ``/workspace``."""
    mod = ntpath if _is_windows_path(path) or _is_windows_path(workspace_dir) else posixpath
    target = resolve_path(path, workspace_dir)
    root = resolve_path(workspace_dir, workspace_dir)
    if target == root:
        return False
    prefix = root if root.endswith(mod.sep) else root + mod.sep
    return not target.startswith(prefix)


def _basename(path: str) -> str:
    return re.split(r"[\\/]", path.rstrip("/\\"))[-1] if path else ""


def score_type(op_type: str) -> Tuple[float, List[str]]:
    risk = TYPE_BASE_RISK.get(op_type, DEFAULT_TYPE_RISK)
    factors: List[str] = []
    if risk > HIGH_RISK_TYPE_FLOOR:
        factors.append(f"High-risk operation type: {op_type}")
    return risk, factors


def score_path(file_path: str, workspace_dir: str) -> Tuple[float, List[str]]:
    score = 0.0
    factors: List[str] = []

    for pattern in CRITICAL_PATH_PATTERNS:
        if pattern.search(file_path):
            score += CRITICAL_PATH_WEIGHT
            factors.append(f"Critical system file: {file_path}")
            break

    if is_outside_workspace(file_path, workspace_dir):
        score += OUTSIDE_WORKSPACE_WEIGHT
        factors.append("File outside workspace")

    if _basename(file_path).startswith("."):
        score += HIDDEN_FILE_WEIGHT
        factors.append("Hidden file or directory")

    return score, factors


def score_command(command: str) -> Tuple[float, List[str]]:
    score = 0.0
    factors: List[str] = []

    for rp in COMMAND_RISK_PATTERNS:
        if rp.pattern.search(command):
            score += rp.weight
            factors.append(rp.label)

    # Long commands might be obfuscated
    if len(command) > LONG_COMMAND_CHARS:
        score += LONG_COMMAND_WEIGHT
        factors.append("Unusually long command")

    if len(SHELL_METACHARS.findall(command)) > MAX_SHELL_METACHARS:
        score += SHELL_METACHARS_WEIGHT
        factors.append("Complex command with many special characters")

    return score, factors


def bucket(score: float, thresholds: SafetyThresholds) -> RiskLevel:
    level = RiskLevel.LOW
    if _float_ge(score, thresholds.high):
        level = RiskLevel.HIGH
    elif _float_ge(score, thresholds.medium):
        level = RiskLevel.MEDIUM
    if _float_ge(score, CRITICAL_SCORE):
        level = RiskLevel.CRITICAL
    return level


class RiskScorer:
    """Scores operations against the static tables above.

    Output depends on the clock (hour of day) and on how many audit entries
    were written recently, so two submissions of the same operation can score
    differently.
    """

    def __init__(
        self,
        workspace_dir: str = "./",
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
        thresholds: Optional[SafetyThresholds] = None,
    ):
        self.workspace_dir = workspace_dir
        self.audit_log = audit_log
        self._clock = clock or (lambda: datetime.now().astimezone())
        self.thresholds = thresholds or SafetyThresholds()

    def score(self, operation: OperationDescriptor, thresholds: Optional[SafetyThresholds] = None) -> RiskAssessment:
        now = self._clock()
        total = 0.0
        factors: List[str] = []

        type_risk, f = score_type(operation.type)
        total += type_risk
        factors.extend(f)

        if operation.file_path:
            path_risk, f = score_path(operation.file_path, self.workspace_dir)
            total += path_risk
            factors.extend(f)

        if operation.type == OperationType.EXECUTE.value and operation.command:
            cmd_risk, f = score_command(operation.command)
            total += cmd_risk
            factors.extend(f)

        if self.audit_log is not None:
            cutoff = (now - timedelta(seconds=FREQUENCY_WINDOW_SECONDS)).timestamp()
            if self.audit_log.count_since(cutoff) > FREQUENCY_MAX_OPERATIONS:
                total += FREQUENCY_WEIGHT
                factors.append("High frequency of operations")

        if now.hour < QUIET_HOURS_START or now.hour > QUIET_HOURS_END:
            total += QUIET_HOURS_WEIGHT
            factors.append("Operation outside normal hours")

        return RiskAssessment(
            level=bucket(total, thresholds or self.thresholds),
            score=total,
            factors=factors,
            timestamp=now.timestamp(),
        )
