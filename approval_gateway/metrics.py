"""Prometheus metrics for the approval engine.

Labels stay low-cardinality: decision outcome, risk level, limiter reason.
Never label by path, command or user.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, generate_latest

from .audit_log import AuditDecision


DECISIONS_TOTAL = Counter(
    "apg_decisions_total",
    "Total auto-approval decisions",
    ["decision", "risk_level"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "apg_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["reason"],
)
EMERGENCY_STOP_ACTIVE = Gauge(
    "apg_emergency_stop_active",
    "1 if the emergency stop is engaged",
)
EMERGENCY_STOP_ACTIVATIONS_TOTAL = Counter(
    "apg_emergency_stop_activations_total",
    "Total emergency stop activations",
)


def record_decision(decision: AuditDecision, risk_level: str | None) -> None:
    DECISIONS_TOTAL.labels(decision=decision.value, risk_level=str(risk_level or "none")).inc()


def record_rate_limited(code: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(reason=str(code)).inc()


def set_emergency_stop_active(active: bool) -> None:
    EMERGENCY_STOP_ACTIVE.set(1.0 if active else 0.0)
    if active:
        EMERGENCY_STOP_ACTIVATIONS_TOTAL.inc()


def render_metrics() -> bytes:
    """Exposition-format payload for whatever serves /metrics."""
    return generate_latest()
