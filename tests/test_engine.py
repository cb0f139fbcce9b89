import threading

import pytest

from approval_gateway.audit_log import AuditDecision
from approval_gateway.engine import PolicyEngine
from approval_gateway.errors import (
    APG_E_COMMAND_DENIED,
    APG_E_COMMAND_NOT_ALLOWED,
    APG_E_CONFIRMATION_REQUIRED,
    APG_E_EMERGENCY_STOP,
    APG_E_INVALID_SETTINGS,
    APG_E_OUTSIDE_WORKSPACE,
    APG_E_PROTECTED_PATH,
    APG_E_RATE_LIMITED,
    APG_E_REQUEST_DELAY,
    APG_E_RISK_CRITICAL,
    APG_E_TYPE_DISABLED,
    APG_E_UNKNOWN_OPERATION,
    APG_OK,
    ApprovalGatewayError,
)
from approval_gateway.metrics import render_metrics
from approval_gateway.operations import OperationDescriptor


def _read(path="/workspace/src/app.py", user=None):
    return OperationDescriptor(type="read", file_path=path, user_id=user)


def _exec(command, user=None):
    return OperationDescriptor(type="execute", command=command, user_id=user)


def _write(path):
    return OperationDescriptor(type="write", file_path=path)


# ---------------------------
# Happy path and verdict shape
# ---------------------------

def test_low_risk_read_is_auto_approved(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    v = engine.decide(_read())
    assert v.approved is True
    assert v.auto_approved is True
    assert v.code == APG_OK
    assert v.reason == "Auto-approved"
    d = v.to_dict()
    assert d["riskLevel"] == "low"
    assert d["autoApproved"] is True
    assert "requiresConfirmation" not in d


def test_everything_denied_with_default_settings(make_engine):
    engine = make_engine()
    v = engine.decide(_read())
    assert v.approved is False
    assert v.reason == "Auto-approval disabled for read operations"
    assert v.code == APG_E_TYPE_DISABLED
    d = v.to_dict()
    assert "autoApproved" not in d
    assert "riskFactors" not in d


def test_relative_path_resolves_inside_workspace(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    assert engine.decide(_read("src/app.py")).approved


# ---------------------------
# Emergency stop
# ---------------------------

def test_emergency_stop_denies_before_any_other_gate(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=0)
    engine.activate_emergency_stop("Suspicious activity")

    v = engine.decide(_read())
    assert v.approved is False
    assert v.reason == "Emergency stop is active"
    assert v.code == APG_E_EMERGENCY_STOP
    # no risk was computed
    assert v.risk_level is None
    assert "riskLevel" not in v.to_dict()


def test_emergency_stop_audit_entries_and_stats(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.activate_emergency_stop("Suspicious activity")
    assert engine.is_emergency_stop_active()

    stats = engine.get_session_stats()
    assert stats["emergencyStops"] == 1
    assert stats["emergencyStopActive"] is True

    clock.advance(1)
    engine.deactivate_emergency_stop()
    assert not engine.is_emergency_stop_active()
    assert engine.decide(_read()).approved

    entries = engine.get_audit_log()
    assert [e.decision for e in entries] == [
        AuditDecision.APPROVED,
        AuditDecision.DEACTIVATED,
        AuditDecision.ACTIVATED,
    ]
    assert entries[2].operation == {"type": "emergency_stop"}
    assert entries[2].reason == "Suspicious activity"
    assert entries[1].reason == "Manual deactivation"


def test_emergency_stop_default_reason(make_engine):
    engine = make_engine()
    engine.activate_emergency_stop()
    assert engine.emergency_stop.state().reason == "Manual activation"


# ---------------------------
# Rate limits
# ---------------------------

def test_hourly_cap_then_lazy_reset(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=3)

    results = [engine.decide(_read()) for _ in range(5)]
    assert [r.approved for r in results] == [True, True, True, False, False]
    assert results[3].reason == "Hourly auto-approval limit exceeded (3)"
    assert results[3].code == APG_E_RATE_LIMITED

    clock.advance(3601)
    assert engine.decide(_read()).approved


def test_denials_never_move_the_hourly_count(make_engine):
    engine = make_engine(maxAutoApprovalsPerHour=2, alwaysAllowReadOnly=False)
    for _ in range(5):
        assert not engine.decide(_read()).approved
    assert engine.rate_limiter.hourly_count(_read()) == 0
    assert engine.get_session_stats()["currentHourlyCount"] == 0


def test_rate_limit_keys_are_per_type_and_user(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=1)
    assert engine.decide(_read(user="alice")).approved
    assert not engine.decide(_read(user="alice")).approved
    assert engine.decide(_read(user="bob")).approved
    # missing user maps to its own "default" key
    assert engine.decide(_read()).approved


def test_request_delay_reports_remaining_seconds(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True, requestDelaySeconds=10)
    assert engine.decide(_read()).approved

    clock.advance(5)
    v = engine.decide(_read())
    assert v.reason == "Request delay not met. Wait 5 seconds"
    assert v.code == APG_E_REQUEST_DELAY

    clock.advance(2)
    assert engine.decide(_read()).reason == "Request delay not met. Wait 3 seconds"

    clock.advance(3)
    assert engine.decide(_read()).approved


def test_hourly_cap_holds_under_threads(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=5)
    approved = []
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            v = engine.decide(_read(user="shared"))
            if v.approved:
                with lock:
                    approved.append(v)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(approved) == 5
    assert len(engine.get_audit_log()) == 80
    assert engine.get_session_stats()["totalRequests"] == 80


# ---------------------------
# Risk gates
# ---------------------------

def test_critical_risk_is_denied_even_when_execute_allowed(make_engine):
    engine = make_engine(alwaysAllowExecute=True, deniedCommands=[])
    v = engine.decide(_exec("mkfs.ext4 /dev/sdb"))
    assert v.approved is False
    assert v.reason == "Operation deemed too risky"
    assert v.code == APG_E_RISK_CRITICAL
    assert v.risk_level == "critical"
    assert engine.get_session_stats()["riskBlocked"] == 1


def test_critical_overrides_custom_thresholds(make_engine):
    engine = make_engine(
        alwaysAllowExecute=True,
        deniedCommands=[],
        safetyThresholds={"low": 0.5, "medium": 0.95, "high": 0.99},
    )
    # 0.6 + 0.3 (sudo) = 0.9
    v = engine.decide(_exec("sudo ls"))
    assert v.code == APG_E_RISK_CRITICAL


def test_high_risk_requires_confirmation(make_engine):
    engine = make_engine(alwaysAllowExecute=True)
    v = engine.decide(_exec("ls > /dev/null"))
    assert v.approved is False
    assert v.requires_confirmation is True
    assert v.code == APG_E_CONFIRMATION_REQUIRED
    assert v.reason == "High risk operation requires confirmation"
    d = v.to_dict()
    assert d["requiresConfirmation"] is True
    assert d["riskLevel"] == "high"
    assert d["riskFactors"] == ["High-risk operation type: execute", "Output redirection"]

    entry = engine.get_audit_log()[0]
    assert entry.decision is AuditDecision.REQUIRES_CONFIRMATION
    assert engine.get_session_stats()["confirmationRequests"] == 1


def test_high_risk_without_confirmation_falls_through(make_engine):
    engine = make_engine(alwaysAllowExecute=True, requireConfirmationForHighRisk=False)
    v = engine.decide(_exec("ls > /dev/null"))
    assert v.approved is True
    assert v.risk_level == "high"


def test_delete_is_never_auto_approved(make_engine):
    op = OperationDescriptor(type="delete", file_path="/workspace/old.txt")

    v = make_engine().decide(op)
    assert v.requires_confirmation is True

    v = make_engine(requireConfirmationForHighRisk=False).decide(op)
    assert v.approved is False
    assert v.reason == "Auto-approval not available for delete operations"
    assert v.code == APG_E_TYPE_DISABLED


def test_risk_assessment_disabled_reports_low(make_engine):
    engine = make_engine(alwaysAllowExecute=True, riskAssessmentEnabled=False, deniedCommands=[])
    v = engine.decide(_exec("mkfs.ext4 /dev/sdb"))
    assert v.approved is True
    assert v.risk_level == "low"


# ---------------------------
# Command lists
# ---------------------------

def test_deny_list_wins_over_allow_list(make_engine):
    engine = make_engine(
        alwaysAllowExecute=True,
        riskAssessmentEnabled=False,
        allowedCommands=["echo"],
    )
    v = engine.decide(_exec("echo hi && rm -rf /tmp/x"))
    assert v.approved is False
    assert v.reason == "Command contains denied pattern: rm -rf"
    assert v.code == APG_E_COMMAND_DENIED


def test_deny_list_is_case_insensitive(make_engine):
    engine = make_engine(alwaysAllowExecute=True, riskAssessmentEnabled=False)
    v = engine.decide(_exec("RM -RF /"))
    assert v.reason == "Command contains denied pattern: rm -rf"


def test_allow_list_miss_and_match(make_engine):
    engine = make_engine(alwaysAllowExecute=True, allowedCommands=["npm test"])

    v = engine.decide(_exec("ls"))
    assert v.approved is False
    assert v.reason == "Command not in allowed list"
    assert v.code == APG_E_COMMAND_NOT_ALLOWED
    assert v.risk_level == "medium"

    assert engine.decide(_exec("NPM TEST --watch")).approved


def test_execute_without_command(make_engine):
    assert make_engine(alwaysAllowExecute=True).decide(OperationDescriptor(type="execute")).approved

    engine = make_engine(alwaysAllowExecute=True, allowedCommands=["npm test"])
    v = engine.decide(OperationDescriptor(type="execute"))
    assert v.reason == "Command not in allowed list"


def test_update_command_lists(make_engine):
    engine = make_engine(alwaysAllowExecute=True)
    s = engine.update_allowed_commands([" git status ", "git status", ""])
    assert s.allowed_commands == ["git status"]
    assert not engine.decide(_exec("ls")).approved

    engine.update_denied_commands(["git"])
    assert engine.decide(_exec("git status")).reason == "Command contains denied pattern: git"


# ---------------------------
# File paths
# ---------------------------

def test_read_outside_workspace(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    v = engine.decide(_read("/etc/passwd"))
    assert v.approved is False
    assert v.reason == "Read operations outside workspace not allowed"
    assert v.code == APG_E_OUTSIDE_WORKSPACE
    assert v.risk_level == "medium"

    engine.update_settings({"alwaysAllowReadOnlyOutsideWorkspace": True})
    assert engine.decide(_read("/etc/passwd")).approved


def test_sibling_directory_is_outside_workspace(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    v = engine.decide(_read("/workspace-evil/notes.txt"))
    assert v.reason == "Read operations outside workspace not allowed"


def test_write_outside_workspace(make_engine):
    engine = make_engine(alwaysAllowWrite=True)
    v = engine.decide(_write("/tmp/out.txt"))
    assert v.reason == "Write operations outside workspace not allowed"

    engine.update_settings({"always_allow_write_outside_workspace": True})
    assert engine.decide(_write("/tmp/out.txt")).approved


@pytest.mark.parametrize(
    "path",
    [
        "/workspace/package.json",
        "/workspace/package-lock.json",
        "/workspace/.git/config",
        "/workspace/node_modules/lib/index.js",
    ],
)
def test_protected_paths_block_writes(make_engine, path):
    engine = make_engine(alwaysAllowWrite=True)
    v = engine.decide(_write(path))
    assert v.approved is False
    assert v.reason == f"Write to protected file not allowed: {path}"
    assert v.code == APG_E_PROTECTED_PATH


def test_protected_paths_with_windows_separators(make_engine):
    engine = make_engine(workspace="C:\\ws", alwaysAllowWrite=True)
    v = engine.decide(_write("C:\\ws\\node_modules\\lib\\index.js"))
    assert v.code == APG_E_PROTECTED_PATH


def test_env_file_write(make_engine):
    # .env scores 0.4 + 0.4 (critical file) + 0.1 (hidden) with risk on
    engine = make_engine(alwaysAllowWrite=True)
    assert engine.decide(_write("/workspace/.env")).code == APG_E_RISK_CRITICAL

    engine = make_engine(alwaysAllowWrite=True, riskAssessmentEnabled=False)
    v = engine.decide(_write("/workspace/.env"))
    assert v.reason == "Write to protected file not allowed: /workspace/.env"


def test_protected_write_toggle(make_engine):
    engine = make_engine(alwaysAllowWrite=True, alwaysAllowWriteProtected=True)
    assert engine.decide(_write("/workspace/package.json")).approved


def test_unknown_operation_type(make_engine):
    v = make_engine().decide(OperationDescriptor(type="teleport"))
    assert v.approved is False
    assert v.reason == "Unknown operation type: teleport"
    assert v.code == APG_E_UNKNOWN_OPERATION


@pytest.mark.parametrize(
    "op_type,toggle",
    [
        ("browser", "alwaysAllowBrowser"),
        ("mcp", "alwaysAllowMcp"),
        ("mode_switch", "alwaysAllowModeSwitch"),
        ("subtask", "alwaysAllowSubtasks"),
        ("followup", "alwaysAllowFollowupQuestions"),
        ("todo_update", "alwaysAllowUpdateTodoList"),
        ("resubmit", "alwaysApproveResubmit"),
    ],
)
def test_type_toggles(make_engine, op_type, toggle):
    op = OperationDescriptor(type=op_type)
    assert make_engine().decide(op).reason == f"Auto-approval disabled for {op_type} operations"
    assert make_engine(**{toggle: True}).decide(op).approved


# ---------------------------
# Audit log
# ---------------------------

def test_every_decision_is_audited_newest_first(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True)
    for i in range(5):
        engine.decide(_read(f"/workspace/f{i}.txt"))
        clock.advance(1)

    entries = engine.get_audit_log()
    assert len(entries) == 5
    assert [e.operation["filePath"] for e in entries] == [f"/workspace/f{i}.txt" for i in reversed(range(5))]
    assert all(e.decision is AuditDecision.APPROVED for e in entries)
    assert entries[0].to_dict()["riskLevel"] == "low"


def test_audit_log_keeps_newest_thousand(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True)
    start = clock().timestamp()
    for _ in range(1005):
        engine.decide(_read())
        clock.advance(1)

    entries = engine.get_audit_log()
    assert len(entries) == 1000
    assert entries[0].timestamp == start + 1004
    assert entries[-1].timestamp == start + 5


def test_audit_log_filters(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.decide(_exec("ls"))
    clock.advance(600)
    engine.decide(_read())

    assert [e.operation_type for e in engine.get_audit_log(decision="denied")] == ["execute"]
    assert len(engine.get_audit_log({"operationType": "read"})) == 1
    assert len(engine.get_audit_log({"timeRange": 60})) == 1
    assert len(engine.get_audit_log(time_range=3600)) == 2


def test_audit_logging_disabled(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, auditLoggingEnabled=False)
    assert engine.decide(_read()).approved
    engine.activate_emergency_stop()
    assert engine.get_audit_log() == []


def test_frequency_term_from_recent_decisions(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=100)
    for _ in range(21):
        engine.decide(_read())
    a = engine.assess_risk(_read())
    assert "High frequency of operations" in a.factors
    assert a.level.value == "low"


# ---------------------------
# Settings, stats, reset
# ---------------------------

def test_rejected_settings_keep_previous(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=7)

    with pytest.raises(ApprovalGatewayError) as exc:
        engine.update_settings({"maxAutoApprovalsPerHour": -1})
    assert exc.value.code == APG_E_INVALID_SETTINGS
    assert engine.settings.max_auto_approvals_per_hour == 7

    with pytest.raises(ApprovalGatewayError):
        engine.configure({"safetyThresholds": {"low": 0.9, "medium": 0.5, "high": 0.8}})
    assert engine.settings.always_allow_read_only is True


def test_configure_replaces_all_settings(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.configure({"alwaysAllowWrite": True})
    assert engine.settings.always_allow_read_only is False
    assert engine.settings.always_allow_write is True


def test_constructor_rejects_bad_settings():
    with pytest.raises(ApprovalGatewayError):
        PolicyEngine(settings={"requestDelaySeconds": "soon"})


def test_session_stats(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.decide(_read())
    engine.decide(_read("/workspace/b.txt"))
    engine.decide(_write("/workspace/c.txt"))

    stats = engine.get_session_stats()
    assert stats["totalRequests"] == 3
    assert stats["approvedRequests"] == 2
    assert stats["deniedRequests"] == 1
    assert stats["approvalRate"] == pytest.approx(200 / 3)
    assert stats["currentHourlyCount"] == 2
    assert stats["emergencyStopActive"] is False


def test_reset_clears_state_but_not_emergency_stop(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True, maxAutoApprovalsPerHour=1)
    engine.decide(_read())
    assert not engine.decide(_read()).approved

    engine.reset()
    assert engine.get_audit_log() == []
    assert engine.get_session_stats()["totalRequests"] == 0
    assert engine.decide(_read()).approved

    engine.activate_emergency_stop()
    engine.reset()
    assert engine.is_emergency_stop_active()


def test_operation_ids_and_cached_assessment(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    v = engine.decide(OperationDescriptor(type="read", file_path="/workspace/a.txt", id="op-1"))
    assert v.operation_id == "op-1"
    cached = engine.cached_assessment("op-1")
    assert cached is not None
    assert cached.level.value == "low"

    v = engine.decide(_read())
    assert len(v.operation_id) == 8
    int(v.operation_id, 16)
    assert engine.cached_assessment("missing") is None


def test_risk_cache_is_bounded(clock):
    from approval_gateway.settings import EngineConfig

    engine = PolicyEngine(
        settings={"alwaysAllowReadOnly": True},
        workspace_dir="/workspace",
        clock=clock,
        config=EngineConfig(risk_cache_size=2),
    )
    for i in range(3):
        engine.decide(OperationDescriptor(type="read", file_path="/workspace/a.txt", id=f"op-{i}"))
    assert engine.cached_assessment("op-0") is None
    assert engine.cached_assessment("op-2") is not None


def test_decisions_are_exported_as_metrics(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.decide(_read())
    payload = render_metrics()
    assert b"apg_decisions_total" in payload
    assert b'decision="approved"' in payload


def test_rate_limit_key_bound_recovers_after_an_hour(clock):
    from approval_gateway.settings import EngineConfig

    engine = PolicyEngine(
        settings={"alwaysAllowReadOnly": True},
        workspace_dir="/workspace",
        clock=clock,
        config=EngineConfig(rate_limit_max_keys=2),
    )
    assert engine.decide(_read(user="a")).approved
    assert engine.decide(_read(user="b")).approved
    assert engine.decide(_read(user="c")).reason == "Too many distinct rate-limit keys"

    clock.advance(3 * 3600)
    assert engine.decide(_read(user="c")).approved


def test_stats_hourly_count_resets_without_a_decision(make_engine, clock):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.decide(_read())
    engine.decide(_read())
    assert engine.get_session_stats()["currentHourlyCount"] == 2

    clock.advance(3601)
    assert engine.get_session_stats()["currentHourlyCount"] == 0


def test_delete_outside_workspace_stops_at_type_gate(make_engine):
    engine = make_engine(riskAssessmentEnabled=False, alwaysAllowReadOnlyOutsideWorkspace=True)
    v = engine.decide(OperationDescriptor(type="delete", file_path="/etc/hosts"))
    assert v.reason == "Auto-approval not available for delete operations"
    assert v.code == APG_E_TYPE_DISABLED


def test_unknown_decision_filter_returns_nothing(make_engine):
    engine = make_engine(alwaysAllowReadOnly=True)
    engine.decide(_read())
    assert engine.get_audit_log({"decision": "bogus"}) == []
