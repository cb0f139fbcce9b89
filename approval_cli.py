#!/usr/bin/env python3
"""
Approval Gateway - Command Line Interface

Usage:
    approval-gate decide <operation.json>       Decide on one operation or a list of operations
    approval-gate validate-settings <file>      Check a settings file for errors and risky options
    approval-gate config                        Show default settings
    approval-gate patterns                      Show the risk pattern tables

Operation files hold a JSON object such as
    {"type": "execute", "command": "npm test", "userId": "agent-1"}
or a JSON list of such objects, which are decided in order against one
engine (so rate limits and the audit log carry over between them).
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from approval_gateway.engine import PolicyEngine
from approval_gateway.errors import APG_E_BAD_REQUEST, ApprovalGatewayError, gateway_error
from approval_gateway.operations import OperationDescriptor
from approval_gateway.risk import COMMAND_RISK_PATTERNS, CRITICAL_PATH_PATTERNS, TYPE_BASE_RISK
from approval_gateway.settings import AutoApproveSettings, EngineConfig
from approval_gateway.validator import analyze_security_risks, validate_settings


logger = logging.getLogger("approval_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def load_json(path: Optional[Path], what: str) -> Any:
    """Load a JSON document, raising ApprovalGatewayError on bad input."""
    if path is None:
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise gateway_error(APG_E_BAD_REQUEST, f"Invalid JSON in {what} file '{path}': {e}") from e
    except OSError as e:
        raise gateway_error(APG_E_BAD_REQUEST, f"Failed to read {what} file '{path}': {e}") from e


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def build_engine(args) -> PolicyEngine:
    settings = AutoApproveSettings.from_mapping(load_json(args.settings, "settings"))
    config = EngineConfig.from_env()
    if args.workspace:
        config.workspace_dir = args.workspace
    return PolicyEngine(settings=settings, config=config)


def cmd_decide(args) -> int:
    raw = load_json(Path(args.operation_file), "operation")
    items = raw if isinstance(raw, list) else [raw]
    operations: List[OperationDescriptor] = [OperationDescriptor.from_dict(item) for item in items]

    engine = build_engine(args)
    verdicts = [engine.decide(op).to_dict() for op in operations]

    out: Any = verdicts if isinstance(raw, list) else verdicts[0]
    if args.stats or args.audit:
        out = {"verdicts": verdicts}
        if args.stats:
            out["stats"] = engine.get_session_stats()
        if args.audit:
            out["audit"] = [e.to_dict() for e in engine.get_audit_log()]
    _print_json(out)

    if args.strict and not all(v["approved"] for v in verdicts):
        return 3
    return 0


def cmd_validate_settings(args) -> int:
    data = load_json(Path(args.settings_file), "settings")
    if not isinstance(data, dict):
        raise gateway_error(APG_E_BAD_REQUEST, "settings file must contain a JSON object")
    report = validate_settings(data)
    out = report.to_dict()
    if report.valid:
        out["security"] = analyze_security_risks(AutoApproveSettings.from_mapping(data)).to_dict()
    _print_json(out)
    return 0 if report.valid else 1


def cmd_config(args) -> int:
    _print_json(AutoApproveSettings().to_dict())
    return 0


def cmd_patterns(args) -> int:
    _print_json({
        "typeBaseRisk": dict(TYPE_BASE_RISK),
        "criticalPaths": [p.pattern for p in CRITICAL_PATH_PATTERNS],
        "commandPatterns": [
            {"pattern": rp.pattern.pattern, "weight": rp.weight, "label": rp.label}
            for rp in COMMAND_RISK_PATTERNS
        ],
    })
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Approval Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # decide command
    decide_parser = subparsers.add_parser("decide", help="Decide on operations")
    decide_parser.add_argument("operation_file", help="Path to operation JSON file")
    decide_parser.add_argument("--settings", type=Path, help="Path to settings JSON file")
    decide_parser.add_argument("--workspace", help="Workspace root (default: APG_WORKSPACE_DIR or ./)")
    decide_parser.add_argument("--stats", action="store_true", help="Include session statistics")
    decide_parser.add_argument("--audit", action="store_true", help="Include the audit log")
    decide_parser.add_argument("--strict", action="store_true", help="Exit 3 unless every operation is approved")
    decide_parser.set_defaults(func=cmd_decide)

    # validate-settings command
    validate_parser = subparsers.add_parser("validate-settings", help="Validate a settings file")
    validate_parser.add_argument("settings_file", help="Path to settings JSON file")
    validate_parser.set_defaults(func=cmd_validate_settings)

    # config command
    config_parser = subparsers.add_parser("config", help="Show default settings")
    config_parser.set_defaults(func=cmd_config)

    # patterns command
    patterns_parser = subparsers.add_parser("patterns", help="Show risk pattern tables")
    patterns_parser.set_defaults(func=cmd_patterns)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except ApprovalGatewayError as e:
        print(json.dumps({"error": e.as_dict()}, indent=2), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
