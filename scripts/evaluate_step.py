#!/usr/bin/env python3
"""
Guardrail Evaluation CLI
========================

Dry-run the guardrail engine against a policy file.

Commands:
    evaluate    Evaluate a run/step/context triple and print the findings
    key         Derive an idempotency key for a scope and payload

Usage:
    python scripts/evaluate_step.py evaluate --policies policies.json --tenant t1 \
        --step '{"step_name": "refund", "provider": "stripe", "action": "refunds.create", "amount_path": "$.amount"}' \
        --context '{"amount": 2500}'
    python scripts/evaluate_step.py key run_create --payload '{"workflow_id": "wf_1"}'

Exit codes for evaluate: 0 proceed, 1 await approval, 2 halt.
"""

import sys
import json
import argparse
from pathlib import Path
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

sys.path.insert(0, str(Path(__file__).parent.parent))

from flowguard.guardrails import Disposition, GuardrailEngine, decide
from flowguard.idempotency import derive_key
from flowguard.policy_store import DailyActionTracker, JsonPolicyStore

console = Console()

EXIT_CODES = {
    Disposition.PROCEED: 0,
    Disposition.AWAIT_APPROVAL: 1,
    Disposition.HALT: 2,
}

SEVERITY_STYLES = {
    "low": "dim",
    "medium": "yellow",
    "high": "bold yellow",
    "critical": "bold red",
}


def _parse_json(raw, label):
    if raw is None:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SystemExit(f"--{label} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise SystemExit(f"--{label} must be a JSON object")
    return value


def evaluate(args):
    """Evaluate one step and print the verdict."""
    store = JsonPolicyStore(Path(args.policies))
    engine = GuardrailEngine(store, DailyActionTracker(Path(args.actions_file)))

    run = {"id": args.run_id, "tenant_id": args.tenant, "risk_score": args.risk_score}
    step = _parse_json(args.step, "step")
    context = _parse_json(args.context, "context")

    verdict = engine.evaluate(run, step, context)
    decision = decide(verdict)

    if args.json:
        console.print_json(json.dumps({**verdict.to_dict(), "disposition": decision.disposition.value}))
        return EXIT_CODES[decision.disposition]

    if verdict.findings:
        table = Table(title=f"Guardrail findings for tenant {args.tenant}")
        table.add_column("#", style="dim")
        table.add_column("Kind", style="cyan")
        table.add_column("Severity")
        table.add_column("Blocking")
        table.add_column("Reason")
        for i, finding in enumerate(verdict.findings, 1):
            severity = finding.severity.value
            table.add_row(
                str(i),
                finding.kind.value,
                f"[{SEVERITY_STYLES[severity]}]{severity}[/{SEVERITY_STYLES[severity]}]",
                "yes" if finding.blocking else "no",
                finding.reason,
            )
        console.print(table)

    color = {"proceed": "green", "await_approval": "yellow", "halt": "red"}[decision.disposition.value]
    console.print(Panel(
        f"[bold]{decision.disposition.value.upper()}[/bold]\n"
        f"Run status: {decision.run_status}\n"
        f"Summary: {decision.summary}",
        title="Decision",
        border_style=color,
    ))
    return EXIT_CODES[decision.disposition]


def key(args):
    """Print a derived idempotency key."""
    payload = json.loads(args.payload) if args.payload else None
    console.print(derive_key(args.scope, payload))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Guardrail Evaluation CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # evaluate
    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate a step against a policy file")
    evaluate_parser.add_argument("--policies", required=True, help="JSON policy file")
    evaluate_parser.add_argument("--tenant", required=True, help="Tenant ID")
    evaluate_parser.add_argument("--run-id", default="cli_run", help="Run ID")
    evaluate_parser.add_argument("--risk-score", type=float, default=None, help="Run risk score (0-100)")
    evaluate_parser.add_argument("--step", default=None, help="Step record as JSON")
    evaluate_parser.add_argument("--context", default=None, help="Workflow context as JSON")
    evaluate_parser.add_argument("--actions-file", default=".hive-mind/daily_actions.json",
                                 help="Daily action tracker file used for the quota check")
    evaluate_parser.add_argument("--json", action="store_true", help="Print the verdict as JSON")

    # key
    key_parser = subparsers.add_parser("key", help="Derive an idempotency key")
    key_parser.add_argument("scope", help="Scope identifier, e.g. run_create")
    key_parser.add_argument("--payload", default=None, help="Payload as JSON")

    args = parser.parse_args(argv)

    if args.command == "evaluate":
        return evaluate(args)
    elif args.command == "key":
        return key(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
