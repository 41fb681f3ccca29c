"""
Guardrail Decision Engine Tests
===============================
Check order, verdict derivation, degraded policy loading and gate disposition.
"""

import sys
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from flowguard.event_log import EventType, read_events
from flowguard.guardrails import (
    AmountDetails,
    Disposition,
    Finding,
    FindingKind,
    GuardrailEngine,
    GuardrailVerdict,
    RuleErrorDetails,
    Severity,
    WorkflowStep,
    build_approval_request,
    decide,
    extract_amount,
    summarize_findings,
)
from flowguard.policy_store import ComplianceRule, InMemoryPolicyStore, PolicyLoadError, RiskPolicy


TENANT = "tenant_1"


def make_policy(**overrides):
    values = {
        "tenant_id": TENANT,
        "require_approval_above": 1000,
        "max_allowed_amount": 5000,
    }
    values.update(overrides)
    return RiskPolicy.from_dict(values)


def make_run(**overrides):
    run = {"id": "run_1", "tenant_id": TENANT, "risk_score": None}
    run.update(overrides)
    return run


def make_step(**overrides):
    step = {
        "id": "step_1",
        "step_name": "issue_refund",
        "provider": "stripe",
        "action": "refunds.create",
        "risk_level": "normal",
        "amount_path": "order.total_amount",
    }
    step.update(overrides)
    return step


def order(amount):
    return {"order": {"total_amount": amount}}


@pytest.fixture
def store():
    s = InMemoryPolicyStore()
    s.set_policy(TENANT, make_policy())
    return s


@pytest.fixture
def counter():
    c = MagicMock()
    c.count_today.return_value = 0
    return c


@pytest.fixture
def engine(store, counter):
    return GuardrailEngine(store, counter)


class TestAllPassed:

    def test_clean_step_passes(self, engine):
        verdict = engine.evaluate(make_run(), make_step(), order(50))
        assert verdict.findings == ()
        assert verdict.blocked is False
        assert verdict.requires_approval is False
        assert verdict.allowed is True
        assert verdict.summary == "All guardrails passed"

    def test_evaluation_is_logged(self, engine):
        engine.evaluate(make_run(), make_step(), order(50))
        events = read_events(EventType.GUARDRAIL_EVALUATED)
        assert len(events) == 1
        assert events[0]["payload"]["tenant_id"] == TENANT
        assert events[0]["payload"]["blocked"] is False


class TestKillSwitch:

    @pytest.mark.parametrize("score,amount,level", [
        (None, 10, "low"),
        (0, None, "normal"),
        (10, 200, "low"),
    ])
    def test_kill_switch_always_blocks(self, store, counter, score, amount, level):
        store.set_policy(TENANT, make_policy(kill_switch=True))
        engine = GuardrailEngine(store, counter)
        verdict = engine.evaluate(make_run(risk_score=score), make_step(risk_level=level), order(amount))
        assert verdict.blocked is True
        assert verdict.findings[0].kind is FindingKind.KILL_SWITCH
        assert verdict.findings[0].severity is Severity.CRITICAL


class TestDailyQuota:

    def test_at_limit_blocks(self, store, counter):
        store.set_policy(TENANT, make_policy(max_daily_actions=5))
        counter.count_today.return_value = 5
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {})
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.RATE_LIMIT
        assert finding.severity is Severity.HIGH
        assert finding.blocking is True
        assert verdict.blocked is True

    def test_below_limit_passes(self, store, counter):
        store.set_policy(TENANT, make_policy(max_daily_actions=5))
        counter.count_today.return_value = 4
        assert GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {}).findings == ()

    def test_counter_failure_is_surfaced(self, engine, counter):
        counter.count_today.side_effect = ConnectionError("db down")
        verdict = engine.evaluate(make_run(), make_step(), {})
        assert len(verdict.findings) == 1
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.CHECK_UNAVAILABLE
        assert finding.severity is Severity.MEDIUM
        assert finding.blocking is False
        assert verdict.blocked is False

    def test_missing_counter_is_surfaced(self, store):
        verdict = GuardrailEngine(store).evaluate(make_run(), make_step(), {})
        assert len(verdict.findings) == 1
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.CHECK_UNAVAILABLE
        assert finding.metadata.check == "daily_action_quota"
        assert finding.blocking is False
        assert verdict.blocked is False

    def test_missing_counter_keeps_quota_position(self, store):
        store.set_policy(TENANT, make_policy(kill_switch=True))
        verdict = GuardrailEngine(store).evaluate(make_run(), make_step(), {})
        assert [f.kind for f in verdict.findings] == [FindingKind.KILL_SWITCH, FindingKind.CHECK_UNAVAILABLE]


class TestValueThreshold:

    def test_amount_over_approval_threshold(self, engine):
        verdict = engine.evaluate(make_run(), make_step(), order(1500))
        assert verdict.requires_approval is True
        assert verdict.blocked is False
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.APPROVAL_REQUIRED
        assert finding.severity is Severity.HIGH
        assert finding.metadata == AmountDetails(
            amount=Decimal("1500"), threshold=Decimal("1000"), max_amount=Decimal("5000"))

    def test_amount_over_max_blocks(self, engine):
        verdict = engine.evaluate(make_run(), make_step(), order(6000))
        assert verdict.blocked is True
        assert verdict.findings[0].severity is Severity.CRITICAL
        assert verdict.findings[0].blocking is True

    def test_amount_equal_to_threshold_passes(self, engine):
        assert engine.evaluate(make_run(), make_step(), order(1000)).findings == ()

    @pytest.mark.parametrize("context", [
        {},
        {"order": {}},
        order("1500"),
        order(True),
        order(None),
        order(float("nan")),
    ])
    def test_missing_or_non_numeric_amount_skips(self, engine, context):
        assert engine.evaluate(make_run(), make_step(), context).findings == ()

    def test_step_without_amount_path_skips(self, engine):
        assert engine.evaluate(make_run(), make_step(amount_path=None), order(99999)).findings == ()

    def test_json_path_prefix(self):
        assert extract_amount(order(12.5), "$.order.total_amount") == Decimal("12.5")


class TestRiskScore:

    def test_critical_score_blocks(self, engine):
        verdict = engine.evaluate(make_run(risk_score=80), make_step(), {})
        assert verdict.findings[0].kind is FindingKind.HIGH_RISK
        assert verdict.blocked is True

    def test_medium_score_requires_approval(self, engine):
        verdict = engine.evaluate(make_run(risk_score=60), make_step(), {})
        assert verdict.findings[0].kind is FindingKind.MEDIUM_RISK
        assert verdict.requires_approval is True
        assert verdict.blocked is False

    def test_low_score_passes(self, engine):
        assert engine.evaluate(make_run(risk_score=59.9), make_step(), {}).findings == ()


class TestStepRisk:

    def test_critical_step_blocks_when_enabled(self, store, counter):
        store.set_policy(TENANT, make_policy(block_high_risk_steps=True))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(risk_level="critical"), {})
        assert verdict.findings[0].kind is FindingKind.STEP_RISK_BLOCKED
        assert verdict.blocked is True

    def test_critical_step_advisory_when_disabled(self, engine):
        verdict = engine.evaluate(make_run(), make_step(risk_level="critical"), {})
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.HIGH_RISK_STEP
        assert finding.severity is Severity.HIGH
        assert finding.blocking is False
        assert verdict.blocked is False
        assert verdict.requires_approval is True

    def test_high_step_is_advisory(self, engine):
        verdict = engine.evaluate(make_run(), make_step(risk_level="HIGH"), {})
        assert verdict.findings[0].kind is FindingKind.HIGH_RISK_STEP

    def test_unknown_risk_level_ignored(self):
        assert WorkflowStep.coerce(make_step(risk_level="extreme")).risk_level is None


class TestProviderScope:

    def test_action_outside_scope_blocks(self, store, counter):
        store.set_policy(TENANT, make_policy(allowed_provider_scopes={"stripe": ["charges."]}))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {})
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.SCOPE_VIOLATION
        assert finding.metadata.allowed_scopes == ("charges.",)
        assert verdict.blocked is True

    def test_action_with_scope_prefix_passes(self, store, counter):
        store.set_policy(TENANT, make_policy(allowed_provider_scopes={"stripe": ["charges.", "refunds."]}))
        assert GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {}).findings == ()

    def test_provider_without_entry_is_unrestricted(self, store, counter):
        store.set_policy(TENANT, make_policy(allowed_provider_scopes={"shopify": ["orders."]}))
        assert GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {}).findings == ()

    def test_tool_alias_for_provider(self, store, counter):
        store.set_policy(TENANT, make_policy(allowed_provider_scopes={"stripe": ["charges."]}))
        step = make_step()
        step["tool"] = step.pop("provider")
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), step, {})
        assert verdict.findings[0].kind is FindingKind.SCOPE_VIOLATION


class TestComplianceRules:

    @pytest.mark.parametrize("rule_severity,severity,blocking", [
        ("advisory", Severity.LOW, False),
        ("warning", Severity.MEDIUM, False),
        ("error", Severity.HIGH, True),
        ("critical", Severity.CRITICAL, True),
    ])
    def test_severity_mapping(self, store, counter, rule_severity, severity, blocking):
        store.add_rule(TENANT, ComplianceRule(
            key="big_refund", name="Large refund", severity=rule_severity,
            logic_expression={">=": [{"var": "order.total_amount"}, 100]},
        ))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), order(150))
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.COMPLIANCE_VIOLATION
        assert finding.severity is severity
        assert finding.blocking is blocking
        assert finding.metadata.rule_key == "big_refund"

    def test_rule_sees_step_fields(self, store, counter):
        store.add_rule(TENANT, ComplianceRule(
            key="no_stripe", name="No Stripe", severity="warning",
            logic_expression={"==": [{"var": "step.provider"}, "stripe"]},
        ))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {})
        assert verdict.findings[0].kind is FindingKind.COMPLIANCE_VIOLATION

    def test_disabled_rule_skipped(self, store, counter):
        store.add_rule(TENANT, ComplianceRule(
            key="off", name="Off", enabled=False, logic_expression={"and": []},
        ))
        assert GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {}).findings == ()

    def test_rule_error_is_advisory_finding(self, store, counter):
        store.add_rule(TENANT, ComplianceRule(
            key="broken", name="Broken", severity="critical",
            logic_expression={">": [{"var": "order.total_amount"}, 5]},
        ))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), order("text"))
        finding = verdict.findings[0]
        assert finding.kind is FindingKind.RULE_EVALUATION_ERROR
        assert finding.severity is Severity.LOW
        assert finding.blocking is False
        assert isinstance(finding.metadata, RuleErrorDetails)
        assert verdict.blocked is False
        assert len(read_events(EventType.RULE_EVALUATION_FAILED)) == 1

    def test_unknown_operator_does_not_violate(self, store, counter):
        store.add_rule(TENANT, ComplianceRule(
            key="uses_in", name="Uses in", severity="critical",
            logic_expression={"in": [{"var": "country"}, ["US"]]},
        ))
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {"country": "US"})
        assert verdict.findings == ()


class TestDegradedPolicyLoading:

    def test_policy_store_failure_uses_default_policy(self, counter):
        store = MagicMock()
        store.get_risk_policy.side_effect = PolicyLoadError("unreachable")
        store.list_enabled_rules.return_value = []
        engine = GuardrailEngine(store, counter)

        # default approval threshold is 1000, max 10000
        verdict = engine.evaluate(make_run(), make_step(), order(1500))
        assert verdict.requires_approval is True
        assert verdict.blocked is False
        assert len(read_events(EventType.POLICY_FALLBACK)) == 1

    def test_default_quota_applies_on_failure(self, counter):
        store = MagicMock()
        store.get_risk_policy.side_effect = PolicyLoadError("unreachable")
        store.list_enabled_rules.return_value = []
        counter.count_today.return_value = 500
        verdict = GuardrailEngine(store, counter).evaluate(make_run(), make_step(), {})
        assert verdict.findings[0].kind is FindingKind.RATE_LIMIT

    def test_missing_policy_uses_default(self, counter):
        engine = GuardrailEngine(InMemoryPolicyStore(), counter)
        assert engine.load_policy("unknown").max_daily_actions == 500

    def test_injected_default_policy(self, counter):
        store = MagicMock()
        store.get_risk_policy.side_effect = RuntimeError("boom")
        engine = GuardrailEngine(store, counter, default_policy=make_policy(kill_switch=True))
        store.list_enabled_rules.return_value = []
        assert engine.evaluate(make_run(), make_step(), {}).blocked is True

    def test_rule_load_failure_is_surfaced(self, store, counter):
        failing = MagicMock(wraps=store)
        failing.list_enabled_rules.side_effect = PolicyLoadError("rules table missing")
        verdict = GuardrailEngine(failing, counter).evaluate(make_run(), make_step(), {})
        assert [f.kind for f in verdict.findings] == [FindingKind.CHECK_UNAVAILABLE]
        assert verdict.blocked is False


class TestOrderingAndVerdict:

    def test_findings_follow_check_order(self, store, counter):
        store.set_policy(TENANT, make_policy(
            kill_switch=True, max_daily_actions=1, block_high_risk_steps=True,
            allowed_provider_scopes={"stripe": ["charges."]},
        ))
        store.add_rule(TENANT, ComplianceRule(key="r", name="R", logic_expression={"and": []}))
        counter.count_today.return_value = 3
        verdict = GuardrailEngine(store, counter).evaluate(
            make_run(risk_score=90), make_step(risk_level="critical"), order(9000))
        assert [f.kind for f in verdict.findings] == [
            FindingKind.KILL_SWITCH,
            FindingKind.RATE_LIMIT,
            FindingKind.APPROVAL_REQUIRED,
            FindingKind.HIGH_RISK,
            FindingKind.STEP_RISK_BLOCKED,
            FindingKind.SCOPE_VIOLATION,
            FindingKind.COMPLIANCE_VIOLATION,
        ]

    def test_critical_severity_always_blocks(self):
        finding = Finding(
            kind=FindingKind.COMPLIANCE_VIOLATION, reason="r", severity=Severity.CRITICAL,
            blocking=False, metadata=RuleErrorDetails(rule_key="k", error=""),
        )
        assert GuardrailVerdict.from_findings([finding]).blocked is True

    def test_summary_counts(self, engine, store):
        store.add_rule(TENANT, ComplianceRule(
            key="w", name="W", severity="warning", logic_expression={"and": []}))
        verdict = engine.evaluate(make_run(risk_score=85), make_step(risk_level="high"), order(1500))
        assert verdict.summary == "1 blocking issue(s), 2 approval(s) required, 1 warning(s)"

    def test_summarize_empty(self):
        assert summarize_findings([]) == "All guardrails passed"

    def test_verdict_is_json_ready(self, engine):
        data = engine.evaluate(make_run(), make_step(), order(1500)).to_dict()
        assert data["findings"][0]["metadata"]["amount"] == "1500"
        assert data["findings"][0]["kind"] == "approval_required"


class TestDisposition:

    def test_blocked_halts(self, engine):
        decision = decide(engine.evaluate(make_run(risk_score=95), make_step(), order(1500)))
        assert decision.disposition is Disposition.HALT
        assert decision.run_status == "blocked"

    def test_approval_pauses(self, engine):
        decision = decide(engine.evaluate(make_run(), make_step(), order(1500)))
        assert decision.disposition is Disposition.AWAIT_APPROVAL
        assert decision.run_status == "awaiting_approval"

    def test_clean_proceeds(self, engine):
        assert decide(engine.evaluate(make_run(), make_step(), {})).disposition is Disposition.PROCEED

    def test_approval_request_lists_approval_findings(self, engine):
        run, step = make_run(), make_step(risk_level="high")
        verdict = engine.evaluate(run, step, order(1500))
        request = build_approval_request(run, step, verdict)
        assert request["state"] == "pending"
        assert request["run_id"] == "run_1"
        assert [f["kind"] for f in request["findings"]] == ["approval_required", "high_risk_step"]
