#!/usr/bin/env python3
"""
Guardrail Decision Engine
=========================

Decides whether a workflow step may run before it calls an external
provider. Every evaluation runs the full check sequence so the verdict
carries a complete finding list for auditing:

    1. Kill switch            (critical, blocking)
    2. Daily action quota     (high, blocking)
    3. Value threshold        (high approval, critical above max amount)
    4. Run risk score         (>=80 critical, 60-80 high)
    5. Step risk level        (critical blocks when policy says so)
    6. Provider scope         (critical, blocking)
    7. Compliance rule sweep  (severity mapped from rule)

Verdicts are ordinary return values. Infrastructure failures while loading
policy data degrade to the built-in conservative policy instead of raising.

Usage:
    engine = GuardrailEngine(policy_store, action_counter)
    verdict = engine.evaluate(run, step, context)
    decision = decide(verdict)
    if decision.disposition is Disposition.HALT:
        ...
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from numbers import Number
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from flowguard.event_log import EventType, log_event
from flowguard.policy_store import (
    ActionCounter,
    ComplianceRule,
    PolicyStore,
    RiskPolicy,
)
from flowguard.rule_logic import evaluate_logic, resolve_path, unknown_operators

logger = logging.getLogger("guardrails")


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FindingKind(Enum):
    KILL_SWITCH = "kill_switch"
    RATE_LIMIT = "rate_limit"
    APPROVAL_REQUIRED = "approval_required"
    HIGH_RISK = "high_risk"
    MEDIUM_RISK = "medium_risk"
    STEP_RISK_BLOCKED = "step_risk_blocked"
    HIGH_RISK_STEP = "high_risk_step"
    SCOPE_VIOLATION = "scope_violation"
    COMPLIANCE_VIOLATION = "compliance_violation"
    RULE_EVALUATION_ERROR = "rule_evaluation_error"
    CHECK_UNAVAILABLE = "check_unavailable"


class StepRiskLevel(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


RULE_SEVERITY_MAP = {
    "advisory": Severity.LOW,
    "warning": Severity.MEDIUM,
    "error": Severity.HIGH,
    "critical": Severity.CRITICAL,
}

BLOCKING_RULE_SEVERITIES = {"error", "critical"}

RISK_SCORE_CRITICAL = 80
RISK_SCORE_APPROVAL = 60


# =============================================================================
# FINDING METADATA
# =============================================================================

@dataclass(frozen=True)
class KillSwitchDetails:
    tenant_id: Optional[str]


@dataclass(frozen=True)
class QuotaDetails:
    actions_today: int
    limit: int


@dataclass(frozen=True)
class AmountDetails:
    amount: Decimal
    threshold: Decimal
    max_amount: Decimal


@dataclass(frozen=True)
class RiskScoreDetails:
    risk_score: float


@dataclass(frozen=True)
class StepRiskDetails:
    step_name: Optional[str]
    risk_level: str


@dataclass(frozen=True)
class ScopeDetails:
    provider: str
    action: Optional[str]
    allowed_scopes: Tuple[str, ...]


@dataclass(frozen=True)
class ComplianceDetails:
    rule_key: str
    rule_name: str
    jurisdiction: Optional[str]
    category: Optional[str]
    auto_remediation: bool


@dataclass(frozen=True)
class RuleErrorDetails:
    rule_key: str
    error: str


@dataclass(frozen=True)
class UnavailableDetails:
    check: str
    error: str


FindingDetails = Union[
    KillSwitchDetails, QuotaDetails, AmountDetails, RiskScoreDetails,
    StepRiskDetails, ScopeDetails, ComplianceDetails, RuleErrorDetails,
    UnavailableDetails,
]


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, tuple):
        return list(value)
    return value


@dataclass(frozen=True)
class Finding:
    """One triggered guardrail check."""
    kind: FindingKind
    reason: str
    severity: Severity
    blocking: bool
    metadata: FindingDetails

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reason": self.reason,
            "severity": self.severity.value,
            "blocking": self.blocking,
            "metadata": {k: _jsonable(v) for k, v in vars(self.metadata).items()},
        }


def summarize_findings(findings: List[Finding]) -> str:
    """Human-readable count of blocking, approval and advisory findings."""
    if not findings:
        return "All guardrails passed"

    blocking = approvals = warnings = 0
    for f in findings:
        if f.blocking or f.severity is Severity.CRITICAL:
            blocking += 1
        elif f.kind is FindingKind.APPROVAL_REQUIRED or f.severity is Severity.HIGH:
            approvals += 1
        else:
            warnings += 1

    parts = []
    if blocking:
        parts.append(f"{blocking} blocking issue(s)")
    if approvals:
        parts.append(f"{approvals} approval(s) required")
    if warnings:
        parts.append(f"{warnings} warning(s)")
    return ", ".join(parts)


@dataclass(frozen=True)
class GuardrailVerdict:
    """Aggregate decision for one step, derived from its findings."""
    blocked: bool
    requires_approval: bool
    findings: Tuple[Finding, ...]
    summary: str

    @classmethod
    def from_findings(cls, findings: List[Finding]) -> "GuardrailVerdict":
        blocked = any(f.blocking or f.severity is Severity.CRITICAL for f in findings)
        requires_approval = any(
            f.kind is FindingKind.APPROVAL_REQUIRED or f.severity is Severity.HIGH
            for f in findings
        )
        return cls(
            blocked=blocked,
            requires_approval=requires_approval,
            findings=tuple(findings),
            summary=summarize_findings(findings),
        )

    @property
    def allowed(self) -> bool:
        return not self.blocked and not self.requires_approval

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blocked": self.blocked,
            "requires_approval": self.requires_approval,
            "findings": [f.to_dict() for f in self.findings],
            "summary": self.summary,
        }


# =============================================================================
# RUN / STEP VIEWS
# =============================================================================

def _field(source: Any, *names: str) -> Any:
    for name in names:
        if isinstance(source, Mapping):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return value
    return None


@dataclass
class WorkflowRun:
    """The slice of a run record the guardrails read."""
    id: Optional[str]
    tenant_id: str
    risk_score: Optional[float] = None
    status: Optional[str] = None

    @classmethod
    def coerce(cls, run: Any) -> "WorkflowRun":
        if isinstance(run, cls):
            return run
        return cls(
            id=_field(run, "id", "run_id"),
            tenant_id=_field(run, "tenant_id", "tenantId"),
            risk_score=_field(run, "risk_score", "riskScore"),
            status=_field(run, "status"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "tenant_id": self.tenant_id,
                "risk_score": self.risk_score, "status": self.status}


@dataclass
class WorkflowStep:
    """The slice of a step record the guardrails read."""
    id: Optional[str]
    step_name: Optional[str]
    provider: Optional[str]
    action: Optional[str]
    risk_level: Optional[StepRiskLevel] = None
    amount_path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, step: Any) -> "WorkflowStep":
        if isinstance(step, cls):
            return step
        raw_level = _field(step, "risk_level", "riskLevel")
        risk_level = None
        if raw_level is not None:
            try:
                risk_level = StepRiskLevel(str(raw_level).lower())
            except ValueError:
                logger.warning("Ignoring unknown step risk level: %r", raw_level)
        extra = {}
        if isinstance(step, Mapping):
            extra = {k: v for k, v in step.items() if k not in _STEP_FIELDS}
        return cls(
            id=_field(step, "id", "step_id"),
            step_name=_field(step, "step_name", "stepName", "name"),
            provider=_field(step, "provider", "tool"),
            action=_field(step, "action"),
            risk_level=risk_level,
            amount_path=_field(step, "amount_path", "amountPath"),
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "step_name": self.step_name,
            "provider": self.provider,
            "action": self.action,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "amount_path": self.amount_path,
        })
        return data


_STEP_FIELDS = {
    "id", "step_id", "step_name", "stepName", "name", "provider", "tool",
    "action", "risk_level", "riskLevel", "amount_path", "amountPath",
}


def extract_amount(context: Mapping[str, Any], path: Optional[str]) -> Optional[Decimal]:
    """
    Extract a numeric amount from context using a dotted path.

    A leading "$." is accepted. Missing paths and non-numeric values
    (including strings and booleans) return None.
    """
    if not path:
        return None
    if path.startswith("$."):
        path = path[2:]
    value = resolve_path(context, path)
    if isinstance(value, bool) or not isinstance(value, (Number, Decimal)):
        return None
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount if amount.is_finite() else None


# =============================================================================
# ENGINE
# =============================================================================

class GuardrailEngine:
    """
    Combines tenant risk policy, step attributes and compliance rules
    into a single verdict.
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        action_counter: Optional[ActionCounter] = None,
        default_policy: Optional[RiskPolicy] = None
    ):
        self.policy_store = policy_store
        self.action_counter = action_counter
        self.default_policy = default_policy

    def _fallback_policy(self, tenant_id: str) -> RiskPolicy:
        return self.default_policy or RiskPolicy.default(tenant_id)

    def load_policy(self, tenant_id: str) -> RiskPolicy:
        """Load the tenant policy, degrading to the built-in policy on failure."""
        try:
            policy = self.policy_store.get_risk_policy(tenant_id)
        except Exception as e:
            logger.error("Risk policy load failed for tenant %s, using built-in policy: %s", tenant_id, e)
            log_event(EventType.POLICY_FALLBACK, {"tenant_id": tenant_id, "error": str(e)})
            return self._fallback_policy(tenant_id)
        return policy or self._fallback_policy(tenant_id)

    def evaluate(self, run: Any, step: Any, context: Optional[Mapping[str, Any]]) -> GuardrailVerdict:
        """
        Check all guardrails for a workflow step.

        Args:
            run: Run record (WorkflowRun, mapping or object with matching attributes)
            step: Step record (WorkflowStep, mapping or object)
            context: Workflow data the step operates on

        Returns:
            GuardrailVerdict with findings in check order
        """
        run = WorkflowRun.coerce(run)
        step = WorkflowStep.coerce(step)
        context = dict(context or {})
        policy = self.load_policy(run.tenant_id)

        findings: List[Finding] = []
        for check in (
            self._check_kill_switch(policy),
            self._check_daily_quota(run.tenant_id, policy),
            self._check_value_threshold(step, context, policy),
            self._check_risk_score(run),
            self._check_step_risk(step, policy),
            self._check_provider_scope(step, policy),
        ):
            if check is not None:
                findings.append(check)
        findings.extend(self._check_compliance_rules(run.tenant_id, step, context))

        verdict = GuardrailVerdict.from_findings(findings)

        if verdict.blocked:
            logger.warning("Step %s blocked for tenant %s: %s", step.step_name, run.tenant_id, verdict.summary)
        elif verdict.requires_approval:
            logger.info("Step %s requires approval for tenant %s: %s", step.step_name, run.tenant_id, verdict.summary)

        log_event(
            EventType.GUARDRAIL_EVALUATED,
            {
                "tenant_id": run.tenant_id,
                "run_id": run.id,
                "step_id": step.id,
                "blocked": verdict.blocked,
                "requires_approval": verdict.requires_approval,
                "summary": verdict.summary,
                "findings": [f.kind.value for f in verdict.findings],
            }
        )
        return verdict

    # -------------------------------------------------------------------------
    # Individual checks
    # -------------------------------------------------------------------------

    def _check_kill_switch(self, policy: RiskPolicy) -> Optional[Finding]:
        if not policy.kill_switch:
            return None
        return Finding(
            kind=FindingKind.KILL_SWITCH,
            reason="Emergency kill switch is active - all workflows blocked",
            severity=Severity.CRITICAL,
            blocking=True,
            metadata=KillSwitchDetails(tenant_id=policy.tenant_id),
        )

    def _check_daily_quota(self, tenant_id: str, policy: RiskPolicy) -> Optional[Finding]:
        if self.action_counter is None:
            logger.warning("No action counter configured; daily quota unchecked for tenant %s", tenant_id)
            return Finding(
                kind=FindingKind.CHECK_UNAVAILABLE,
                reason="Daily action quota could not be checked: no action counter configured",
                severity=Severity.MEDIUM,
                blocking=False,
                metadata=UnavailableDetails(check="daily_action_quota", error="no action counter configured"),
            )
        try:
            actions_today = self.action_counter.count_today(tenant_id)
        except Exception as e:
            logger.error("Daily action count failed for tenant %s: %s", tenant_id, e)
            return Finding(
                kind=FindingKind.CHECK_UNAVAILABLE,
                reason=f"Daily action quota could not be checked: {e}",
                severity=Severity.MEDIUM,
                blocking=False,
                metadata=UnavailableDetails(check="daily_action_quota", error=str(e)),
            )

        if actions_today < policy.max_daily_actions:
            return None
        return Finding(
            kind=FindingKind.RATE_LIMIT,
            reason=f"Daily action limit exceeded: {actions_today}/{policy.max_daily_actions}",
            severity=Severity.HIGH,
            blocking=True,
            metadata=QuotaDetails(actions_today=actions_today, limit=policy.max_daily_actions),
        )

    def _check_value_threshold(
        self, step: WorkflowStep, context: Mapping[str, Any], policy: RiskPolicy
    ) -> Optional[Finding]:
        amount = extract_amount(context, step.amount_path)
        if amount is None or amount <= policy.require_approval_above:
            return None

        over_max = amount > policy.max_allowed_amount
        if over_max:
            reason = (f"Amount {amount:.2f} exceeds maximum allowed amount "
                      f"{policy.max_allowed_amount:.2f}")
        else:
            reason = (f"Amount {amount:.2f} exceeds approval threshold "
                      f"{policy.require_approval_above:.2f}")
        return Finding(
            kind=FindingKind.APPROVAL_REQUIRED,
            reason=reason,
            severity=Severity.CRITICAL if over_max else Severity.HIGH,
            blocking=over_max,
            metadata=AmountDetails(
                amount=amount,
                threshold=policy.require_approval_above,
                max_amount=policy.max_allowed_amount,
            ),
        )

    def _check_risk_score(self, run: WorkflowRun) -> Optional[Finding]:
        score = run.risk_score
        if isinstance(score, bool) or not isinstance(score, (Number, Decimal)):
            return None

        if score >= RISK_SCORE_CRITICAL:
            return Finding(
                kind=FindingKind.HIGH_RISK,
                reason=f"Run risk score is {score}/100 (critical threshold)",
                severity=Severity.CRITICAL,
                blocking=True,
                metadata=RiskScoreDetails(risk_score=score),
            )
        if score >= RISK_SCORE_APPROVAL:
            return Finding(
                kind=FindingKind.MEDIUM_RISK,
                reason=f"Run risk score is {score}/100 (requires approval)",
                severity=Severity.HIGH,
                blocking=False,
                metadata=RiskScoreDetails(risk_score=score),
            )
        return None

    def _check_step_risk(self, step: WorkflowStep, policy: RiskPolicy) -> Optional[Finding]:
        level = step.risk_level
        if level is None:
            return None

        details = StepRiskDetails(step_name=step.step_name, risk_level=level.value)
        if level is StepRiskLevel.CRITICAL and policy.block_high_risk_steps:
            return Finding(
                kind=FindingKind.STEP_RISK_BLOCKED,
                reason=f'Step "{step.step_name}" is marked as CRITICAL risk and blocking is enabled',
                severity=Severity.CRITICAL,
                blocking=True,
                metadata=details,
            )
        if level in (StepRiskLevel.HIGH, StepRiskLevel.CRITICAL):
            return Finding(
                kind=FindingKind.HIGH_RISK_STEP,
                reason=f'Step "{step.step_name}" is marked as {level.value.upper()} risk',
                severity=Severity.HIGH,
                blocking=False,
                metadata=details,
            )
        return None

    def _check_provider_scope(self, step: WorkflowStep, policy: RiskPolicy) -> Optional[Finding]:
        if not step.provider:
            return None
        allowed_scopes = policy.allowed_provider_scopes.get(step.provider)
        if not allowed_scopes:
            return None

        action = step.action or ""
        if any(action.startswith(scope) for scope in allowed_scopes):
            return None
        return Finding(
            kind=FindingKind.SCOPE_VIOLATION,
            reason=f'Action "{step.action}" is not in allowed scopes for provider "{step.provider}"',
            severity=Severity.CRITICAL,
            blocking=True,
            metadata=ScopeDetails(
                provider=step.provider,
                action=step.action,
                allowed_scopes=tuple(allowed_scopes),
            ),
        )

    def _check_compliance_rules(
        self, tenant_id: str, step: WorkflowStep, context: Mapping[str, Any]
    ) -> List[Finding]:
        try:
            rules = self.policy_store.list_enabled_rules(tenant_id)
        except Exception as e:
            logger.error("Compliance rules load failed for tenant %s: %s", tenant_id, e)
            log_event(EventType.POLICY_FALLBACK, {"tenant_id": tenant_id, "error": str(e), "scope": "compliance_rules"})
            return [Finding(
                kind=FindingKind.CHECK_UNAVAILABLE,
                reason=f"Compliance rules could not be loaded: {e}",
                severity=Severity.MEDIUM,
                blocking=False,
                metadata=UnavailableDetails(check="compliance_rules", error=str(e)),
            )]

        data = {**context, "step": step.to_dict()}
        findings = []
        for rule in rules:
            if not rule.enabled or not rule.logic_expression:
                continue
            finding = self._evaluate_rule(rule, data)
            if finding is not None:
                findings.append(finding)
        return findings

    def _evaluate_rule(self, rule: ComplianceRule, data: Mapping[str, Any]) -> Optional[Finding]:
        unsupported = unknown_operators(rule.logic_expression)
        if unsupported:
            logger.warning("Compliance rule %s uses unsupported operators %s; they evaluate to false",
                           rule.key, unsupported)

        try:
            violated = evaluate_logic(rule.logic_expression, data)
        except Exception as e:
            logger.warning("Compliance rule %s failed to evaluate: %s", rule.key, e)
            log_event(EventType.RULE_EVALUATION_FAILED, {"rule_key": rule.key, "error": str(e)})
            return Finding(
                kind=FindingKind.RULE_EVALUATION_ERROR,
                reason=f"Compliance rule {rule.name} could not be evaluated: {e}",
                severity=Severity.LOW,
                blocking=False,
                metadata=RuleErrorDetails(rule_key=rule.key, error=str(e)),
            )

        if not violated:
            return None
        return Finding(
            kind=FindingKind.COMPLIANCE_VIOLATION,
            reason=f"Compliance rule violated: {rule.name}",
            severity=RULE_SEVERITY_MAP.get(rule.severity, Severity.MEDIUM),
            blocking=rule.severity in BLOCKING_RULE_SEVERITIES,
            metadata=ComplianceDetails(
                rule_key=rule.key,
                rule_name=rule.name,
                jurisdiction=rule.jurisdiction,
                category=rule.category,
                auto_remediation=rule.auto_remediation,
            ),
        )


# =============================================================================
# GATE DISPOSITION
# =============================================================================

class Disposition(Enum):
    HALT = "halt"
    AWAIT_APPROVAL = "await_approval"
    PROCEED = "proceed"


RUN_STATUS_BY_DISPOSITION = {
    Disposition.HALT: "blocked",
    Disposition.AWAIT_APPROVAL: "awaiting_approval",
    Disposition.PROCEED: "running",
}


@dataclass(frozen=True)
class GateDecision:
    """What the step loop should do with a verdict."""
    disposition: Disposition
    run_status: str
    summary: str
    verdict: GuardrailVerdict


def decide(verdict: GuardrailVerdict) -> GateDecision:
    """Blocking dominates approval; approval pauses the run instead of failing it."""
    if verdict.blocked:
        disposition = Disposition.HALT
    elif verdict.requires_approval:
        disposition = Disposition.AWAIT_APPROVAL
    else:
        disposition = Disposition.PROCEED
    return GateDecision(
        disposition=disposition,
        run_status=RUN_STATUS_BY_DISPOSITION[disposition],
        summary=verdict.summary,
        verdict=verdict,
    )


def build_approval_request(run: Any, step: Any, verdict: GuardrailVerdict) -> Dict[str, Any]:
    """Payload the caller persists to pause a run pending an approval decision."""
    run = WorkflowRun.coerce(run)
    step = WorkflowStep.coerce(step)
    return {
        "tenant_id": run.tenant_id,
        "run_id": run.id,
        "step_id": step.id,
        "step_name": step.step_name,
        "state": "pending",
        "reason": verdict.summary,
        "findings": [
            f.to_dict() for f in verdict.findings
            if f.kind is FindingKind.APPROVAL_REQUIRED or f.severity is Severity.HIGH
        ],
    }
