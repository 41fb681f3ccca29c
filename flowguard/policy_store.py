#!/usr/bin/env python3
"""
Tenant risk policy and compliance rule storage.

The guardrail engine reads two tenant-scoped records per evaluation:

- RiskPolicy: kill switch, daily quota, amount thresholds, provider scopes
- ComplianceRule: enabled rule expressions evaluated against step context

Both are owned by tenant administrators and are read-only here. Stores
raise PolicyLoadError when the backing data cannot be read; the engine
decides how to degrade.

Daily action counting is a separate collaborator (ActionCounter) so the
quota check does not depend on how runs are persisted.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from flowguard.config import get_default_risk_policy

logger = logging.getLogger("policy_store")


class PolicyLoadError(Exception):
    """Raised when a tenant's policy or rule set cannot be loaded."""


class RuleSeverity(Enum):
    ADVISORY = "advisory"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PolicyLoadError(f"Invalid decimal value: {value!r}") from e


@dataclass(frozen=True)
class RiskPolicy:
    """Tenant risk policy. One active record per tenant."""
    tenant_id: Optional[str] = None
    kill_switch: bool = False
    max_daily_actions: int = 500
    require_approval_above: Decimal = Decimal("1000")
    max_allowed_amount: Decimal = Decimal("10000")
    block_high_risk_steps: bool = False
    allowed_provider_scopes: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], tenant_id: Optional[str] = None) -> "RiskPolicy":
        """Build from a stored record. Accepts snake_case and camelCase keys."""
        defaults = cls()
        scopes = _pick(data, "allowed_provider_scopes", "allowedProviderScopes", default={})
        if not isinstance(scopes, Mapping):
            raise PolicyLoadError("allowed_provider_scopes must be a mapping")
        try:
            max_daily_actions = int(_pick(data, "max_daily_actions", "maxDailyActions",
                                          default=defaults.max_daily_actions))
        except (TypeError, ValueError) as e:
            raise PolicyLoadError(f"Invalid max_daily_actions: {e}") from e
        return cls(
            tenant_id=_pick(data, "tenant_id", "tenantId", default=tenant_id),
            kill_switch=bool(_pick(data, "kill_switch", "killSwitch", default=False)),
            max_daily_actions=max_daily_actions,
            require_approval_above=to_decimal(_pick(
                data, "require_approval_above", "requireApprovalAbove",
                default=defaults.require_approval_above)),
            max_allowed_amount=to_decimal(_pick(
                data, "max_allowed_amount", "maxAllowedAmount", "max_refund_amount",
                default=defaults.max_allowed_amount)),
            block_high_risk_steps=bool(_pick(data, "block_high_risk_steps", "blockHighRiskSteps",
                                             default=False)),
            allowed_provider_scopes={str(k): [str(s) for s in (v or [])] for k, v in scopes.items()},
        )

    @classmethod
    def default(cls, tenant_id: Optional[str] = None) -> "RiskPolicy":
        """The conservative built-in policy from configuration."""
        return cls.from_dict(get_default_risk_policy(), tenant_id=tenant_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "kill_switch": self.kill_switch,
            "max_daily_actions": self.max_daily_actions,
            "require_approval_above": str(self.require_approval_above),
            "max_allowed_amount": str(self.max_allowed_amount),
            "block_high_risk_steps": self.block_high_risk_steps,
            "allowed_provider_scopes": {k: list(v) for k, v in self.allowed_provider_scopes.items()},
        }


@dataclass(frozen=True)
class ComplianceRule:
    """A tenant compliance rule evaluated against every step."""
    key: str
    name: str
    logic_expression: Optional[Dict[str, Any]]
    severity: str = RuleSeverity.WARNING.value
    jurisdiction: Optional[str] = None
    category: Optional[str] = None
    enabled: bool = True
    auto_remediation: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ComplianceRule":
        key = _pick(data, "key", "rule_key", "ruleKey")
        if not key:
            raise PolicyLoadError(f"Compliance rule without key: {data!r}")
        return cls(
            key=str(key),
            name=str(_pick(data, "name", "rule_name", "ruleName", default=key)),
            logic_expression=_pick(data, "logic_expression", "logicExpression", "rule_logic"),
            severity=str(_pick(data, "severity", "violation_severity", "violationSeverity",
                               default=RuleSeverity.WARNING.value)).lower(),
            jurisdiction=_pick(data, "jurisdiction"),
            category=_pick(data, "category"),
            enabled=bool(_pick(data, "enabled", default=True)),
            auto_remediation=bool(_pick(data, "auto_remediation", "autoRemediation", default=False)),
        )


# =============================================================================
# POLICY STORES
# =============================================================================

class PolicyStore(ABC):
    """Read access to tenant risk policies and compliance rules."""

    @abstractmethod
    def get_risk_policy(self, tenant_id: str) -> Optional[RiskPolicy]:
        """Return the tenant's active policy, or None when it has none."""

    @abstractmethod
    def list_enabled_rules(self, tenant_id: str) -> List[ComplianceRule]:
        """Return the tenant's enabled compliance rules."""


class InMemoryPolicyStore(PolicyStore):
    """Policy store backed by plain dictionaries."""

    def __init__(
        self,
        policies: Optional[Dict[str, RiskPolicy]] = None,
        rules: Optional[Dict[str, List[ComplianceRule]]] = None
    ):
        self.policies: Dict[str, RiskPolicy] = dict(policies or {})
        self.rules: Dict[str, List[ComplianceRule]] = {k: list(v) for k, v in (rules or {}).items()}

    def set_policy(self, tenant_id: str, policy: RiskPolicy):
        self.policies[tenant_id] = policy

    def add_rule(self, tenant_id: str, rule: ComplianceRule):
        self.rules.setdefault(tenant_id, []).append(rule)

    def get_risk_policy(self, tenant_id: str) -> Optional[RiskPolicy]:
        return self.policies.get(tenant_id)

    def list_enabled_rules(self, tenant_id: str) -> List[ComplianceRule]:
        return [r for r in self.rules.get(tenant_id, []) if r.enabled]


class JsonPolicyStore(PolicyStore):
    """
    Policy store reading a JSON document:

        {
          "risk_policies": {"<tenant_id>": {...}},
          "compliance_rules": {"<tenant_id>": [{...}, ...]}
        }

    The file is re-read on every call so edits apply without restart.
    """

    def __init__(self, file_path: Path):
        self.file_path = Path(file_path)

    def _load(self) -> Dict[str, Any]:
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyLoadError(f"Cannot read policy file {self.file_path}: {e}") from e
        if not isinstance(data, dict):
            raise PolicyLoadError(f"Policy file {self.file_path} must contain an object")
        return data

    def get_risk_policy(self, tenant_id: str) -> Optional[RiskPolicy]:
        record = self._load().get("risk_policies", {}).get(tenant_id)
        if record is None:
            return None
        return RiskPolicy.from_dict(record, tenant_id=tenant_id)

    def list_enabled_rules(self, tenant_id: str) -> List[ComplianceRule]:
        records = self._load().get("compliance_rules", {}).get(tenant_id, [])
        rules = [ComplianceRule.from_dict(r) for r in records]
        return [r for r in rules if r.enabled]


# =============================================================================
# DAILY ACTION COUNTING
# =============================================================================

class ActionCounter(ABC):
    """Counts actions a tenant has already taken today."""

    @abstractmethod
    def count_today(self, tenant_id: str) -> int:
        """Return the number of actions recorded for the tenant today (UTC)."""


class DailyActionTracker(ActionCounter):
    """
    Track executed step actions per tenant for the daily quota.

    Keeps every action from the last 24 hours and nothing older; persists
    to file_path when given.
    """

    WINDOW = timedelta(hours=24)

    def __init__(self, file_path: Optional[Path] = None):
        self.file_path = Path(file_path) if file_path else None
        self._actions: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if self.file_path and self.file_path.exists():
            with open(self.file_path, "r", encoding="utf-8") as f:
                self._actions = json.load(f)
            self._prune(datetime.now(timezone.utc))

    def _prune(self, now: datetime):
        """Caller holds the lock (or is __init__)."""
        cutoff = (now - self.WINDOW).isoformat()
        self._actions = [a for a in self._actions if a.get("timestamp", "") > cutoff]

    def _save(self):
        if not self.file_path:
            return
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "w", encoding="utf-8") as f:
            json.dump(self._actions, f)

    def record(self, tenant_id: str, provider: str, action: str, run_id: Optional[str] = None):
        now = datetime.now(timezone.utc)
        with self._lock:
            self._prune(now)
            self._actions.append({
                "timestamp": now.isoformat(),
                "tenant_id": tenant_id,
                "provider": provider,
                "action": action,
                "run_id": run_id,
            })
            self._save()

    def count_today(self, tenant_id: str) -> int:
        today = datetime.now(timezone.utc).date().isoformat()
        with self._lock:
            return sum(1 for a in self._actions
                       if a["tenant_id"] == tenant_id and a["timestamp"][:10] == today)
