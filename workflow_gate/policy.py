"""
Policy Engine

CRITICAL PRINCIPLE:
"Every guard runs on every evaluation."

The engine evaluates four independent guards and ANDs their outcomes:
- NetworkGuard: production-like networks need explicit confirmProduction
- SpendCapGuard: per-run and daily USD caps
- AllowListGuard: templates, networks, protocols and recipients
- AutonomousTriggerGuard: deterministic-cycle rules in unattended mode

There is no short-circuit: a single decision lists every violation so the
caller can fix them all at once. Guards fail CLOSED: a guard that raises
contributes a blocker instead of silently allowing.

This module is PURE VALIDATION. It performs no I/O and broadcasts nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import (
    DETERMINISTIC_TRIGGER,
    EXTERNAL_TRIGGER,
    Intent,
    PolicyBlocker,
    PolicyDecision,
)
from .networks import is_production_like
from .policy_store import PolicyConfig, PolicyStore

logger = logging.getLogger(__name__)

PRODUCTION_CONFIRMATION_REQUIRED = "production-confirmation-required"
SPEND_CAP_EXCEEDED = "spend-cap-exceeded"
SPEND_AMOUNT_UNKNOWN = "spend-amount-unknown"
ALLOW_LIST_VIOLATION = "allow-list-violation"
AUTONOMOUS_CYCLE_CONFIG_MISSING = "AUTONOMOUS_CYCLE_CONFIG_MISSING"
AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED = "AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED"
AUTONOMOUS_EXECUTE_BINDING_UNAVAILABLE = "AUTONOMOUS_EXECUTE_BINDING_UNAVAILABLE"
GUARD_ERROR = "guard-error"


@dataclass
class PolicyRequest:
    """Everything the guards look at for one execute attempt."""
    run_id: str
    network: str
    intent: Intent
    confirm_production: bool = False
    amount_usd: Optional[float] = None
    spent_today_usd: float = 0.0
    trigger: Optional[str] = None

    @property
    def template(self) -> Optional[str]:
        return self.intent.get("template")

    @property
    def protocol(self) -> Optional[str]:
        return self.intent.get("protocol")

    @property
    def recipient(self) -> Optional[str]:
        return self.intent.get("to")

    @property
    def trigger_kind(self) -> str:
        return (self.trigger or self.intent.get("trigger") or EXTERNAL_TRIGGER).strip()


@dataclass
class GuardOutcome:
    blockers: List[PolicyBlocker] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)


def is_guarded_network(network: str, config: PolicyConfig) -> bool:
    """A network is guarded if configured so or classified production-like."""
    return network.lower() in config.guarded_networks or is_production_like(network)


def execution_markers(autonomous: bool) -> Dict[str, str]:
    if autonomous:
        return {
            "track": "autonomous",
            "governance": "hybrid",
            "trigger": DETERMINISTIC_TRIGGER,
        }
    return {"track": "legacy", "governance": "onchain_only", "trigger": EXTERNAL_TRIGGER}


class PolicyGuard:
    """Base class for the independent guards."""

    def __init__(self, name: str):
        self.name = name

    def evaluate(self, request: PolicyRequest, config: PolicyConfig) -> GuardOutcome:
        raise NotImplementedError


class NetworkGuard(PolicyGuard):
    def __init__(self):
        super().__init__("network")

    def evaluate(self, request: PolicyRequest, config: PolicyConfig) -> GuardOutcome:
        guarded = is_guarded_network(request.network, config)
        outcome = GuardOutcome(evidence={"guarded": guarded})
        if guarded and request.confirm_production is not True:
            outcome.blockers.append(
                PolicyBlocker(
                    code=PRODUCTION_CONFIRMATION_REQUIRED,
                    reason=f"network {request.network} is production-like and requires explicit confirmation",
                    remediation="Set confirmProduction=true to execute on this network.",
                    category="confirmation",
                )
            )
        return outcome


class SpendCapGuard(PolicyGuard):
    def __init__(self):
        super().__init__("spend_cap")

    def evaluate(self, request: PolicyRequest, config: PolicyConfig) -> GuardOutcome:
        amount = request.amount_usd
        outcome = GuardOutcome(
            evidence={
                "amountUsd": amount,
                "maxPerRunUsd": config.max_per_run_usd,
                "dailyLimitUsd": config.daily_limit_usd,
                "spentTodayUsd": request.spent_today_usd,
            }
        )
        if config.max_per_run_usd is None and config.daily_limit_usd is None:
            return outcome
        if amount is None:
            outcome.blockers.append(
                PolicyBlocker(
                    code=SPEND_AMOUNT_UNKNOWN,
                    reason="a spend cap is configured but the request carries no amountUsd",
                    remediation="Provide amountUsd so the spend caps can be checked.",
                )
            )
            return outcome

        violations = []
        if config.max_per_run_usd is not None and amount > config.max_per_run_usd:
            violations.append(
                f"requested {amount:g} USD exceeds per-run cap {config.max_per_run_usd:g} USD"
            )
        if config.daily_limit_usd is not None:
            projected = request.spent_today_usd + amount
            if projected > config.daily_limit_usd:
                violations.append(
                    f"requested {amount:g} USD plus {request.spent_today_usd:g} USD spent today "
                    f"exceeds daily limit {config.daily_limit_usd:g} USD"
                )
        if violations:
            outcome.blockers.append(
                PolicyBlocker(
                    code=SPEND_CAP_EXCEEDED,
                    reason="; ".join(violations),
                    remediation="Lower amountUsd or split the operation across runs within the caps.",
                )
            )
            outcome.actions.append("Reduce the amount below the configured spend caps.")
        return outcome


class AllowListGuard(PolicyGuard):
    """Allow-lists only. An empty list means the dimension is unrestricted."""

    def __init__(self):
        super().__init__("allow_list")

    def evaluate(self, request: PolicyRequest, config: PolicyConfig) -> GuardOutcome:
        violations = []
        if config.allowed_templates and request.template not in config.allowed_templates:
            violations.append(f"template '{request.template}' not in allowed templates")
        if config.allowed_networks and request.network.lower() not in config.allowed_networks:
            violations.append(f"network '{request.network}' not in allowed networks")
        if config.allowed_protocols and request.protocol not in config.allowed_protocols:
            violations.append(f"protocol '{request.protocol}' not in allowed protocols")

        recipient_enforced = self._recipient_enforced(request, config)
        if recipient_enforced and request.recipient is not None:
            recipient = str(request.recipient)
            key = recipient.lower() if recipient.lower().startswith("0x") else recipient
            if key not in config.allowed_recipients:
                violations.append(f"recipient {recipient} not in recipient allow-list for {request.intent.type}")

        outcome = GuardOutcome(
            evidence={
                "recipientMode": config.recipient_mode,
                "recipientEnforced": recipient_enforced,
                "policyVersion": config.version,
            }
        )
        if violations:
            outcome.blockers.append(
                PolicyBlocker(
                    code=ALLOW_LIST_VIOLATION,
                    reason="; ".join(violations),
                    remediation="Use an allow-listed template/network/protocol/recipient or update the policy allow-lists.",
                )
            )
        return outcome

    @staticmethod
    def _recipient_enforced(request: PolicyRequest, config: PolicyConfig) -> bool:
        if config.recipient_mode != "allowlist":
            return False
        if config.recipient_enforce_on == "all":
            return True
        return is_guarded_network(request.network, config)


class AutonomousTriggerGuard(PolicyGuard):
    """Active only when autonomous mode is on. Each failing condition is its own blocker."""

    def __init__(self):
        super().__init__("autonomous_trigger")

    def evaluate(self, request: PolicyRequest, config: PolicyConfig) -> GuardOutcome:
        autonomous = config.autonomous_mode
        trigger = request.trigger_kind
        binding_required = autonomous and config.execute_binding_required
        outcome = GuardOutcome(
            evidence={
                "autonomousMode": autonomous,
                "markers": execution_markers(autonomous),
                "requestTrigger": trigger,
                "requiredTrigger": DETERMINISTIC_TRIGGER,
                "cycleConfigPresent": config.cycle_config_present,
                "cycleConfig": (
                    {"cycleId": config.cycle_id, "intervalSeconds": config.cycle_interval_seconds}
                    if config.cycle_config_present else None
                ),
                "deterministicReady": autonomous
                and trigger == DETERMINISTIC_TRIGGER
                and config.cycle_config_present,
                "executeBinding": config.execute_binding,
                "executeBindingRequired": binding_required,
                "executeBindingReady": (not binding_required) or config.execute_binding_ready,
            }
        )
        if not autonomous:
            outcome.actions.append(
                "Legacy path active. Set AUTONOMOUS_MODE=true to validate deterministic autonomous controls."
            )
            return outcome

        if not config.cycle_config_present:
            outcome.blockers.append(
                PolicyBlocker(
                    code=AUTONOMOUS_CYCLE_CONFIG_MISSING,
                    reason="Autonomous mode requires deterministic cycle config (cycle id + interval seconds).",
                    remediation="Set AUTONOMOUS_CYCLE_ID and AUTONOMOUS_CYCLE_INTERVAL_SECONDS to deterministic values.",
                )
            )
            outcome.actions.append(
                "Define deterministic cycle config before autonomous rollout "
                "(AUTONOMOUS_CYCLE_ID, AUTONOMOUS_CYCLE_INTERVAL_SECONDS)."
            )
        if trigger != DETERMINISTIC_TRIGGER:
            outcome.blockers.append(
                PolicyBlocker(
                    code=AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED,
                    reason=f"Trigger '{trigger}' is blocked while autonomous mode is enabled.",
                    remediation=(
                        f"Route execution through the {DETERMINISTIC_TRIGGER} trigger, "
                        "or set AUTONOMOUS_MODE=false for manual/testing paths."
                    ),
                )
            )
            outcome.actions.append(
                "Use the deterministic cycle trigger only in autonomous mode; keep manual triggers for legacy mode."
            )
        if binding_required and not config.execute_binding_ready:
            outcome.blockers.append(
                PolicyBlocker(
                    code=AUTONOMOUS_EXECUTE_BINDING_UNAVAILABLE,
                    reason="Autonomous mode requires execute-binding readiness, but binding state is 'none'.",
                    remediation="Set AUTONOMOUS_EXECUTE_BINDING=prepared or active once the execute binding is configured.",
                )
            )
            outcome.actions.append(
                "Configure the execute binding and re-run the autonomous rollout gate to verify readiness."
            )
        return outcome


def default_guards() -> List[PolicyGuard]:
    return [NetworkGuard(), SpendCapGuard(), AllowListGuard(), AutonomousTriggerGuard()]


class PolicyEngine:
    """Runs every guard against the current config and ANDs the results."""

    def __init__(self, store: Optional[PolicyStore] = None, guards: Optional[List[PolicyGuard]] = None):
        self.store = store or PolicyStore()
        self.guards = guards if guards is not None else default_guards()

    @property
    def config(self) -> PolicyConfig:
        return self.store.get()

    def evaluate(self, request: PolicyRequest) -> PolicyDecision:
        config = self.store.get()
        decision = PolicyDecision(evidence={"policyVersion": config.version})
        for guard in self.guards:
            try:
                outcome = guard.evaluate(request, config)
            except Exception as exc:
                logger.exception("policy guard %s raised for run_id=%s", guard.name, request.run_id)
                outcome = GuardOutcome(
                    blockers=[
                        PolicyBlocker(
                            code=GUARD_ERROR,
                            reason=f"guard {guard.name} failed: {exc}",
                            remediation="Fix the policy configuration; execution is blocked until the guard evaluates cleanly.",
                        )
                    ]
                )
            decision.blockers.extend(outcome.blockers)
            decision.actions.extend(outcome.actions)
            decision.evidence[guard.name] = outcome.evidence

        autonomous = decision.evidence.get("autonomous_trigger", {}).get("autonomousMode", False)
        decision.evidence["markers"] = execution_markers(bool(autonomous))
        if decision.blockers:
            logger.warning(
                "policy blocked run_id=%s network=%s codes=%s",
                request.run_id,
                request.network,
                [b.code for b in decision.blockers],
            )
        return decision
