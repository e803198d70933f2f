"""
Workflow Gate: Data Models

This module defines the data contracts shared by every stage of the
analysis -> simulate -> execute pipeline:

- Intent: canonical, comparable description of a requested operation
- WorkflowSession: per-run record of phase and the intent it was opened with
- PolicyBlocker / PolicyDecision: allow/block outcome of the guard pass
- IdempotencyRecord: durable per-run outcome used to refuse replays
- StateDelta / EvidenceRecord: immutable audit artifacts

The models are PURELY STRUCTURAL. Validation lives in the normalizer,
guards and verifiers; nothing here authorizes anything.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

EVIDENCE_SCHEMA = "workflow-evidence/v1"
DETERMINISTIC_TRIGGER = "deterministic_contract_cycle"
EXTERNAL_TRIGGER = "external"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_json(value: Any) -> str:
    """Compact, key-sorted JSON used for hashing and structural equality."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def stable_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest().upper()


class WorkflowPhase(Enum):
    """Phases of a workflow run, in advancement order."""
    ANALYSIS = "analysis"
    SIMULATE = "simulate"
    EXECUTE = "execute"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "WorkflowPhase":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ANALYSIS


_PHASE_RANK = {
    WorkflowPhase.ANALYSIS: 0,
    WorkflowPhase.SIMULATE: 1,
    WorkflowPhase.EXECUTE: 2,
}


class RunStatus(Enum):
    """Outcome status of a workflow call."""
    OK = "ok"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class Intent:
    """
    Canonical description of a requested state-changing operation.

    Equality and hashing are STRUCTURAL: two intents are the same iff their
    canonical serialization matches. ``fields`` is exposed read-only.
    """
    family: str
    network: str
    fields: Mapping[str, Any]

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def type(self) -> str:
        return str(self.fields.get("type", ""))

    def canonical_form(self) -> str:
        return canonical_json(
            {"family": self.family, "network": self.network, "fields": dict(self.fields)}
        )

    def intent_hash(self) -> str:
        return stable_hash(self.canonical_form())

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self.family, "network": self.network, "fields": dict(self.fields)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Intent":
        return cls(
            family=data["family"],
            network=data["network"],
            fields=dict(data.get("fields") or {}),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Intent):
            return NotImplemented
        return self.canonical_form() == other.canonical_form()

    def __hash__(self) -> int:
        return hash(self.canonical_form())


@dataclass
class WorkflowSession:
    """Live per-run state. Owned and mutated only by the session store."""
    run_id: str
    network: str
    intent: Intent
    phase: WorkflowPhase = WorkflowPhase.ANALYSIS
    confirm_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    terminal: bool = False
    simulation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "network": self.network,
            "intent": self.intent.to_dict(),
            "phase": self.phase.value,
            "confirm_token": self.confirm_token,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "terminal": self.terminal,
        }


@dataclass(frozen=True)
class PolicyBlocker:
    code: str
    reason: str
    remediation: str
    category: str = "policy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "reason": self.reason,
            "remediation": self.remediation,
            "category": self.category,
        }

    @classmethod
    def from_error(cls, error) -> "PolicyBlocker":
        return cls(
            code=error.code,
            reason=error.message,
            remediation=error.remediation,
            category=error.category,
        )


@dataclass
class PolicyDecision:
    """Result of one full guard pass. ``blockers == []`` iff ``allowed``."""
    blockers: List[PolicyBlocker] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return len(self.blockers) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "blockers": [b.to_dict() for b in self.blockers],
            "actions": list(self.actions),
            "evidence": dict(self.evidence),
        }


@dataclass(frozen=True)
class IdempotencyRecord:
    run_id: str
    status: str
    result: Dict[str, Any]
    timestamp: datetime
    amount_usd: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.status != "in_progress"

    @property
    def tx_hash(self) -> Optional[str]:
        return (self.result or {}).get("txHash")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "status": self.status,
            "result": dict(self.result or {}),
            "txHash": self.tx_hash,
            "amountUsd": self.amount_usd,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class StateDelta:
    previous_state: str
    next_state: str

    @property
    def label(self) -> str:
        return f"{self.previous_state}->{self.next_state}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previousState": self.previous_state,
            "nextState": self.next_state,
            "label": self.label,
        }


@dataclass(frozen=True)
class EvidenceRecord:
    """
    IMMUTABLE audit artifact written once per execute attempt.

    frozen=True: a record is never modified after it has been written.
    """
    run_id: str
    decision: str
    intent: Optional[Dict[str, Any]]
    blockers: tuple = ()
    tx_hash: Optional[str] = None
    emitted_events: tuple = ()
    state_delta: Optional[StateDelta] = None
    steps: tuple = ()
    schema: str = EVIDENCE_SCHEMA
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema,
            "runId": self.run_id,
            "decision": self.decision,
            "intent": self.intent,
            "txHash": self.tx_hash,
            "emittedEvents": list(self.emitted_events),
            "stateDelta": self.state_delta.to_dict() if self.state_delta else None,
            "blockers": [dict(b) for b in self.blockers],
            "steps": [dict(s) for s in self.steps],
            "recordedAt": self.recorded_at.isoformat(),
        }
