"""
Workflow Gate Module

CRITICAL SAFETY LAYER:
A uniform, safety-gated pipeline for state-changing operations against
multiple independent ledgers (transfers, lending, liquidity, bridges).

PURPOSE:
- Normalize requested operations into canonical, comparable intents
- Drive every run through analysis -> simulate -> execute
- Bind execute approval to the exact analysed request (confirm tokens)
- Enforce spend caps, allow-lists, network and autonomous-trigger guards
- Refuse a second broadcast for the same run id
- Leave an immutable evidence record for every execute attempt

KEY PRINCIPLE:
"Nothing is broadcast unless every gate said yes."

The confirm token is Layer-1 tamper/staleness detection only. The
unforgeable control is the out-of-process Layer-2 enforcement backend.

ARCHITECTURE:
- intent_normalizer.py: free-text hints and strict typed intent validation
- session_store.py: per-run sessions and the per-run critical section
- confirm_token.py: Layer-1 confirm tokens
- policy_store.py / policy.py: versioned policy config and the four guards
- idempotency.py / storage.py: durable append-only run ledger (SQLAlchemy)
- cycle_trigger.py: deterministic cycle trigger proof verification
- evidence.py: append-only evidence history and receipt normalization
- adapters.py / enforcement.py: ledger capability contract and Layer-2 hook
- engine.py: run_workflow

DEFAULT BEHAVIOR: DO NOTHING (fail closed)
"""

from workflow_gate.adapters import (
    BroadcastResult,
    LedgerAdapter,
    PaperLedgerAdapter,
    PaperLedgerConfig,
    SimulationResult,
    StateQuery,
    Step,
)
from workflow_gate.confirm_token import ConfirmTokenAuthority, TokenVerification
from workflow_gate.cycle_trigger import (
    CycleVerification,
    parse_cycle_trigger_proof,
    verify_cycle_trigger,
)
from workflow_gate.engine import WorkflowEngine, WorkflowResult, build_workflow_engine
from workflow_gate.enforcement import (
    AllowAllEnforcement,
    EnforcementBackend,
    HttpEnforcementBackend,
)
from workflow_gate.errors import (
    AdapterError,
    ConfirmationError,
    IdempotencyError,
    InputError,
    IntegrityError,
    PolicyError,
    WorkflowError,
)
from workflow_gate.evidence import EvidenceRecorder, normalize_tx_receipt
from workflow_gate.idempotency import IdempotencyStore, SqlIdempotencyStore
from workflow_gate.intent_normalizer import (
    normalize_intent,
    parse_intent_text,
    parse_run_mode_hint,
)
from workflow_gate.models import (
    EvidenceRecord,
    IdempotencyRecord,
    Intent,
    PolicyBlocker,
    PolicyDecision,
    RunStatus,
    WorkflowPhase,
    WorkflowSession,
)
from workflow_gate.policy import PolicyEngine, PolicyRequest
from workflow_gate.policy_store import PolicyConfig, PolicyStore, load_policy_config
from workflow_gate.session_store import InMemorySessionStore, SessionStore

__all__ = [
    "AdapterError",
    "AllowAllEnforcement",
    "BroadcastResult",
    "ConfirmTokenAuthority",
    "ConfirmationError",
    "CycleVerification",
    "EnforcementBackend",
    "EvidenceRecord",
    "EvidenceRecorder",
    "HttpEnforcementBackend",
    "IdempotencyError",
    "IdempotencyRecord",
    "IdempotencyStore",
    "InMemorySessionStore",
    "InputError",
    "IntegrityError",
    "Intent",
    "LedgerAdapter",
    "PaperLedgerAdapter",
    "PaperLedgerConfig",
    "PolicyBlocker",
    "PolicyConfig",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyError",
    "PolicyRequest",
    "PolicyStore",
    "RunStatus",
    "SessionStore",
    "SimulationResult",
    "SqlIdempotencyStore",
    "StateQuery",
    "Step",
    "TokenVerification",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowPhase",
    "WorkflowResult",
    "WorkflowSession",
    "build_workflow_engine",
    "load_policy_config",
    "normalize_intent",
    "normalize_tx_receipt",
    "parse_cycle_trigger_proof",
    "parse_intent_text",
    "parse_run_mode_hint",
    "verify_cycle_trigger",
]
