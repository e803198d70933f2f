"""
Cycle Trigger Verifier (autonomous path only).

Validates the on-chain proof that a deterministic contract cycle fired:
``{txHash, cycleId, transitionId, eventName, emittedEvents,
stateDelta: {previousState, nextState}}``.

Checks ACCUMULATE: one blocker per missing or malformed field, so a caller
sees everything wrong with a proof at once. A malformed proof is never
treated as implicit success.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import PolicyBlocker, StateDelta
from .networks import LEDGER_FORMATS, get_network

logger = logging.getLogger(__name__)

PROOF_SCHEMA = "autonomous-cycle-proof/v2"
DEFAULT_EVENT_NAME = "DeterministicCycleTriggered"

TRIGGER_PROOF_MISSING = "trigger-proof-missing"
TRIGGER_PROOF_UNDECODABLE = "trigger-proof-undecodable"
INVALID_TX_HASH = "trigger-proof-invalid-tx-hash"
CYCLE_ID_MISSING = "trigger-proof-cycle-id-missing"
TRANSITION_ID_MISSING = "trigger-proof-transition-id-missing"
STATE_DELTA_MISSING = "trigger-proof-state-delta-missing"
CYCLE_ID_MISMATCH = "trigger-proof-cycle-id-mismatch"

_REMEDIATION = "Submit the proof emitted by the deterministic cycle transaction, unmodified."


def _blocker(code: str, reason: str, remediation: str = _REMEDIATION) -> PolicyBlocker:
    return PolicyBlocker(code=code, reason=reason, remediation=remediation, category="integrity")


def _text(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value:
            return str(value).strip()
    return ""


def _state_delta(raw: Any) -> Optional[StateDelta]:
    data = raw if isinstance(raw, dict) else {}
    previous_state = _text(data, "previousState", "prevState")
    next_state = _text(data, "nextState", "newState")
    if not previous_state or not next_state:
        return None
    return StateDelta(previous_state=previous_state, next_state=next_state)


@dataclass(frozen=True)
class CycleTriggerProof:
    source: str  # "json" | "dict" | "missing" | "json_parse_error"
    tx_hash: Optional[str] = None
    cycle_id: Optional[str] = None
    transition_id: Optional[str] = None
    event_name: str = DEFAULT_EVENT_NAME
    emitted_events: tuple = ()
    state_delta: Optional[StateDelta] = None
    blockers: tuple = ()
    raw: Optional[Dict[str, Any]] = None

    @property
    def available(self) -> bool:
        return self.source in ("json", "dict")

    @property
    def valid(self) -> bool:
        return self.available and not self.blockers


def parse_cycle_trigger_proof(raw: Any, network: Optional[str] = None) -> CycleTriggerProof:
    """
    Parse a proof given as a dict or JSON text.

    Accepted aliases: ``transactionHash`` for txHash, ``nonce`` for
    transitionId, ``event`` for eventName, ``state`` for stateDelta, and
    ``prevState``/``newState`` inside the delta. The tx hash is checked against
    the ledger format of ``network`` (EVM when no network is given).
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return CycleTriggerProof(
            source="missing",
            blockers=(_blocker(
                TRIGGER_PROOF_MISSING,
                "on-chain cycle trigger proof missing",
                "Attach triggerProof from the deterministic cycle transaction.",
            ),),
        )

    if isinstance(raw, dict):
        data, source = raw, "dict"
    else:
        try:
            data = json.loads(str(raw))
        except ValueError as exc:
            return CycleTriggerProof(
                source="json_parse_error",
                blockers=(_blocker(TRIGGER_PROOF_UNDECODABLE, f"invalid trigger proof JSON: {exc}"),),
            )
        if not isinstance(data, dict):
            return CycleTriggerProof(
                source="json_parse_error",
                blockers=(_blocker(TRIGGER_PROOF_UNDECODABLE, "trigger proof JSON must be an object"),),
            )
        source = "json"

    ledger = get_network(network).format if network else LEDGER_FORMATS["evm"]
    tx_hash = _text(data, "txHash", "transactionHash")
    cycle_id = _text(data, "cycleId")
    transition_id = _text(data, "transitionId", "nonce")
    event_name = _text(data, "eventName", "event") or DEFAULT_EVENT_NAME
    emitted = data.get("emittedEvents")
    emitted_events = tuple(emitted) if isinstance(emitted, list) else ()
    state_delta = _state_delta(data.get("stateDelta") or data.get("state"))

    blockers: List[PolicyBlocker] = []
    if not ledger.is_tx_hash(tx_hash):
        blockers.append(_blocker(INVALID_TX_HASH, f"txHash '{tx_hash}' is not a valid {ledger.ledger} transaction hash"))
    if not cycle_id:
        blockers.append(_blocker(CYCLE_ID_MISSING, "cycleId missing in trigger proof"))
    if not transition_id:
        blockers.append(_blocker(TRANSITION_ID_MISSING, "transitionId missing in trigger proof"))
    if state_delta is None:
        blockers.append(_blocker(STATE_DELTA_MISSING, "stateDelta missing in trigger proof (needs previousState and nextState)"))

    return CycleTriggerProof(
        source=source,
        tx_hash=tx_hash or None,
        cycle_id=cycle_id or None,
        transition_id=transition_id or None,
        event_name=event_name,
        emitted_events=emitted_events,
        state_delta=state_delta,
        blockers=tuple(blockers),
        raw=dict(data),
    )


@dataclass(frozen=True)
class CycleVerification:
    verifiable: bool
    proof: CycleTriggerProof
    transition: Optional[Dict[str, Any]] = None
    blockers: List[PolicyBlocker] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": PROOF_SCHEMA,
            "verifiable": self.verifiable,
            "source": self.proof.source,
            "onchainTrigger": {
                "txHash": self.proof.tx_hash,
                "cycleId": self.proof.cycle_id,
                "transitionId": self.proof.transition_id,
                "eventName": self.proof.event_name,
                "emittedEvents": list(self.proof.emitted_events),
                "stateDelta": self.proof.state_delta.to_dict() if self.proof.state_delta else None,
            },
            "transition": self.transition,
            "blockers": [b.to_dict() for b in self.blockers],
        }


def verify_cycle_trigger(
    proof: Any,
    network: Optional[str] = None,
    required_cycle_id: Optional[str] = None,
) -> CycleVerification:
    """Verify a raw or parsed proof; ``transition`` is set only when verifiable."""
    if not isinstance(proof, CycleTriggerProof):
        proof = parse_cycle_trigger_proof(proof, network)

    blockers = list(proof.blockers)
    required = (required_cycle_id or "").strip()
    if required and proof.cycle_id and proof.cycle_id != required:
        blockers.append(
            _blocker(
                CYCLE_ID_MISMATCH,
                f"cycleId mismatch: expected {required}, got {proof.cycle_id}",
                f"Submit a proof for cycle {required} or update AUTONOMOUS_CYCLE_ID.",
            )
        )

    verifiable = proof.available and not blockers
    transition = None
    if verifiable:
        transition = {
            "transitionId": proof.transition_id,
            "cycleId": proof.cycle_id,
            "stateDelta": proof.state_delta.to_dict(),
            "triggerTxHash": proof.tx_hash,
            "eventName": proof.event_name,
            "emittedEvents": list(proof.emitted_events),
        }
    else:
        logger.warning(
            "cycle trigger proof not verifiable codes=%s", [b.code for b in blockers]
        )
    return CycleVerification(verifiable=verifiable, proof=proof, transition=transition, blockers=blockers)
