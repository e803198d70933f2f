"""
Cycle Trigger Verifier Tests

A complete proof verifies; each missing field yields exactly one blocker
naming that field.
"""

import json

import pytest

from workflow_gate.cycle_trigger import (
    CYCLE_ID_MISMATCH,
    CYCLE_ID_MISSING,
    INVALID_TX_HASH,
    PROOF_SCHEMA,
    STATE_DELTA_MISSING,
    TRANSITION_ID_MISSING,
    TRIGGER_PROOF_MISSING,
    TRIGGER_PROOF_UNDECODABLE,
    parse_cycle_trigger_proof,
    verify_cycle_trigger,
)

from tests.conftest import TX_HASH, valid_proof


def _codes(result):
    return [b.code for b in result.blockers]


class TestParse:

    def test_complete_proof(self):
        """A full proof parses with no blockers."""
        proof = parse_cycle_trigger_proof(valid_proof())
        assert proof.valid
        assert proof.source == "dict"
        assert proof.state_delta.label == "idle->rebalanced"

    def test_json_text(self):
        """JSON text is accepted."""
        proof = parse_cycle_trigger_proof(json.dumps(valid_proof()))
        assert proof.valid
        assert proof.source == "json"

    def test_aliases(self):
        """Alternate field names are understood."""
        proof = parse_cycle_trigger_proof({
            "transactionHash": TX_HASH,
            "cycleId": "cycle-1",
            "nonce": "7",
            "event": "CycleFired",
            "state": {"prevState": "a", "newState": "b"},
        })
        assert proof.valid
        assert proof.transition_id == "7"
        assert proof.event_name == "CycleFired"

    def test_missing(self):
        """No proof at all is a single missing blocker."""
        proof = parse_cycle_trigger_proof(None)
        assert not proof.available
        assert [b.code for b in proof.blockers] == [TRIGGER_PROOF_MISSING]

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
    def test_undecodable(self, raw):
        """Broken JSON or a non-object is undecodable, never implicit success."""
        proof = parse_cycle_trigger_proof(raw)
        assert [b.code for b in proof.blockers] == [TRIGGER_PROOF_UNDECODABLE]
        assert not proof.valid

    @pytest.mark.parametrize(
        "field_name, code",
        [
            ("txHash", INVALID_TX_HASH),
            ("cycleId", CYCLE_ID_MISSING),
            ("transitionId", TRANSITION_ID_MISSING),
            ("stateDelta", STATE_DELTA_MISSING),
        ],
    )
    def test_each_missing_field_one_blocker(self, field_name, code):
        """Removing one field yields exactly one blocker for it."""
        raw = valid_proof()
        del raw[field_name]
        proof = parse_cycle_trigger_proof(raw)
        assert [b.code for b in proof.blockers] == [code]
        assert proof.blockers[0].category == "integrity"

    def test_half_state_delta(self):
        """A delta needs both states."""
        proof = parse_cycle_trigger_proof(valid_proof(stateDelta={"previousState": "idle"}))
        assert [b.code for b in proof.blockers] == [STATE_DELTA_MISSING]

    def test_errors_accumulate(self):
        """Every problem is reported at once."""
        proof = parse_cycle_trigger_proof({"txHash": "0x12"})
        assert len(proof.blockers) == 4

    def test_tx_hash_checked_against_network_ledger(self):
        """An EVM hash is not a valid Solana signature."""
        proof = parse_cycle_trigger_proof(valid_proof(), network="solana")
        assert INVALID_TX_HASH in [b.code for b in proof.blockers]


class TestVerify:

    def test_verifiable_transition(self):
        """A valid proof yields a transition record."""
        result = verify_cycle_trigger(valid_proof(), required_cycle_id="cycle-1")
        assert result.verifiable
        assert result.transition["transitionId"] == "t-42"
        assert result.transition["triggerTxHash"] == TX_HASH
        assert result.transition["stateDelta"]["nextState"] == "rebalanced"

    def test_cycle_id_mismatch(self):
        """The proof must be for the configured cycle."""
        result = verify_cycle_trigger(valid_proof(cycleId="cycle-9"), required_cycle_id="cycle-1")
        assert _codes(result) == [CYCLE_ID_MISMATCH]
        assert result.transition is None

    def test_invalid_proof_has_no_transition(self):
        """Nothing is reported as a transition unless verifiable."""
        result = verify_cycle_trigger(valid_proof(transitionId=""))
        assert not result.verifiable
        assert result.transition is None
        assert _codes(result) == [TRANSITION_ID_MISSING]

    def test_accepts_parsed_proof(self):
        """verify accepts an already-parsed proof."""
        parsed = parse_cycle_trigger_proof(valid_proof())
        assert verify_cycle_trigger(parsed).verifiable

    def test_to_dict(self):
        """The serialized verification carries its schema."""
        data = verify_cycle_trigger(valid_proof()).to_dict()
        assert data["schema"] == PROOF_SCHEMA
        assert data["onchainTrigger"]["cycleId"] == "cycle-1"
