import os
import sys

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from workflow_gate.adapters import PaperLedgerAdapter, PaperLedgerConfig
from workflow_gate.config import Settings
from workflow_gate.engine import WorkflowEngine
from workflow_gate.evidence import EvidenceRecorder
from workflow_gate.idempotency import SqlIdempotencyStore
from workflow_gate.policy import PolicyEngine
from workflow_gate.policy_store import PolicyConfig, PolicyStore

RECIPIENT = "0x1111111111111111111111111111111111111111"
OTHER_RECIPIENT = "0x3333333333333333333333333333333333333333"
TOKEN = "0x2222222222222222222222222222222222222222"
MARKET = "0x4444444444444444444444444444444444444444"
TX_HASH = "0x" + "ab" * 32


def native_transfer(amount=1, amount_usd=None, to=RECIPIENT):
    fields = {"type": "transfer.native", "to": to, "amountNative": amount}
    if amount_usd is not None:
        fields["amountUsd"] = amount_usd
    return fields


def valid_proof(**overrides):
    proof = {
        "txHash": TX_HASH,
        "cycleId": "cycle-1",
        "transitionId": "t-42",
        "eventName": "DeterministicCycleTriggered",
        "emittedEvents": ["DeterministicCycleTriggered"],
        "stateDelta": {"previousState": "idle", "nextState": "rebalanced"},
    }
    proof.update(overrides)
    return proof


@pytest.fixture
def test_settings():
    cfg = Settings()
    cfg.ADAPTER_TIMEOUT_SECONDS = 2.0
    cfg.ANALYSIS_READ_ATTEMPTS = 2
    cfg.ANALYSIS_READ_BACKOFF_SECONDS = 0
    cfg.CONFIRM_TOKEN_TTL_SECONDS = 1200
    cfg.SESSION_TTL_SECONDS = 3600
    return cfg


@pytest.fixture
async def sql_store(tmp_path):
    store, engine = await SqlIdempotencyStore.create(f"sqlite+aiosqlite:///{tmp_path / 'idem.db'}")
    yield store
    await engine.dispose()


@pytest.fixture
def paper_adapter():
    return PaperLedgerAdapter(PaperLedgerConfig(balances={RECIPIENT: 12.5}))


@pytest.fixture
def make_engine(sql_store, paper_adapter, test_settings, tmp_path):
    """Factory: build an engine around the shared store/adapter with a given policy."""

    def _make(policy=None, adapter=None, **kwargs):
        config = policy if isinstance(policy, PolicyConfig) else PolicyConfig(**(policy or {}))
        return WorkflowEngine(
            adapter or paper_adapter,
            sql_store,
            policy=PolicyEngine(PolicyStore(config)),
            evidence=kwargs.pop("evidence", EvidenceRecorder(str(tmp_path / "evidence"))),
            settings=test_settings,
            **kwargs,
        )

    return _make
