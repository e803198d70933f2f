"""
Workflow Engine Test Suite

End-to-end runs over the paper ledger, a temporary SQLite idempotency store
and an on-disk evidence recorder.

Covers:
- analysis / simulate / execute happy paths
- production confirmation, confirm-token tampering and expiry
- spend caps, autonomous trigger rules and cycle proofs
- idempotency: sequential and concurrent replays never re-broadcast
- adapter failures, timeouts and cancellation during dispatch
- evidence for every execute attempt
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from workflow_gate.adapters import PaperLedgerAdapter, PaperLedgerConfig
from workflow_gate.engine import WorkflowEngine, build_workflow_engine
from workflow_gate.enforcement import EnforcementBackend, EnforcementVerdict
from workflow_gate.errors import (
    AdapterError,
    ConfirmationError,
    IdempotencyError,
    InputError,
    IntegrityError,
    PolicyError,
)
from workflow_gate.idempotency import SqlIdempotencyStore
from workflow_gate.models import PolicyBlocker, RunStatus, WorkflowPhase
from workflow_gate.policy import (
    AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED,
    PRODUCTION_CONFIRMATION_REQUIRED,
    SPEND_CAP_EXCEEDED,
)

from tests.conftest import MARKET, RECIPIENT, native_transfer, valid_proof

AUTONOMOUS_POLICY = {
    "autonomous_cycle_required": True,
    "cycle_id": "cycle-1",
    "cycle_interval_seconds": 300,
}


def _codes(result):
    return [b.code for b in result.blockers]


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


class DenyingEnforcement(EnforcementBackend):
    name = "deny"

    async def authorize(self, run_id, network, intent, decision):
        return EnforcementVerdict(
            allowed=False,
            backend=self.name,
            blockers=[PolicyBlocker("enforcement-denied", "signer refused", "ask ops")],
        )


class StallingEnforcement(EnforcementBackend):
    name = "stall"

    def __init__(self):
        self.entered = asyncio.Event()

    async def authorize(self, run_id, network, intent, decision):
        self.entered.set()
        await asyncio.sleep(10)


class MalformedBuildAdapter(PaperLedgerAdapter):
    async def build_steps(self, intent):
        raise KeyError("malformed adapter response")


class UnreachableStore(SqlIdempotencyStore):
    async def lookup(self, run_id):
        raise ConnectionError("database unreachable")


async def _analyse_and_execute(engine, run_id, network, fields, **execute_kwargs):
    analysis = await engine.run_workflow(run_id=run_id, phase="analysis", network=network, intent_fields=fields)
    return analysis, await engine.run_workflow(
        run_id=run_id,
        phase="execute",
        network=network,
        intent_fields=fields,
        confirm_token=analysis.confirm_token,
        **execute_kwargs,
    )


# ============================================================================
# ANALYSIS AND SIMULATE
# ============================================================================

class TestAnalysis:

    @pytest.mark.asyncio
    async def test_non_guarded_network_issues_no_token(self, make_engine):
        """Testnet analysis runs reads and issues no confirm token."""
        engine = make_engine()
        result = await engine.run_workflow(run_id="run-a", phase="analysis", network="sepolia", intent_fields=native_transfer())
        assert result.ok
        assert result.confirm_token is None
        assert result.artifacts["guarded"] is False
        assert result.artifacts["reads"][0] == {"query": f"balance(address={RECIPIENT})", "ok": True, "value": 12.5}

    @pytest.mark.asyncio
    async def test_guarded_network_issues_token(self, make_engine):
        """Production-like analysis issues a token bound to the run."""
        engine = make_engine()
        result = await engine.run_workflow(run_id="run-a", phase="analysis", network="ethereum", intent_fields=native_transfer())
        assert result.confirm_token.startswith("WGT1.")
        assert result.artifacts["requiresConfirmProduction"] is True
        session = await engine.sessions.get("run-a")
        assert engine.tokens.verify(result.confirm_token, "run-a", "ethereum", session.intent).ok
        assert session.confirm_token == result.confirm_token

    @pytest.mark.asyncio
    async def test_failed_reads_are_warnings(self, make_engine):
        """Read failures are retried, then reported as warnings without failing analysis."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(failing_reads=["balance"]))
        engine = make_engine(adapter=adapter)
        result = await engine.run_workflow(phase="analysis", network="sepolia", intent_fields=native_transfer())
        assert result.ok
        assert len(result.warnings) == 1
        assert result.artifacts["reads"][0]["ok"] is False
        assert len(adapter.reads) == 2

    @pytest.mark.asyncio
    async def test_reads_run_concurrently(self, make_engine):
        """Independent reads overlap instead of running back to back."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(read_delay_seconds=0.3))
        engine = make_engine(adapter=adapter)
        fields = {"type": "lending.supply", "market": MARKET, "amount": 5, "asset": "USDC"}
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await engine.run_workflow(phase="analysis", network="sepolia", intent_fields=fields)
        assert len(result.artifacts["reads"]) == 2
        assert loop.time() - started < 0.55

    @pytest.mark.asyncio
    async def test_text_confirmation_never_authorizes(self, make_engine):
        """A 'confirm mainnet' phrase only produces a warning."""
        engine = make_engine()
        result = await engine.run_workflow(
            run_id="run-a",
            phase="analysis",
            network="ethereum",
            intent_text=f"send 1 eth to {RECIPIENT}, confirm mainnet",
        )
        assert any("confirm_production" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_phase_from_text_and_generated_run_id(self, make_engine):
        """Without an explicit phase the text hint decides; a run id is minted."""
        engine = make_engine()
        result = await engine.run_workflow(network="sepolia", intent_text=f"simulate: send 1 eth to {RECIPIENT}")
        assert result.phase is WorkflowPhase.SIMULATE
        assert result.run_id.startswith("wf-")


class TestSimulate:

    @pytest.mark.asyncio
    async def test_simulation_artifacts(self, make_engine):
        """simulate returns the adapter's plan."""
        engine = make_engine()
        fields = {"type": "lending.supply", "market": MARKET, "amount": 5, "asset": "USDC"}
        result = await engine.run_workflow(run_id="run-s", phase="simulate", network="sepolia", intent_fields=fields)
        assert result.ok
        assert [s["kind"] for s in result.artifacts["simulation"]["steps"]] == ["approve", "lending.supply"]

    @pytest.mark.asyncio
    async def test_simulation_failure_degrades(self, make_engine):
        """A failing dry-run is a warning, not a failure."""
        engine = make_engine(adapter=PaperLedgerAdapter(PaperLedgerConfig(fail_simulation=True)))
        result = await engine.run_workflow(run_id="run-s", phase="simulate", network="sepolia", intent_fields=native_transfer())
        assert result.ok
        assert result.artifacts["simulation"]["ok"] is False
        assert result.warnings


# ============================================================================
# EXECUTE GATES
# ============================================================================

class TestExecuteGates:

    @pytest.mark.asyncio
    async def test_testnet_execute_succeeds(self, make_engine, paper_adapter):
        """Testnet execute broadcasts and records evidence."""
        engine = make_engine()
        result = await engine.run_workflow(run_id="run-1", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert result.ok
        assert result.exit_code == 0
        assert result.artifacts["txHash"].startswith("0x")
        assert result.artifacts["steps"][0]["receipt"]["status"] == "success"
        assert len(paper_adapter.broadcasts) == 1
        assert engine.evidence.latest()["decision"] == "executed"

    @pytest.mark.asyncio
    async def test_production_without_confirmation(self, make_engine, paper_adapter):
        """A valid token alone is not enough on a production network."""
        engine = make_engine()
        _, result = await _analyse_and_execute(engine, "run-b", "ethereum", native_transfer())
        assert result.status is RunStatus.BLOCKED
        assert result.exit_code == 2
        assert _codes(result) == [PRODUCTION_CONFIRMATION_REQUIRED]
        assert paper_adapter.broadcasts == []
        with pytest.raises(ConfirmationError):
            result.raise_for_status()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["false", "no", "0", 1])
    async def test_production_confirmation_must_be_true(self, make_engine, paper_adapter, value):
        """Only the boolean True confirms; truthy look-alikes are refused."""
        engine = make_engine()
        _, result = await _analyse_and_execute(engine, "run-b", "ethereum", native_transfer(), confirm_production=value)
        assert _codes(result) == [PRODUCTION_CONFIRMATION_REQUIRED]
        assert paper_adapter.broadcasts == []

    @pytest.mark.asyncio
    async def test_production_with_confirmation(self, make_engine):
        """Token plus explicit confirmation executes on a production network."""
        engine = make_engine()
        _, result = await _analyse_and_execute(engine, "run-b", "ethereum", native_transfer(), confirm_production=True)
        assert result.ok

    @pytest.mark.asyncio
    async def test_missing_token_on_production(self, make_engine):
        """Production execute without a token is blocked."""
        engine = make_engine()
        result = await engine.run_workflow(
            run_id="run-b", phase="execute", network="ethereum", intent_fields=native_transfer(), confirm_production=True,
        )
        assert _codes(result) == ["confirm-token-missing"]

    @pytest.mark.asyncio
    async def test_changed_intent_detected(self, make_engine, paper_adapter):
        """Executing a different intent than was analysed is refused."""
        engine = make_engine()
        analysis = await engine.run_workflow(run_id="run-t", phase="analysis", network="ethereum", intent_fields=native_transfer(amount=1))
        result = await engine.run_workflow(
            run_id="run-t",
            phase="execute",
            network="ethereum",
            intent_fields=native_transfer(amount=100),
            confirm_token=analysis.confirm_token,
            confirm_production=True,
        )
        assert "session-intent-mismatch" in _codes(result)
        assert "confirm-token-tamper-detected" in _codes(result)
        assert paper_adapter.broadcasts == []
        with pytest.raises(ConfirmationError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_expired_token(self, make_engine):
        """A token older than the ttl is rejected with a specific code."""
        clock = FakeClock()
        engine = make_engine(clock=clock)
        analysis = await engine.run_workflow(run_id="run-x", phase="analysis", network="ethereum", intent_fields=native_transfer())
        clock.now += timedelta(hours=1)
        result = await engine.run_workflow(
            run_id="run-x",
            phase="execute",
            network="ethereum",
            intent_fields=native_transfer(),
            confirm_token=analysis.confirm_token,
            confirm_production=True,
        )
        assert _codes(result) == ["confirm-token-expired"]

    @pytest.mark.asyncio
    async def test_token_from_text(self, make_engine):
        """A token pasted in the free text is picked up for verification."""
        engine = make_engine()
        analysis = await engine.run_workflow(run_id="run-y", phase="analysis", network="ethereum", intent_fields=native_transfer())
        result = await engine.run_workflow(
            run_id="run-y",
            phase="execute",
            network="ethereum",
            intent_fields=native_transfer(),
            intent_text=f"confirmToken: {analysis.confirm_token}",
            confirm_production=True,
        )
        assert result.ok

    @pytest.mark.asyncio
    async def test_spend_cap(self, make_engine, paper_adapter):
        """amountUsd above the per-run cap is a policy error."""
        engine = make_engine({"max_per_run_usd": 5000})
        _, result = await _analyse_and_execute(
            engine, "run-c", "ethereum", native_transfer(amount_usd=6000), confirm_production=True,
        )
        assert _codes(result) == [SPEND_CAP_EXCEEDED]
        assert paper_adapter.broadcasts == []
        with pytest.raises(PolicyError) as exc:
            result.raise_for_status()
        assert exc.value.code == SPEND_CAP_EXCEEDED

    @pytest.mark.asyncio
    async def test_daily_limit_across_runs(self, make_engine):
        """Earlier runs today count toward the daily limit."""
        engine = make_engine({"daily_limit_usd": 100})
        first = await engine.run_workflow(run_id="d-1", phase="execute", network="sepolia", intent_fields=native_transfer(amount_usd=70))
        second = await engine.run_workflow(run_id="d-2", phase="execute", network="sepolia", intent_fields=native_transfer(amount_usd=40))
        assert first.ok
        assert _codes(second) == [SPEND_CAP_EXCEEDED]

    @pytest.mark.asyncio
    async def test_daily_limit_holds_under_concurrency(self, make_engine):
        """Concurrent runs with different ids cannot jointly exceed the daily limit."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(broadcast_delay_seconds=0.05))
        engine = make_engine({"daily_limit_usd": 100}, adapter=adapter)
        results = await asyncio.gather(*[
            engine.run_workflow(
                run_id=f"d{i}", phase="execute", network="sepolia", intent_fields=native_transfer(amount_usd=60),
            )
            for i in range(2)
        ])
        assert sum(1 for r in results if r.ok) == 1
        assert len(adapter.broadcasts) == 1
        assert [_codes(r) for r in results if not r.ok] == [[SPEND_CAP_EXCEEDED]]

    @pytest.mark.asyncio
    async def test_blocked_run_can_be_retried(self, make_engine, sql_store):
        """A blocked execute does not burn the run id."""
        engine = make_engine()
        _, blocked = await _analyse_and_execute(engine, "run-r", "ethereum", native_transfer())
        assert not blocked.ok
        assert await sql_store.lookup("run-r") is None
        analysis = await engine.run_workflow(run_id="run-r", phase="analysis", network="ethereum", intent_fields=native_transfer())
        retry = await engine.run_workflow(
            run_id="run-r",
            phase="execute",
            network="ethereum",
            intent_fields=native_transfer(),
            confirm_token=analysis.confirm_token,
            confirm_production=True,
        )
        assert retry.ok

    @pytest.mark.asyncio
    async def test_layer2_denial(self, make_engine, paper_adapter, sql_store):
        """Layer-2 has the final say; a denial broadcasts nothing."""
        engine = make_engine(enforcement=DenyingEnforcement())
        result = await engine.run_workflow(run_id="run-l2", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert _codes(result) == ["enforcement-denied"]
        assert paper_adapter.broadcasts == []
        assert await sql_store.lookup("run-l2") is None

    @pytest.mark.asyncio
    async def test_invalid_input_raises_and_is_recorded(self, make_engine):
        """Input errors propagate; an execute attempt still leaves evidence."""
        engine = make_engine()
        with pytest.raises(InputError):
            await engine.run_workflow(run_id="run-bad", phase="execute", network="sepolia", intent_fields={"type": "transfer.native"})
        assert engine.evidence.latest()["decision"] == "rejected"
        assert engine.evidence.latest()["blockers"][0]["code"] == "missing-field"


# ============================================================================
# AUTONOMOUS MODE
# ============================================================================

class TestAutonomous:

    @pytest.mark.asyncio
    async def test_external_trigger_blocked(self, make_engine, paper_adapter):
        """An external trigger is refused in autonomous mode."""
        engine = make_engine(AUTONOMOUS_POLICY)
        result = await engine.run_workflow(
            run_id="run-d", phase="execute", network="sepolia", intent_fields=native_transfer(), trigger="external",
        )
        assert AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED in _codes(result)
        blocker = next(b for b in result.blockers if b.code == AUTONOMOUS_EXTERNAL_TRIGGER_BLOCKED)
        assert "deterministic_contract_cycle" in blocker.remediation
        assert paper_adapter.broadcasts == []

    @pytest.mark.asyncio
    async def test_deterministic_trigger_with_proof(self, make_engine):
        """A deterministic trigger with a valid proof executes."""
        engine = make_engine(AUTONOMOUS_POLICY)
        result = await engine.run_workflow(
            run_id="run-d",
            phase="execute",
            network="sepolia",
            intent_fields=native_transfer(),
            trigger="deterministic_contract_cycle",
            trigger_proof=valid_proof(),
        )
        assert result.ok
        assert result.artifacts["cycleProof"]["verifiable"] is True
        assert result.artifacts["policy"]["evidence"]["markers"]["track"] == "autonomous"

    @pytest.mark.asyncio
    async def test_missing_proof(self, make_engine):
        """Without a proof the run is blocked as an integrity failure."""
        engine = make_engine(AUTONOMOUS_POLICY)
        result = await engine.run_workflow(
            run_id="run-d",
            phase="execute",
            network="sepolia",
            intent_fields=native_transfer(),
            trigger="deterministic_contract_cycle",
        )
        assert _codes(result) == ["trigger-proof-missing"]
        with pytest.raises(IntegrityError):
            result.raise_for_status()


# ============================================================================
# IDEMPOTENCY
# ============================================================================

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_replay_returns_previous_outcome(self, make_engine, paper_adapter):
        """The second execute for a run id returns the first tx hash without broadcasting."""
        engine = make_engine()
        first = await engine.run_workflow(run_id="run-e", phase="execute", network="sepolia", intent_fields=native_transfer())
        broadcasts = len(paper_adapter.broadcasts)
        second = await engine.run_workflow(run_id="run-e", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert _codes(second) == ["duplicate-run"]
        assert second.previous.tx_hash == first.artifacts["txHash"]
        assert len(paper_adapter.broadcasts) == broadcasts
        with pytest.raises(IdempotencyError) as exc:
            second.raise_for_status()
        assert exc.value.previous.tx_hash == first.artifacts["txHash"]
        assert [r.decision for r in engine.evidence.records()] == ["executed", "blocked"]

    @pytest.mark.asyncio
    async def test_concurrent_executes_same_engine(self, make_engine):
        """Concurrent executes for one run id broadcast once."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(broadcast_delay_seconds=0.05))
        engine = make_engine(adapter=adapter)
        results = await asyncio.gather(*[
            engine.run_workflow(run_id="run-c", phase="execute", network="sepolia", intent_fields=native_transfer())
            for _ in range(3)
        ])
        assert sum(1 for r in results if r.ok) == 1
        assert len(adapter.broadcasts) == 1
        assert all(_codes(r) == ["duplicate-run"] for r in results if not r.ok)

    @pytest.mark.asyncio
    async def test_concurrent_executes_separate_engines(self, make_engine):
        """Two engines sharing the durable store still broadcast once."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(broadcast_delay_seconds=0.05))
        engines = [make_engine(adapter=adapter), make_engine(adapter=adapter)]
        results = await asyncio.gather(*[
            e.run_workflow(run_id="run-c2", phase="execute", network="sepolia", intent_fields=native_transfer())
            for e in engines
        ])
        assert sum(1 for r in results if r.ok) == 1
        assert len(adapter.broadcasts) == 1


# ============================================================================
# ADAPTER FAILURES
# ============================================================================

class TestAdapterFailures:

    @pytest.mark.asyncio
    async def test_partial_failure_is_terminal(self, make_engine, sql_store):
        """A failure mid-sequence stops dispatch and burns the run id."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(fail_on_step=1))
        engine = make_engine(adapter=adapter)
        fields = {"type": "lending.supply", "market": MARKET, "amount": 5, "asset": "USDC"}
        result = await engine.run_workflow(run_id="run-f", phase="execute", network="sepolia", intent_fields=fields)
        assert result.status is RunStatus.FAILED
        assert result.exit_code == 1
        assert [s["status"] for s in result.artifacts["steps"]] == ["dispatched", "not_dispatched"]
        assert len(adapter.broadcasts) == 1
        with pytest.raises(AdapterError):
            result.raise_for_status()

        record = await sql_store.lookup("run-f")
        assert record.status == "failed"
        replay = await engine.run_workflow(run_id="run-f", phase="execute", network="sepolia", intent_fields=fields)
        assert _codes(replay) == ["duplicate-run"]
        assert len(adapter.broadcasts) == 1
        assert engine.evidence.records()[0].decision == "failed"

    @pytest.mark.asyncio
    async def test_broadcast_timeout(self, make_engine, test_settings):
        """A hung broadcast is bounded by the adapter timeout."""
        test_settings.ADAPTER_TIMEOUT_SECONDS = 0.1
        adapter = PaperLedgerAdapter(PaperLedgerConfig(broadcast_delay_seconds=1.0))
        engine = make_engine(adapter=adapter)
        result = await engine.run_workflow(run_id="run-h", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert result.status is RunStatus.FAILED
        assert "timed out" in result.blockers[0].reason
        assert adapter.broadcasts == []

    @pytest.mark.asyncio
    async def test_cancellation_during_dispatch(self, make_engine, sql_store):
        """Cancelling mid-dispatch still writes the terminal record, then cancels."""
        adapter = PaperLedgerAdapter(PaperLedgerConfig(broadcast_delay_seconds=1.0))
        engine = make_engine(adapter=adapter)
        task = asyncio.create_task(
            engine.run_workflow(run_id="run-k", phase="execute", network="sepolia", intent_fields=native_transfer())
        )
        for _ in range(100):
            if await sql_store.lookup("run-k") is not None:
                break
            await asyncio.sleep(0.01)
        # let the task reach the in-flight broadcast
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        record = await sql_store.lookup("run-k")
        assert record.status == "failed"
        assert record.result["error"]["code"] == "execute-cancelled"
        assert engine.evidence.latest()["decision"] == "failed"

    @pytest.mark.asyncio
    async def test_cancellation_before_dispatch(self, make_engine, paper_adapter, sql_store):
        """Cancelling while a gate is pending leaves evidence and no reservation."""
        enforcement = StallingEnforcement()
        engine = make_engine(enforcement=enforcement)
        task = asyncio.create_task(
            engine.run_workflow(run_id="run-p", phase="execute", network="sepolia", intent_fields=native_transfer())
        )
        await asyncio.wait_for(enforcement.entered.wait(), timeout=2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        latest = engine.evidence.latest()
        assert latest["decision"] == "blocked"
        assert latest["blockers"][0]["code"] == "execute-cancelled"
        assert await sql_store.lookup("run-p") is None
        assert paper_adapter.broadcasts == []

    @pytest.mark.asyncio
    async def test_unexpected_build_error_is_recorded(self, make_engine, sql_store):
        """A non-adapter exception while building steps becomes a failure with evidence."""
        adapter = MalformedBuildAdapter()
        engine = make_engine(adapter=adapter)
        result = await engine.run_workflow(run_id="run-m", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert result.status is RunStatus.FAILED
        assert result.exit_code == 1
        assert _codes(result) == ["execute-error"]
        assert "KeyError" in result.blockers[0].reason
        assert adapter.broadcasts == []
        assert [r.decision for r in engine.evidence.records()] == ["blocked"]
        assert await sql_store.lookup("run-m") is None

    @pytest.mark.asyncio
    async def test_store_outage_is_recorded(self, paper_adapter, sql_store, test_settings):
        """A failing idempotency store blocks the run instead of escaping."""
        engine = WorkflowEngine(paper_adapter, UnreachableStore(sql_store.sessionmaker), settings=test_settings)
        result = await engine.run_workflow(run_id="run-o", phase="execute", network="sepolia", intent_fields=native_transfer())
        assert _codes(result) == ["execute-error"]
        assert "database unreachable" in result.blockers[0].reason
        assert [r.decision for r in engine.evidence.records()] == ["blocked"]
        assert paper_adapter.broadcasts == []


# ============================================================================
# RESULT SHAPE AND WIRING
# ============================================================================

class TestResultAndWiring:

    @pytest.mark.asyncio
    async def test_to_dict(self, make_engine):
        """The serialized result exposes status, exit code and artifacts."""
        engine = make_engine()
        result = await engine.run_workflow(run_id="run-1", phase="execute", network="sepolia", intent_fields=native_transfer())
        data = result.to_dict()
        assert data["status"] == "ok"
        assert data["exitCode"] == 0
        assert data["phase"] == "execute"
        assert data["previous"] is None

    @pytest.mark.asyncio
    async def test_build_workflow_engine(self, tmp_path, test_settings):
        """Settings-driven wiring creates the database and evidence root."""
        test_settings.DATABASE_URL = f"sqlite+aiosqlite:///{tmp_path / 'wired.db'}"
        test_settings.EVIDENCE_DIR = str(tmp_path / "evidence")
        test_settings.ENFORCEMENT_URL = ""
        test_settings.POLICY_FILE = ""
        engine, db_engine = await build_workflow_engine(PaperLedgerAdapter(), settings=test_settings)
        try:
            assert isinstance(engine, WorkflowEngine)
            result = await engine.run_workflow(run_id="run-w", phase="execute", network="sepolia", intent_fields=native_transfer())
            assert result.ok
            assert (tmp_path / "evidence" / "latest.json").exists()
        finally:
            await db_engine.dispose()
