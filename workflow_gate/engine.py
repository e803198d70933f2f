"""
Workflow Engine

CRITICAL PRINCIPLE:
"Nothing is broadcast unless every gate said yes, and every execute attempt leaves evidence."

Phases:
- analysis: normalize the intent, open/resume the session, run read-only
  queries concurrently, issue a confirm token on guarded networks
- simulate: adapter dry-run; failures degrade to warnings
- execute: under the per-run lock:
    1. idempotency lookup (a used run id is refused with its prior outcome)
    2. confirm-token verification
    3. policy guards (+ cycle trigger proof in autonomous mode)
    4. Layer-2 enforcement
    5. reserve the run id durably (daily limit re-checked under an engine-wide lock)
    6. broadcast steps strictly in order, each with a bounded timeout, no retry
    7. write the terminal idempotency record, evidence, mark session terminal

Only InputError propagates out of run_workflow. Every other failure, including
an unexpected exception from any gate, is a structured blocker on the returned
WorkflowResult with its evidence record written; call
``raise_for_status()`` to turn it into the matching exception.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from . import metrics
from .adapters import LedgerAdapter, StateQuery, Step
from .config import Settings, get_settings
from .confirm_token import ConfirmTokenAuthority
from .cycle_trigger import verify_cycle_trigger
from .enforcement import AllowAllEnforcement, EnforcementBackend, HttpEnforcementBackend
from .errors import (
    CATEGORY_PRECEDENCE,
    AdapterError,
    IdempotencyError,
    InputError,
    WorkflowError,
    error_for_category,
)
from .evidence import EvidenceRecorder, normalize_tx_receipt
from .idempotency import FAILED, SUCCEEDED, IdempotencyStore, Reservation, SqlIdempotencyStore
from .intent_normalizer import normalize_intent, parse_intent_text, resolve_run_mode
from .models import (
    IdempotencyRecord,
    Intent,
    PolicyBlocker,
    RunStatus,
    WorkflowPhase,
    utcnow,
)
from .policy import SPEND_CAP_EXCEEDED, PolicyEngine, PolicyRequest, is_guarded_network
from .policy_store import PolicyStore, load_policy_config
from .session_store import InMemorySessionStore, SessionStore, new_run_id

logger = logging.getLogger(__name__)

# failures that are transient rather than a verdict on the request
_FAILURE_CATEGORIES = ("adapter", "unexpected")


@dataclass
class WorkflowResult:
    """Outcome of one run_workflow call."""
    run_id: str
    phase: WorkflowPhase
    status: RunStatus
    confirm_token: Optional[str] = None
    artifacts: Dict[str, Any] = field(default_factory=dict)
    blockers: List[PolicyBlocker] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    previous: Optional[IdempotencyRecord] = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.OK

    @property
    def exit_code(self) -> int:
        """0 success, 2 blocked or missing prerequisite, 1 transient/unexpected failure."""
        if self.status is RunStatus.OK:
            return 0
        if self.status is RunStatus.BLOCKED:
            return 2
        return 1

    def primary_blocker(self) -> Optional[PolicyBlocker]:
        for category in CATEGORY_PRECEDENCE:
            for blocker in self.blockers:
                if blocker.category == category:
                    return blocker
        return self.blockers[0] if self.blockers else None

    def raise_for_status(self) -> "WorkflowResult":
        if self.ok:
            return self
        blocker = self.primary_blocker()
        if blocker is None:
            raise WorkflowError("unexpected", f"run {self.run_id} ended with status {self.status.value}")
        error_cls = error_for_category(blocker.category)
        if error_cls is IdempotencyError:
            raise IdempotencyError(blocker.code, blocker.reason, blocker.remediation, previous=self.previous)
        raise error_cls(blocker.code, blocker.reason, blocker.remediation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "exitCode": self.exit_code,
            "confirmToken": self.confirm_token,
            "artifacts": dict(self.artifacts),
            "blockers": [b.to_dict() for b in self.blockers],
            "warnings": list(self.warnings),
            "previous": self.previous.to_dict() if self.previous else None,
        }


def _status_for(blockers: List[PolicyBlocker]) -> RunStatus:
    if not blockers:
        return RunStatus.OK
    if all(b.category in _FAILURE_CATEGORIES for b in blockers):
        return RunStatus.FAILED
    return RunStatus.BLOCKED


class WorkflowEngine:
    """
    One generic engine, parameterized by a LedgerAdapter.

    All stores are injected; nothing lives in module globals.
    """

    def __init__(
        self,
        adapter: LedgerAdapter,
        idempotency: IdempotencyStore,
        sessions: Optional[SessionStore] = None,
        tokens: Optional[ConfirmTokenAuthority] = None,
        policy: Optional[PolicyEngine] = None,
        evidence: Optional[EvidenceRecorder] = None,
        enforcement: Optional[EnforcementBackend] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        cfg = settings or get_settings()
        self.adapter = adapter
        self.idempotency = idempotency
        self.sessions = sessions or InMemorySessionStore(ttl_seconds=cfg.SESSION_TTL_SECONDS)
        self.tokens = tokens or ConfirmTokenAuthority(ttl_seconds=cfg.CONFIRM_TOKEN_TTL_SECONDS, clock=clock)
        self.policy = policy or PolicyEngine()
        self.evidence = evidence or EvidenceRecorder()
        self.enforcement = enforcement or AllowAllEnforcement()
        self.adapter_timeout = cfg.ADAPTER_TIMEOUT_SECONDS
        self.read_attempts = max(1, cfg.ANALYSIS_READ_ATTEMPTS)
        self.read_backoff = cfg.ANALYSIS_READ_BACKOFF_SECONDS
        self.clock = clock
        # guards the daily-limit re-check plus reservation
        self._spend_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    async def run_workflow(
        self,
        run_id: Optional[str] = None,
        phase: Optional[str] = None,
        network: Optional[str] = None,
        intent_fields: Optional[Dict[str, Any]] = None,
        intent_text: Optional[str] = None,
        confirm_token: Optional[str] = None,
        confirm_production: Optional[bool] = None,
        trigger: Optional[str] = None,
        trigger_proof: Any = None,
    ) -> WorkflowResult:
        """
        Run one phase of the workflow for ``run_id``.

        Raises:
            InputError: the intent is malformed or incomplete
        """
        resolved = resolve_run_mode(phase, intent_text)
        run_id = (run_id or "").strip() or new_run_id()
        hints = parse_intent_text(intent_text, network) if intent_text else {}
        if not confirm_token and hints.get("confirmToken"):
            confirm_token = hints["confirmToken"]

        try:
            intent = normalize_intent(network, intent_fields, intent_text)
        except InputError as exc:
            logger.warning("workflow input rejected run_id=%s phase=%s code=%s", run_id, resolved.value, exc.code)
            metrics.workflow_runs_total.labels(resolved.value, "rejected").inc()
            if resolved is WorkflowPhase.EXECUTE:
                self.evidence.record(
                    run_id,
                    "rejected",
                    {"intent": None, "blockers": [PolicyBlocker.from_error(exc)]},
                )
            raise

        if resolved is WorkflowPhase.ANALYSIS:
            result = await self._analysis(run_id, intent, hints)
        elif resolved is WorkflowPhase.SIMULATE:
            result = await self._simulate(run_id, intent)
        else:
            async with self.sessions.lock(run_id):
                result = await self._execute(
                    run_id,
                    intent,
                    confirm_token=confirm_token,
                    confirm_production=confirm_production is True,
                    trigger=trigger,
                    trigger_proof=trigger_proof,
                )

        metrics.workflow_runs_total.labels(resolved.value, result.status.value).inc()
        for blocker in result.blockers:
            metrics.policy_blockers_total.labels(blocker.code).inc()
        return result

    # ------------------------------------------------------------------
    # analysis
    # ------------------------------------------------------------------

    async def _analysis(self, run_id: str, intent: Intent, hints: Dict[str, Any]) -> WorkflowResult:
        result = WorkflowResult(run_id=run_id, phase=WorkflowPhase.ANALYSIS, status=RunStatus.OK)
        try:
            await self.sessions.begin_or_resume(run_id, intent.network, intent)
            await self.sessions.advance(run_id, WorkflowPhase.ANALYSIS, intent)
        except InputError:
            raise
        except WorkflowError as exc:
            result.blockers.append(PolicyBlocker.from_error(exc))
            result.status = _status_for(result.blockers)
            return result

        reads, warnings = await self._run_analysis_queries(intent)
        guarded = is_guarded_network(intent.network, self.policy.config)
        result.warnings.extend(warnings)
        result.artifacts.update(
            {
                "intent": intent.to_dict(),
                "intentHash": intent.intent_hash(),
                "guarded": guarded,
                "requiresConfirmProduction": guarded,
                "reads": reads,
                "policyVersion": self.policy.config.version,
            }
        )
        if hints.get("confirmProduction"):
            # free text never authorizes; the flag must be passed explicitly
            result.warnings.append("production confirmation phrase found in text; pass confirm_production=True at execute")
        if guarded:
            result.confirm_token = self.tokens.issue(run_id, intent.network, intent)
            await self.sessions.update(run_id, confirm_token=result.confirm_token)
        logger.info("workflow analysis run_id=%s network=%s guarded=%s", run_id, intent.network, guarded)
        return result

    async def _read_with_retry(self, query: StateQuery) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.read_attempts),
            wait=wait_fixed(self.read_backoff),
            retry=retry_if_exception_type((AdapterError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                started = time.monotonic()
                try:
                    return await asyncio.wait_for(self.adapter.read_state(query), timeout=self.adapter_timeout)
                finally:
                    metrics.adapter_call_seconds.labels("read_state").observe(time.monotonic() - started)

    async def _run_analysis_queries(self, intent: Intent):
        queries = self.adapter.analysis_queries(intent)
        if not queries:
            return [], []
        outcomes = await asyncio.gather(
            *(self._read_with_retry(q) for q in queries), return_exceptions=True
        )
        reads, warnings = [], []
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                reason = str(outcome) or type(outcome).__name__
                logger.warning("analysis read %s failed: %s", query.label, reason)
                warnings.append(f"read {query.label} failed: {reason}")
                reads.append({"query": query.label, "ok": False, "error": reason})
            else:
                reads.append({"query": query.label, "ok": True, "value": outcome})
        return reads, warnings

    # ------------------------------------------------------------------
    # simulate
    # ------------------------------------------------------------------

    async def _simulate(self, run_id: str, intent: Intent) -> WorkflowResult:
        result = WorkflowResult(run_id=run_id, phase=WorkflowPhase.SIMULATE, status=RunStatus.OK)
        try:
            session = await self.sessions.begin_or_resume(run_id, intent.network, intent)
            await self.sessions.advance(run_id, WorkflowPhase.SIMULATE, intent)
        except InputError:
            raise
        except WorkflowError as exc:
            result.blockers.append(PolicyBlocker.from_error(exc))
            result.status = _status_for(result.blockers)
            return result
        result.confirm_token = session.confirm_token

        started = time.monotonic()
        try:
            simulation = await asyncio.wait_for(self.adapter.simulate(intent), timeout=self.adapter_timeout)
            sim = simulation.to_dict()
            result.warnings.extend(simulation.warnings)
        except asyncio.TimeoutError:
            sim = {"ok": False, "error": f"simulation timed out after {self.adapter_timeout}s"}
            result.warnings.append(sim["error"])
        except AdapterError as exc:
            sim = {"ok": False, "error": exc.message, "code": exc.code}
            result.warnings.append(f"simulation failed: {exc.message}")
        finally:
            metrics.adapter_call_seconds.labels("simulate").observe(time.monotonic() - started)
        if not sim.get("ok"):
            logger.warning("workflow simulation degraded run_id=%s: %s", run_id, sim.get("error"))

        await self.sessions.update(run_id, simulation=sim)
        result.artifacts.update({"intent": intent.to_dict(), "simulation": sim})
        return result

    # ------------------------------------------------------------------
    # execute
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run_id: str,
        intent: Intent,
        confirm_token: Optional[str],
        confirm_production: bool,
        trigger: Optional[str],
        trigger_proof: Any,
    ) -> WorkflowResult:
        result = WorkflowResult(run_id=run_id, phase=WorkflowPhase.EXECUTE, status=RunStatus.OK)
        result.artifacts["intent"] = intent.to_dict()
        try:
            steps = await self._authorize(result, intent, confirm_token, confirm_production, trigger, trigger_proof)
        except asyncio.CancelledError:
            result.blockers.append(
                PolicyBlocker(
                    code="execute-cancelled",
                    reason="execute cancelled before any step was dispatched",
                    remediation="Retry the execute; nothing was broadcast.",
                    category="unexpected",
                )
            )
            self._finish_blocked(result, intent)
            raise
        except InputError:
            raise
        except WorkflowError as exc:
            result.blockers.append(PolicyBlocker.from_error(exc))
            return self._finish_blocked(result, intent)
        except Exception as exc:
            logger.exception("execute gate raised run_id=%s", run_id)
            result.blockers.append(
                PolicyBlocker(
                    code="execute-error",
                    reason=f"unexpected error before dispatch: {type(exc).__name__}: {exc}",
                    remediation="Inspect the logs; nothing was broadcast, the run id can be retried.",
                    category="unexpected",
                )
            )
            return self._finish_blocked(result, intent)
        if steps is None:
            return self._finish_blocked(result, intent)
        return await self._dispatch(result, intent, steps)

    async def _authorize(
        self,
        result: WorkflowResult,
        intent: Intent,
        confirm_token: Optional[str],
        confirm_production: bool,
        trigger: Optional[str],
        trigger_proof: Any,
    ) -> Optional[List[Step]]:
        """
        Run every pre-dispatch gate and reserve the run id.

        Returns the steps to broadcast, or None with blockers on ``result``.
        """
        run_id = result.run_id
        previous = await self.idempotency.lookup(run_id)
        if previous is not None:
            metrics.idempotency_conflicts_total.inc()
            logger.warning("execute refused for used run_id=%s status=%s", run_id, previous.status)
            result.previous = previous
            result.blockers.append(self._duplicate_blocker(run_id, previous))
            return None

        try:
            await self.sessions.begin_or_resume(run_id, intent.network, intent)
            await self.sessions.advance(run_id, WorkflowPhase.EXECUTE, intent)
        except WorkflowError as exc:
            result.blockers.append(PolicyBlocker.from_error(exc))

        config = self.policy.config
        guarded = is_guarded_network(intent.network, config)
        if guarded or confirm_token:
            verification = self.tokens.verify(confirm_token, run_id, intent.network, intent)
            result.artifacts["confirmToken"] = verification.to_dict()
            if not verification.ok:
                result.blockers.append(
                    PolicyBlocker(
                        code=f"confirm-token-{verification.reason}",
                        reason=verification.detail or f"confirm token {verification.reason}",
                        remediation="Re-run phase=analysis to obtain a fresh confirm token for this exact intent.",
                        category="confirmation",
                    )
                )

        amount_usd = intent.get("amountUsd")
        spent_today = 0.0
        if config.daily_limit_usd is not None:
            spent_today = await self.idempotency.spent_since(self._day_start())
        decision = self.policy.evaluate(
            PolicyRequest(
                run_id=run_id,
                network=intent.network,
                intent=intent,
                confirm_production=confirm_production,
                amount_usd=amount_usd,
                spent_today_usd=spent_today,
                trigger=trigger,
            )
        )
        result.blockers.extend(decision.blockers)
        result.artifacts["policy"] = decision.to_dict()

        if config.autonomous_mode:
            cycle = verify_cycle_trigger(trigger_proof, intent.network, required_cycle_id=config.cycle_id or None)
            result.blockers.extend(cycle.blockers)
            result.artifacts["cycleProof"] = cycle.to_dict()

        if result.blockers:
            return None

        verdict = await self.enforcement.authorize(run_id, intent.network, intent, decision)
        result.artifacts["enforcement"] = verdict.to_dict()
        if not verdict.allowed:
            result.blockers.extend(verdict.blockers)
            if not result.blockers:
                result.blockers.append(
                    PolicyBlocker(
                        code="enforcement-denied",
                        reason="Layer-2 enforcement did not authorize this run",
                        remediation="Review the enforcement backend decision for this run.",
                    )
                )
            return None

        try:
            steps = await asyncio.wait_for(self.adapter.build_steps(intent), timeout=self.adapter_timeout)
        except (AdapterError, asyncio.TimeoutError) as exc:
            result.blockers.append(self._adapter_blocker(exc, "build-steps-failed", "building steps"))
            return None

        reservation = await self._reserve(result, amount_usd, config.daily_limit_usd)
        if reservation is None:
            return None
        if not reservation.ok:
            # another process won the durable reservation
            metrics.idempotency_conflicts_total.inc()
            result.previous = reservation.previous
            result.blockers.append(self._duplicate_blocker(run_id, reservation.previous))
            return None
        return steps

    def _day_start(self) -> datetime:
        return self.clock().replace(hour=0, minute=0, second=0, microsecond=0)

    async def _reserve(
        self, result: WorkflowResult, amount_usd: Optional[float], daily_limit_usd: Optional[float]
    ) -> Optional[Reservation]:
        """
        Reserve the run id. With a daily limit, today's spend is re-read and
        the reservation made under one engine-wide lock, so concurrent runs
        cannot all pass on the same stale total.
        """
        if daily_limit_usd is None:
            return await self.idempotency.reserve(result.run_id, amount_usd)
        async with self._spend_lock:
            spent = await self.idempotency.spent_since(self._day_start())
            if amount_usd is not None and spent + amount_usd > daily_limit_usd:
                logger.warning(
                    "daily limit reached before reservation run_id=%s spent=%.2f amount=%.2f limit=%.2f",
                    result.run_id, spent, amount_usd, daily_limit_usd,
                )
                result.blockers.append(
                    PolicyBlocker(
                        code=SPEND_CAP_EXCEEDED,
                        reason=(
                            f"requested {amount_usd:g} USD plus {spent:g} USD spent today "
                            f"exceeds daily limit {daily_limit_usd:g} USD"
                        ),
                        remediation="Lower amountUsd or split the operation across runs within the caps.",
                    )
                )
                return None
            return await self.idempotency.reserve(result.run_id, amount_usd)

    async def _dispatch(self, result: WorkflowResult, intent: Intent, steps: List[Step]) -> WorkflowResult:
        dispatched: List[Dict[str, Any]] = []
        failure: Optional[PolicyBlocker] = None
        try:
            for step in steps:
                started = time.monotonic()
                try:
                    outcome = await asyncio.wait_for(self.adapter.broadcast(step), timeout=self.adapter_timeout)
                except (AdapterError, asyncio.TimeoutError) as exc:
                    failure = self._adapter_blocker(exc, "broadcast-failed", f"broadcasting step {step.index} ({step.kind})")
                except Exception as exc:
                    logger.exception("adapter raised during broadcast run_id=%s step=%d", result.run_id, step.index)
                    failure = PolicyBlocker(
                        code="broadcast-error",
                        reason=f"unexpected adapter error at step {step.index}: {exc}",
                        remediation="Inspect the adapter; reconcile on-chain state before minting a new runId.",
                        category="unexpected",
                    )
                finally:
                    metrics.adapter_call_seconds.labels("broadcast").observe(time.monotonic() - started)
                if failure is not None:
                    metrics.broadcasts_total.labels("failure").inc()
                    break
                metrics.broadcasts_total.labels("success").inc()
                dispatched.append({"step": step, "outcome": outcome})
        except asyncio.CancelledError:
            # a sent broadcast cannot be recalled; record what happened, then cancel
            failure = PolicyBlocker(
                code="execute-cancelled",
                reason=f"execute cancelled after {len(dispatched)} of {len(steps)} steps were dispatched",
                remediation="Reconcile on-chain state before minting a new runId.",
                category="unexpected",
            )
            await self._finish_dispatch(result, intent, steps, dispatched, failure)
            raise
        return await self._finish_dispatch(result, intent, steps, dispatched, failure)

    async def _finish_dispatch(
        self,
        result: WorkflowResult,
        intent: Intent,
        steps: List[Step],
        dispatched: List[Dict[str, Any]],
        failure: Optional[PolicyBlocker],
    ) -> WorkflowResult:
        run_id = result.run_id
        tx_hashes = [d["outcome"].tx_hash for d in dispatched]
        tx_hash = tx_hashes[-1] if tx_hashes else None
        events: List[str] = []
        for d in dispatched:
            events.extend(d["outcome"].emitted_events)
        state_delta = dispatched[-1]["outcome"].state_delta if dispatched else None
        step_rows = []
        for index, step in enumerate(steps):
            row = step.to_dict()
            if index < len(dispatched):
                row["txHash"] = tx_hashes[index]
                row["receipt"] = normalize_tx_receipt(
                    dispatched[index]["outcome"].receipt,
                    {"chain": intent.network, "runId": run_id, "mode": "execute"},
                )
                row["status"] = "dispatched"
            else:
                row["status"] = "not_dispatched"
            step_rows.append(row)

        status = SUCCEEDED if failure is None else FAILED
        record_result = {
            "txHash": tx_hash,
            "txHashes": tx_hashes,
            "dispatchedSteps": len(dispatched),
            "totalSteps": len(steps),
            "error": failure.to_dict() if failure else None,
        }
        try:
            await self.idempotency.complete(run_id, status, record_result)
        except Exception:
            # the reservation row still blocks replays of this run id
            logger.exception("failed to write terminal idempotency record run_id=%s", run_id)
            result.warnings.append("terminal idempotency record not written; the reservation still blocks replays")

        if failure is not None:
            result.blockers.append(failure)
        result.status = _status_for(result.blockers)
        result.artifacts.update(
            {
                "txHash": tx_hash,
                "txHashes": tx_hashes,
                "emittedEvents": events,
                "stateDelta": state_delta.to_dict() if state_delta else None,
                "steps": step_rows,
            }
        )
        self.evidence.record(
            run_id,
            "executed" if failure is None else "failed",
            {
                "intent": intent.to_dict(),
                "blockers": result.blockers,
                "txHash": tx_hash,
                "emittedEvents": events,
                "stateDelta": state_delta,
                "steps": step_rows,
            },
        )
        await self.sessions.mark_terminal(run_id)
        if failure is None:
            logger.info("workflow executed run_id=%s steps=%d tx=%s", run_id, len(dispatched), tx_hash)
        else:
            logger.warning(
                "workflow execute failed run_id=%s dispatched=%d/%d code=%s",
                run_id, len(dispatched), len(steps), failure.code,
            )
        return result

    def _finish_blocked(self, result: WorkflowResult, intent: Intent) -> WorkflowResult:
        result.status = _status_for(result.blockers)
        self.evidence.record(
            result.run_id,
            "blocked",
            {"intent": intent.to_dict(), "blockers": result.blockers},
        )
        logger.warning(
            "workflow execute blocked run_id=%s codes=%s",
            result.run_id, [b.code for b in result.blockers],
        )
        return result

    @staticmethod
    def _duplicate_blocker(run_id: str, previous: Optional[IdempotencyRecord]) -> PolicyBlocker:
        status = previous.status if previous else "unknown"
        return PolicyBlocker(
            code="duplicate-run",
            reason=f"run {run_id} was already executed (status {status}); the prior outcome is attached",
            remediation="Mint a new runId to retry intentionally.",
            category="idempotency",
        )

    def _adapter_blocker(self, exc: BaseException, code: str, action: str) -> PolicyBlocker:
        if isinstance(exc, AdapterError):
            reason = f"{action} failed: {exc.message}"
            code = exc.code or code
        else:
            reason = f"{action} timed out after {self.adapter_timeout}s"
        return PolicyBlocker(
            code=code,
            reason=reason,
            remediation="Check ledger connectivity; reconcile state, then retry with a new runId.",
            category="adapter",
        )


async def build_workflow_engine(
    adapter: LedgerAdapter,
    settings: Optional[Settings] = None,
    **overrides,
):
    """
    Wire an engine from settings: SQL idempotency store, policy from
    POLICY_FILE or env, evidence under EVIDENCE_DIR, Layer-2 backend from
    ENFORCEMENT_URL. Returns ``(engine, db_engine)``; dispose the latter on shutdown.
    """
    cfg = settings or get_settings()
    idempotency, db_engine = await SqlIdempotencyStore.create(cfg.DATABASE_URL)
    if cfg.ENFORCEMENT_URL:
        enforcement = HttpEnforcementBackend(
            cfg.ENFORCEMENT_URL,
            timeout=cfg.ENFORCEMENT_TIMEOUT_SECONDS,
            token=cfg.ENFORCEMENT_TOKEN or None,
        )
    else:
        logger.warning("ENFORCEMENT_URL not set; using the development allow-all Layer-2 backend")
        enforcement = AllowAllEnforcement()
    components = {
        "idempotency": idempotency,
        "policy": PolicyEngine(PolicyStore(load_policy_config(cfg.POLICY_FILE or None))),
        "evidence": EvidenceRecorder(cfg.EVIDENCE_DIR),
        "enforcement": enforcement,
        "settings": cfg,
    }
    components.update(overrides)
    return WorkflowEngine(adapter, **components), db_engine
