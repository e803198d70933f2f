"""
Ledger Adapters - Capability Contract

SCOPE:
- The workflow core talks to ledgers ONLY through LedgerAdapter
- Adapters own every ledger-specific encoding (calls, SDKs, signing hand-off)
- The core never builds a ledger payload itself

PaperLedgerAdapter:
- Deterministic in-memory ledger for development and tests
- Same steps + same broadcast order -> same hashes
- Optional injected failures and delays to exercise timeout/failure paths
- Records every broadcast so duplicate dispatches are observable
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from logging import getLogger
from typing import Any, Dict, List, Optional

from .errors import AdapterError
from .models import Intent, StateDelta, canonical_json

logger = getLogger(__name__)

# intent types whose first step is a spend approval
_APPROVAL_TYPES = (
    "lending.supply",
    "lending.repay",
    "liquidity.add",
    "bridge.transfer",
)


@dataclass(frozen=True)
class Step:
    """One ledger submission. Steps of a run are dispatched strictly in order."""
    index: int
    kind: str
    payload: Dict[str, Any]
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "kind": self.kind,
            "payload": dict(self.payload),
            "description": self.description,
        }


@dataclass
class SimulationResult:
    ok: bool
    steps: List[Step] = field(default_factory=list)
    estimated_fee: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "steps": [s.to_dict() for s in self.steps],
            "estimatedFee": self.estimated_fee,
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class BroadcastResult:
    tx_hash: str
    emitted_events: tuple = ()
    state_delta: Optional[StateDelta] = None
    receipt: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "emittedEvents": list(self.emitted_events),
            "stateDelta": self.state_delta.to_dict() if self.state_delta else None,
            "receipt": dict(self.receipt) if self.receipt else None,
        }


@dataclass(frozen=True)
class StateQuery:
    """Read-only query issued during analysis."""
    name: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        args = ",".join(f"{k}={v}" for k, v in sorted(self.params.items()))
        return f"{self.name}({args})"


class LedgerAdapter(ABC):
    """Capability interface every per-ledger adapter implements."""

    ledger: str = "unknown"

    @abstractmethod
    async def build_steps(self, intent: Intent) -> List[Step]:
        pass

    @abstractmethod
    async def simulate(self, intent: Intent) -> SimulationResult:
        pass

    @abstractmethod
    async def broadcast(self, step: Step) -> BroadcastResult:
        """Submit one step. Must raise AdapterError (or time out) on failure."""

    @abstractmethod
    async def read_state(self, query: StateQuery) -> Any:
        pass

    def analysis_queries(self, intent: Intent) -> List[StateQuery]:
        """Independent read-only queries worth running during analysis."""
        return []


@dataclass
class PaperLedgerConfig:
    """Knobs for the paper ledger."""

    ledger: str = "evm"
    # balances returned by read_state("balance")
    balances: Dict[str, float] = field(default_factory=dict)
    broadcast_delay_seconds: float = 0.0
    read_delay_seconds: float = 0.0
    # 0-based step index whose broadcast raises AdapterError
    fail_on_step: Optional[int] = None
    fail_simulation: bool = False
    # query names whose reads raise AdapterError
    failing_reads: List[str] = field(default_factory=list)
    fee_per_step: float = 0.0001

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaperLedgerAdapter(LedgerAdapter):
    """Deterministic, in-memory ledger. Nothing leaves the process."""

    def __init__(self, config: Optional[PaperLedgerConfig] = None):
        self.config = config or PaperLedgerConfig()
        self.ledger = self.config.ledger
        self.broadcasts: List[Step] = []
        self.reads: List[StateQuery] = []
        self._sequence = 0
        self._lock = asyncio.Lock()

    async def build_steps(self, intent: Intent) -> List[Step]:
        fields = dict(intent.fields)
        kinds = ["approve", intent.type] if intent.type in _APPROVAL_TYPES else [intent.type]
        steps = []
        for index, kind in enumerate(kinds):
            payload = {"network": intent.network, "intentHash": intent.intent_hash()}
            if kind == "approve":
                payload["spender"] = fields.get("market") or fields.get("pool") or fields.get("to")
                payload["asset"] = fields.get("asset")
                payload["amount"] = fields.get("amount") or fields.get("amountA")
            else:
                payload["fields"] = fields
            steps.append(Step(index=index, kind=kind, payload=payload, description=f"{kind} on {intent.network}"))
        return steps

    async def simulate(self, intent: Intent) -> SimulationResult:
        steps = await self.build_steps(intent)
        if self.config.fail_simulation:
            raise AdapterError("simulation-failed", f"paper simulation failed for {intent.type}")
        return SimulationResult(
            ok=True,
            steps=steps,
            estimated_fee=round(self.config.fee_per_step * len(steps), 8),
            details={"ledger": self.ledger, "stepCount": len(steps)},
        )

    async def broadcast(self, step: Step) -> BroadcastResult:
        # one broadcast at a time, like a single account sequence counter
        async with self._lock:
            if self.config.broadcast_delay_seconds:
                await asyncio.sleep(self.config.broadcast_delay_seconds)
            if self.config.fail_on_step is not None and step.index == self.config.fail_on_step:
                raise AdapterError("broadcast-failed", f"paper broadcast rejected step {step.index} ({step.kind})")
            sequence = self._sequence
            self._sequence += 1
            self.broadcasts.append(step)

        digest = hashlib.sha256(
            canonical_json({"sequence": sequence, "step": step.to_dict()}).encode("utf-8")
        ).hexdigest()
        tx_hash = "0x" + digest
        logger.info("paper broadcast step=%d kind=%s tx=%s", step.index, step.kind, tx_hash)
        return BroadcastResult(
            tx_hash=tx_hash,
            emitted_events=(f"{step.kind}:submitted",),
            state_delta=StateDelta(previous_state=f"seq-{sequence}", next_state=f"seq-{sequence + 1}"),
            receipt={"txHash": tx_hash, "status": "success", "blockNumber": 1000 + sequence},
        )

    async def read_state(self, query: StateQuery) -> Any:
        self.reads.append(query)
        if self.config.read_delay_seconds:
            await asyncio.sleep(self.config.read_delay_seconds)
        if query.name in self.config.failing_reads:
            raise AdapterError("read-failed", f"paper read {query.label} failed")
        if query.name == "balance":
            return self.config.balances.get(str(query.params.get("address")), 0.0)
        return None

    def analysis_queries(self, intent: Intent) -> List[StateQuery]:
        queries = []
        for key in ("to", "market", "pool"):
            address = intent.get(key)
            if address:
                queries.append(StateQuery("balance", {"address": address}))
        asset = intent.get("asset") or intent.get("tokenAddress")
        if asset:
            queries.append(StateQuery("asset_info", {"asset": asset}))
        return queries
