"""
Evidence Recorder

CRITICAL PRINCIPLE:
"Every execute attempt leaves exactly one record, and no record is ever rewritten."

Layout under the evidence root:
- runs/<timestamp>-<run_id>.json  one file per attempt, created exclusively
- latest.json                     pointer to the most recent record, replaced atomically

Records are immutable EvidenceRecord objects serialized as
``workflow-evidence/v1`` JSON. Without a root directory the recorder keeps
records in memory only.
"""

import json
import logging
import os
import re
from collections import deque
from datetime import timezone
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional

from .models import EvidenceRecord, StateDelta, utcnow

logger = logging.getLogger(__name__)

RECEIPT_SCHEMA = "tx-receipt-normalized/v1"
MAX_LIST_LIMIT = 100
# records kept in process for records()/latest(); the oldest are dropped first
MAX_MEMORY_RECORDS = 1000


def _non_empty(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number) if number.is_integer() else number


def _first_finite(*values: Any) -> Optional[float]:
    for value in values:
        number = _finite(value)
        if number is not None:
            return number
    return None


def normalize_tx_receipt(receipt: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten a ledger-specific receipt into ``tx-receipt-normalized/v1``. Context wins."""
    source = receipt if isinstance(receipt, dict) else {}
    context = context or {}
    return {
        "schema": RECEIPT_SCHEMA,
        "chain": _non_empty(context.get("chain")) or _non_empty(source.get("chain")),
        "runId": _non_empty(context.get("runId")) or _non_empty(source.get("runId")),
        "mode": _non_empty(context.get("mode")) or _non_empty(source.get("mode")),
        "status": _non_empty(context.get("status")) or _non_empty(source.get("status")) or "unknown",
        "txHash": _non_empty(source.get("txHash"))
        or _non_empty(source.get("transactionHash"))
        or _non_empty(source.get("hash")),
        "blockNumber": _first_finite(source.get("blockNumber"), source.get("block_height")),
        "exitCode": _first_finite(source.get("exitCode"), source.get("code")),
        "observedAt": utcnow().isoformat(),
    }


def _safe_name(run_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", run_id)[:120] or "run"


def _as_tuple(items: Optional[Iterable[Any]]) -> tuple:
    return tuple(items or ())


class EvidenceRecorder:
    """Append-only evidence store with a single latest pointer."""

    def __init__(self, root_dir: Optional[str] = None, memory_limit: int = MAX_MEMORY_RECORDS):
        self.root_dir = Path(root_dir) if root_dir else None
        self._memory: Deque[EvidenceRecord] = deque(maxlen=memory_limit)
        if self.root_dir is not None:
            self.history_dir.mkdir(parents=True, exist_ok=True)

    @property
    def history_dir(self) -> Path:
        return self.root_dir / "runs"

    @property
    def latest_path(self) -> Path:
        return self.root_dir / "latest.json"

    def record(self, run_id: str, decision: str, result: Optional[Dict[str, Any]] = None) -> EvidenceRecord:
        """
        Write the evidence record for one execute attempt.

        ``result`` may carry: intent, blockers, txHash, emittedEvents,
        stateDelta (StateDelta or dict), steps.
        """
        result = result or {}
        delta = result.get("stateDelta")
        if isinstance(delta, dict):
            previous_state = str(delta.get("previousState") or "").strip()
            next_state = str(delta.get("nextState") or "").strip()
            delta = StateDelta(previous_state, next_state) if previous_state and next_state else None
        record = EvidenceRecord(
            run_id=run_id,
            decision=decision,
            intent=result.get("intent"),
            blockers=_as_tuple(
                b.to_dict() if hasattr(b, "to_dict") else dict(b) for b in result.get("blockers") or ()
            ),
            tx_hash=result.get("txHash"),
            emitted_events=_as_tuple(result.get("emittedEvents")),
            state_delta=delta,
            steps=_as_tuple(result.get("steps")),
        )
        self._memory.append(record)
        if self.root_dir is not None:
            path = self._write_history(record)
            self._write_latest(record)
            logger.info("evidence recorded run_id=%s decision=%s path=%s", run_id, decision, path)
        else:
            logger.info("evidence recorded in memory run_id=%s decision=%s", run_id, decision)
        return record

    def records(self) -> List[EvidenceRecord]:
        """Most recent records written by this recorder instance, oldest first."""
        return list(self._memory)

    def _write_history(self, record: EvidenceRecord) -> Path:
        stamp = record.recorded_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        base = f"{stamp}-{_safe_name(record.run_id)}"
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True, default=str)
        suffix = 0
        while True:
            name = f"{base}.json" if suffix == 0 else f"{base}-{suffix}.json"
            path = self.history_dir / name
            try:
                # "x": never overwrite an existing record
                with open(path, "x", encoding="utf-8") as fh:
                    fh.write(payload)
                return path
            except FileExistsError:
                suffix += 1

    def _write_latest(self, record: EvidenceRecord) -> None:
        tmp = self.root_dir / f".latest.{os.getpid()}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(record.to_dict(), fh, indent=2, sort_keys=True, default=str)
        os.replace(tmp, self.latest_path)

    def latest(self) -> Optional[Dict[str, Any]]:
        if self.root_dir is None:
            return self._memory[-1].to_dict() if self._memory else None
        return self._read_json(self.latest_path)

    def list_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """History rows newest first; falls back to latest.json when history is empty."""
        if not isinstance(limit, int) or limit <= 0:
            raise ValueError("limit must be a positive integer")
        limit = min(MAX_LIST_LIMIT, limit)

        if self.root_dir is None:
            return [_row(r.to_dict(), None) for r in reversed(list(self._memory)[-limit:])]

        rows: List[Dict[str, Any]] = []
        files = sorted(
            (p for p in self.history_dir.glob("*.json") if p.is_file()),
            key=lambda p: p.name,
            reverse=True,
        )
        for path in files:
            if len(rows) >= limit:
                break
            data = self._read_json(path)
            if data is not None:
                rows.append(_row(data, str(path)))
        if not rows:
            latest = self._read_json(self.latest_path)
            if latest is not None:
                rows.append(_row(latest, str(self.latest_path)))
        return rows

    @staticmethod
    def _read_json(path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("unreadable evidence file %s: %s", path, exc)
            return None
        return data if isinstance(data, dict) else None


def _row(data: Dict[str, Any], source_path: Optional[str]) -> Dict[str, Any]:
    blockers = data.get("blockers") if isinstance(data.get("blockers"), list) else []
    return {
        "runId": str(data.get("runId") or "unknown"),
        "decision": str(data.get("decision") or "unknown"),
        "txHash": data.get("txHash"),
        "recordedAt": data.get("recordedAt"),
        "blockers": blockers,
        "blockerCount": len(blockers),
        "sourcePath": source_path,
    }
