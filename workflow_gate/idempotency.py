"""
Idempotency Guard.

A run id may be broadcast at most once. Any existing record for the run id
(in progress, succeeded or failed) is a conflict and is handed back verbatim;
the store never tells "retry after failure" apart from "retry after success".
A deliberate retry needs a new run id.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy import func
from sqlalchemy.future import select

from .errors import IdempotencyError
from .models import IdempotencyRecord
from .storage import (
    IdempotencyEntry,
    as_utc,
    create_engine_and_sessionmaker,
    init_models,
    utc_naive,
)

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
SUCCEEDED = "succeeded"
FAILED = "failed"
TERMINAL_STATUSES = (SUCCEEDED, FAILED)


@dataclass(frozen=True)
class Reservation:
    ok: bool
    previous: Optional[IdempotencyRecord] = None


class IdempotencyStore(ABC):
    """Durable per-run outcome ledger."""

    @abstractmethod
    async def reserve(self, run_id: str, amount_usd: Optional[float] = None) -> Reservation:
        """Claim ``run_id`` before the first broadcast, or return the prior record."""

    @abstractmethod
    async def complete(self, run_id: str, status: str, result: Dict[str, Any]) -> IdempotencyRecord:
        """Write the terminal record for a reserved run id."""

    @abstractmethod
    async def lookup(self, run_id: str) -> Optional[IdempotencyRecord]:
        """Latest record for ``run_id``: terminal if written, else the reservation."""

    @abstractmethod
    async def spent_since(self, since: datetime) -> float:
        """USD reserved by runs started at or after ``since``."""


def _to_record(entry: IdempotencyEntry, reservation: Optional[IdempotencyEntry] = None) -> IdempotencyRecord:
    amount = entry.amount_usd
    if amount is None and reservation is not None:
        amount = reservation.amount_usd
    return IdempotencyRecord(
        run_id=entry.run_id,
        status=entry.status,
        result=dict(entry.result or {}),
        timestamp=as_utc(entry.created_at),
        amount_usd=amount,
    )


class SqlIdempotencyStore(IdempotencyStore):
    """SQLAlchemy async implementation over the ``idempotency_entries`` table."""

    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker

    @classmethod
    async def create(cls, dsn: Optional[str] = None):
        """Build an engine, create tables and return ``(store, engine)``."""
        engine, sessionmaker = await create_engine_and_sessionmaker(dsn)
        await init_models(engine)
        return cls(sessionmaker), engine

    async def reserve(self, run_id: str, amount_usd: Optional[float] = None) -> Reservation:
        existing = await self.lookup(run_id)
        if existing is not None:
            logger.warning("idempotency conflict run_id=%s status=%s", run_id, existing.status)
            return Reservation(ok=False, previous=existing)

        async with self.sessionmaker() as session:
            session.add(
                IdempotencyEntry(
                    run_id=run_id,
                    kind="reservation",
                    status=IN_PROGRESS,
                    result={},
                    amount_usd=amount_usd,
                    created_at=utc_naive(),
                )
            )
            try:
                await session.commit()
            except sa_exc.IntegrityError:
                await session.rollback()
                previous = await self.lookup(run_id)
                logger.warning("idempotency reservation lost race run_id=%s", run_id)
                return Reservation(ok=False, previous=previous)
        logger.info("idempotency reserved run_id=%s", run_id)
        return Reservation(ok=True)

    async def complete(self, run_id: str, status: str, result: Dict[str, Any]) -> IdempotencyRecord:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"terminal status must be one of {TERMINAL_STATUSES}, got '{status}'")
        async with self.sessionmaker() as session:
            entry = IdempotencyEntry(
                run_id=run_id,
                kind="terminal",
                status=status,
                result=dict(result or {}),
                created_at=utc_naive(),
            )
            session.add(entry)
            try:
                await session.commit()
            except sa_exc.IntegrityError as exc:
                await session.rollback()
                raise IdempotencyError(
                    "already-completed",
                    f"run {run_id} already has a terminal record",
                    remediation="Mint a new runId to retry intentionally.",
                    previous=await self.lookup(run_id),
                ) from exc
        logger.info("idempotency completed run_id=%s status=%s", run_id, status)
        return await self.lookup(run_id)

    async def lookup(self, run_id: str) -> Optional[IdempotencyRecord]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(IdempotencyEntry).where(IdempotencyEntry.run_id == run_id)
            )
            entries = {e.kind: e for e in result.scalars().all()}
        terminal = entries.get("terminal")
        reservation = entries.get("reservation")
        if terminal is not None:
            return _to_record(terminal, reservation)
        if reservation is not None:
            return _to_record(reservation)
        return None

    async def spent_since(self, since: datetime) -> float:
        # every reservation counts: a failed multi-step run may still have moved funds
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(IdempotencyEntry.amount_usd), 0.0)).where(
                    IdempotencyEntry.kind == "reservation",
                    IdempotencyEntry.created_at >= utc_naive(since),
                )
            )
            return float(result.scalar() or 0.0)
