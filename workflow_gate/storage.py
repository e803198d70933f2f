from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy import Column, DateTime, Float, JSON, String, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DEFAULT_DSN = "sqlite+aiosqlite:///./workflow_gate.db"

Base = declarative_base()


def utc_naive(value: Optional[datetime] = None) -> datetime:
    """SQLite drops tzinfo, so timestamps are stored as naive UTC."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IdempotencyEntry(Base):
    """
    Append-only idempotency ledger.

    Each run id gets at most one ``reservation`` row (written before the first
    broadcast) and at most one ``terminal`` row (written once the attempt has
    an outcome). Rows are never updated; the unique (run_id, kind) constraint
    is the durable backstop against a second reservation.
    """
    __tablename__ = "idempotency_entries"
    __table_args__ = (UniqueConstraint("run_id", "kind", name="uq_idempotency_run_kind"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # "reservation" | "terminal"
    status = Column(String, nullable=False)  # "in_progress" | "succeeded" | "failed"
    result = Column(JSON, nullable=True)
    amount_usd = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_naive, index=True)


async def create_engine_and_sessionmaker(dsn=None):
    dsn = dsn or DEFAULT_DSN
    engine = create_async_engine(dsn, echo=False, future=True)
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
