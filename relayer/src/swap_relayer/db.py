from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, List, Optional
import logging

from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint, func, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .errors import StorageUnavailable
from .models import (
    BlockRef,
    ChainSide,
    EscrowEvent,
    EventKind,
    Phase,
    SwapAction,
    SwapOrder,
)


class Base(DeclarativeBase):
    pass


class SwapOrderRow(Base):
    __tablename__ = "swap_orders"

    swap_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(64), nullable=False)
    source_maker: Mapped[str] = mapped_column(String(128), nullable=False)
    source_taker: Mapped[str] = mapped_column(String(128), nullable=False)
    dest_maker: Mapped[str] = mapped_column(String(128), nullable=False)
    dest_taker: Mapped[str] = mapped_column(String(128), nullable=False)
    source_asset: Mapped[str] = mapped_column(String(128), nullable=False)
    source_amount: Mapped[str] = mapped_column(String(80), nullable=False)  # uint256 does not fit BIGINT
    dest_asset: Mapped[str] = mapped_column(String(128), nullable=False)
    dest_amount: Mapped[str] = mapped_column(String(80), nullable=False)
    source_timeout: Mapped[int] = mapped_column(BigInteger, nullable=False)
    dest_timeout: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hash_algorithm: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    revealed_secret: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @classmethod
    def from_order(cls, order: SwapOrder) -> "SwapOrderRow":
        return cls(
            swap_id=order.swap_id,
            hashlock=order.hashlock.hex(),
            source_maker=order.source_maker,
            source_taker=order.source_taker,
            dest_maker=order.dest_maker,
            dest_taker=order.dest_taker,
            source_asset=order.source_asset,
            source_amount=str(order.source_amount),
            dest_asset=order.dest_asset,
            dest_amount=str(order.dest_amount),
            source_timeout=order.source_timeout,
            dest_timeout=order.dest_timeout,
            hash_algorithm=order.hash_algorithm,
            status=order.status.value,
            revealed_secret=order.revealed_secret.hex() if order.revealed_secret else None,
        )

    def to_order(self) -> SwapOrder:
        return SwapOrder(
            swap_id=self.swap_id,
            hashlock=bytes.fromhex(self.hashlock),
            source_maker=self.source_maker,
            source_taker=self.source_taker,
            dest_maker=self.dest_maker,
            dest_taker=self.dest_taker,
            source_asset=self.source_asset,
            source_amount=int(self.source_amount),
            dest_asset=self.dest_asset,
            dest_amount=int(self.dest_amount),
            source_timeout=self.source_timeout,
            dest_timeout=self.dest_timeout,
            hash_algorithm=self.hash_algorithm,
            status=Phase(self.status),
            revealed_secret=bytes.fromhex(self.revealed_secret) if self.revealed_secret else None,
        )


class EscrowEventRow(Base):
    __tablename__ = "escrow_events"
    __table_args__ = (
        UniqueConstraint("chain", "swap_id", "block_height", "block_index", name="uq_escrow_events_key"),
    )

    # autoincrement id doubles as the append order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(8), nullable=False)
    swap_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    observed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_index: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    secret: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    @classmethod
    def from_event(cls, event: EscrowEvent) -> "EscrowEventRow":
        return cls(
            chain=event.chain.value,
            swap_id=event.swap_id,
            kind=event.kind.value,
            observed_at=event.observed_at,
            block_height=event.block_ref.height,
            block_index=event.block_ref.index,
            tx_ref=event.tx_ref,
            secret=event.secret.hex() if event.secret is not None else None,
        )

    def to_event(self) -> EscrowEvent:
        return EscrowEvent(
            chain=ChainSide(self.chain),
            swap_id=self.swap_id,
            kind=EventKind(self.kind),
            observed_at=self.observed_at,
            block_ref=BlockRef(self.block_height, self.block_index),
            tx_ref=self.tx_ref,
            secret=bytes.fromhex(self.secret) if self.secret is not None else None,
        )


class ChainCursorRow(Base):
    __tablename__ = "chain_cursors"

    chain: Mapped[str] = mapped_column(String(8), primary_key=True)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_index: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SubmissionRow(Base):
    __tablename__ = "submissions"
    __table_args__ = (UniqueConstraint("swap_id", "kind", "chain", name="uq_submissions_action"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    chain: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def to_dict(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "kind": self.kind,
            "chain": self.chain,
            "status": self.status,
            "tx_ref": self.tx_ref,
            "attempts": self.attempts,
            "error": self.error,
        }


def async_database_url(url: str) -> str:
    if url.startswith("sqlite:///") and "aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


class EscrowEventStore:
    """
    Durable, append-only history of escrow events plus the bookkeeping the
    coordinator needs to resume after a restart (orders, per-chain cursors,
    submission records).
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = async_database_url(database_url)
        kwargs = {}
        if ":memory:" in self.database_url:
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(self.database_url, echo=echo, future=True, **kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.log = logging.getLogger("EventStore")

    async def init(self) -> None:
        if self.database_url.startswith("sqlite") and ":memory:" not in self.database_url:
            db_path = self.database_url.split(":///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (OperationalError, InterfaceError, OSError) as e:
            raise StorageUnavailable(f"Cannot initialise {self.database_url}: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e

    # ------------------------------------------------------------------ events

    async def append(self, event: EscrowEvent) -> bool:
        """Store `event`; returns False when the same (chain, swap, block ref) is already there."""
        try:
            async with self._session() as session:
                existing = await session.scalar(
                    select(EscrowEventRow.id).where(
                        EscrowEventRow.chain == event.chain.value,
                        EscrowEventRow.swap_id == event.swap_id,
                        EscrowEventRow.block_height == event.block_ref.height,
                        EscrowEventRow.block_index == event.block_ref.index,
                    )
                )
                if existing is not None:
                    return False
                session.add(EscrowEventRow.from_event(event))
        except IntegrityError:
            return False
        return True

    async def events_for(self, swap_id: str) -> List[EscrowEvent]:
        async with self._session() as session:
            rows = await session.scalars(
                select(EscrowEventRow).where(EscrowEventRow.swap_id == swap_id).order_by(EscrowEventRow.id)
            )
            return [row.to_event() for row in rows]

    async def count_events(self) -> int:
        async with self._session() as session:
            return await session.scalar(select(func.count(EscrowEventRow.id))) or 0

    # ------------------------------------------------------------------ orders

    async def save_order(self, order: SwapOrder) -> bool:
        try:
            async with self._session() as session:
                if await session.get(SwapOrderRow, order.swap_id) is not None:
                    return False
                session.add(SwapOrderRow.from_order(order))
        except IntegrityError:
            return False
        return True

    async def get_order(self, swap_id: str) -> Optional[SwapOrder]:
        async with self._session() as session:
            row = await session.get(SwapOrderRow, swap_id)
            return row.to_order() if row is not None else None

    async def list_orders(self) -> List[SwapOrder]:
        async with self._session() as session:
            rows = await session.scalars(select(SwapOrderRow).order_by(SwapOrderRow.created_at, SwapOrderRow.swap_id))
            return [row.to_order() for row in rows]

    async def update_order_status(self, swap_id: str, status: Phase, revealed_secret: Optional[bytes] = None) -> None:
        async with self._session() as session:
            row = await session.get(SwapOrderRow, swap_id)
            if row is None:
                raise ValueError(f"Order with ID {swap_id} not found.")
            row.status = status.value
            if revealed_secret is not None:
                row.revealed_secret = revealed_secret.hex()

    # ----------------------------------------------------------------- cursors

    async def get_cursor(self, chain: ChainSide) -> Optional[BlockRef]:
        async with self._session() as session:
            row = await session.get(ChainCursorRow, chain.value)
            return BlockRef(row.block_height, row.block_index) if row is not None else None

    async def set_cursor(self, chain: ChainSide, ref: BlockRef) -> None:
        async with self._session() as session:
            row = await session.get(ChainCursorRow, chain.value)
            if row is None:
                session.add(ChainCursorRow(chain=chain.value, block_height=ref.height, block_index=ref.index))
            elif BlockRef(row.block_height, row.block_index) < ref:
                row.block_height = ref.height
                row.block_index = ref.index

    # ------------------------------------------------------------- submissions

    async def record_submission(
        self,
        action: SwapAction,
        status: str,
        tx_ref: str = "",
        attempts: int = 0,
        error: Optional[str] = None,
    ) -> None:
        async with self._session() as session:
            row = await session.scalar(
                select(SubmissionRow).where(
                    SubmissionRow.swap_id == action.swap_id,
                    SubmissionRow.kind == action.kind.value,
                    SubmissionRow.chain == action.chain.value,
                )
            )
            if row is None:
                row = SubmissionRow(swap_id=action.swap_id, kind=action.kind.value, chain=action.chain.value)
                session.add(row)
            row.status = status
            row.tx_ref = tx_ref or row.tx_ref or ""
            row.attempts = attempts
            row.error = error[:512] if error else None

    async def list_submissions(self, swap_id: Optional[str] = None) -> List[dict]:
        async with self._session() as session:
            stmt = select(SubmissionRow).order_by(SubmissionRow.id)
            if swap_id is not None:
                stmt = stmt.where(SubmissionRow.swap_id == swap_id)
            rows = await session.scalars(stmt)
            return [row.to_dict() for row in rows]
