"""Durable storage for agent state and trade history."""
import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import Column, DateTime, Numeric, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from src.core.config import database_config
from src.core.models import StateSnapshot, Trade, TradeSide

logger = structlog.get_logger(__name__)

Base = declarative_base()

SNAPSHOT_KEY = "snapshot"


class AgentStateModel(Base):
    """SQLAlchemy model for the persisted state document."""
    __tablename__ = 'agent_state'

    key = Column(String, primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class TradeModel(Base):
    """SQLAlchemy model for executed trades."""
    __tablename__ = 'trades'

    id = Column(String, primary_key=True)
    asset = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    capital_value = Column(Numeric(36, 18), nullable=False)
    price = Column(Numeric(36, 18), nullable=False)
    profit = Column(Numeric(36, 18), nullable=True)
    reason = Column(String, nullable=True)
    tx_id = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class StateStore:
    """
    Async state store.

    Holds one opaque snapshot document plus the trade history. Saves are
    debounced so bursts of state changes produce a single write. Storage
    failures are logged and never raised to the caller.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
        snapshot_provider: Optional[Callable[[], StateSnapshot]] = None,
    ):
        # Convert SQLite URL to async version if needed
        db_url = url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)
        self.debounce_seconds = (
            database_config.save_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.snapshot_provider = snapshot_provider
        self._save_task: Optional[asyncio.Task] = None
        self.saves_completed = 0

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Flush pending state and close the database connection."""
        await self.flush()
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def load(self) -> Optional[StateSnapshot]:
        """Load the persisted snapshot, or None if absent or unreadable."""
        try:
            async with self.session_maker() as session:
                row = await session.get(AgentStateModel, SNAPSHOT_KEY)
                if row is None:
                    return None
                payload = row.payload
        except SQLAlchemyError as e:
            logger.error("state_store.load_failed", error=str(e))
            return None

        try:
            return StateSnapshot.model_validate_json(payload)
        except ValidationError as e:
            logger.error("state_store.snapshot_invalid", error=str(e))
            return None

    async def save(self, snapshot: StateSnapshot) -> bool:
        """Write the snapshot immediately."""
        try:
            async with self.session_maker() as session:
                row = await session.get(AgentStateModel, SNAPSHOT_KEY)
                if row is None:
                    row = AgentStateModel(key=SNAPSHOT_KEY)
                    session.add(row)
                row.payload = snapshot.model_dump_json()
                row.updated_at = snapshot.saved_at
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("state_store.save_failed", error=str(e))
            return False

        self.saves_completed += 1
        logger.debug("state_store.saved", positions=len(snapshot.positions))
        return True

    def request_save(self):
        """Schedule a debounced save of the provider's snapshot."""
        if self.snapshot_provider is None:
            return
        if self._save_task is not None and not self._save_task.done():
            return
        self._save_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self):
        await asyncio.sleep(self.debounce_seconds)
        await self.save(self.snapshot_provider())

    async def flush(self):
        """Cancel any pending debounced save and write now."""
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
        self._save_task = None

        if self.snapshot_provider is not None:
            await self.save(self.snapshot_provider())

    # ------------------------------------------------------------------
    # Trade history
    # ------------------------------------------------------------------

    async def record_trade(self, trade: Trade) -> bool:
        """Append a trade to the history."""
        try:
            async with self.session_maker() as session:
                session.add(TradeModel(
                    id=trade.id,
                    asset=trade.asset,
                    side=trade.side.value,
                    quantity=trade.quantity,
                    capital_value=trade.capital_value,
                    price=trade.price,
                    profit=trade.profit,
                    reason=trade.reason,
                    tx_id=trade.tx_id,
                    timestamp=trade.timestamp,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("state_store.record_trade_failed", trade_id=trade.id, error=str(e))
            return False
        return True

    async def get_trades(self, limit: int = 50, asset: Optional[str] = None) -> List[Trade]:
        """Most recent trades first."""
        try:
            async with self.session_maker() as session:
                query = select(TradeModel)
                if asset:
                    query = query.where(TradeModel.asset == asset)
                query = query.order_by(TradeModel.timestamp.desc()).limit(limit)
                result = await session.execute(query)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("state_store.get_trades_failed", error=str(e))
            return []

        return [self._trade_from_model(row) for row in rows]

    def _trade_from_model(self, model: TradeModel) -> Trade:
        return Trade(
            id=model.id,
            asset=model.asset,
            side=TradeSide(model.side),
            quantity=model.quantity,
            capital_value=model.capital_value,
            price=model.price,
            profit=model.profit,
            reason=model.reason or "",
            tx_id=model.tx_id or "",
            timestamp=_as_utc(model.timestamp),
        )
