"""Unit tests for the StateStore."""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.core.models import (
    HealthStatus,
    Position,
    PositionStatus,
    RiskState,
    StateSnapshot,
    SurvivalState,
    Trade,
    TradeSide,
)
from src.storage.database import AgentStateModel, SNAPSHOT_KEY, StateStore


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_snapshot(**overrides) -> StateSnapshot:
    position = Position(
        asset="TOKEN_A",
        entry_price=Decimal("0.000123456789"),
        quantity=Decimal("81000.5"),
        capital_value=Decimal("10"),
        highest_price=Decimal("0.0002"),
        trailing_stop_price=Decimal("0.00017"),
        partial_exit_done=True,
        status=PositionStatus.TRAILING,
        opened_at=NOW,
    )
    fields = dict(
        positions={"TOKEN_A": position},
        risk=RiskState(
            daily_pnl=Decimal("-0.35"),
            daily_reset_date="2024-03-01",
            peak_balance=Decimal("22.5"),
            consecutive_losses=2,
            cooldown_until=NOW + timedelta(minutes=30),
        ),
        survival=SurvivalState(
            reserve_balance=Decimal("123.456"),
            pending_reserve_purchase=Decimal("0.006"),
            status=HealthStatus.LOW,
        ),
        saved_at=NOW,
    )
    fields.update(overrides)
    return StateSnapshot(**fields)


def make_trade(asset="TOKEN_A", minutes=0, profit="0.5") -> Trade:
    return Trade(
        asset=asset,
        side=TradeSide.SELL,
        quantity=Decimal("8"),
        capital_value=Decimal("2.5"),
        price=Decimal("0.25"),
        profit=Decimal(profit),
        reason="Take profit hit",
        timestamp=NOW + timedelta(minutes=minutes),
    )


# =============================================================================
# Snapshot Tests
# =============================================================================

class TestSnapshot:
    """Test snapshot load and save."""

    @pytest.mark.asyncio
    async def test_load_empty(self, state_store):
        """A fresh store has no snapshot."""
        assert await state_store.load() is None

    @pytest.mark.asyncio
    async def test_round_trip(self, state_store):
        """Loaded state equals saved state, Decimals included."""
        snapshot = make_snapshot()

        assert await state_store.save(snapshot) is True
        loaded = await state_store.load()

        assert loaded == snapshot
        assert loaded.positions["TOKEN_A"].entry_price == Decimal("0.000123456789")
        assert loaded.risk.cooldown_until == NOW + timedelta(minutes=30)
        assert loaded.survival.status == HealthStatus.LOW

    @pytest.mark.asyncio
    async def test_save_overwrites(self, state_store):
        """There is exactly one snapshot document."""
        await state_store.save(make_snapshot())
        await state_store.save(make_snapshot(positions={}))

        loaded = await state_store.load()

        assert loaded.positions == {}
        assert state_store.saves_completed == 2

    @pytest.mark.asyncio
    async def test_unreadable_snapshot_returns_none(self, state_store):
        """A corrupt document is reported, not raised."""
        async with state_store.session_maker() as session:
            session.add(AgentStateModel(key=SNAPSHOT_KEY, payload="{not json", updated_at=NOW))
            await session.commit()

        assert await state_store.load() is None


# =============================================================================
# Debounce Tests
# =============================================================================

class TestDebouncedSave:
    """Test request_save and flush."""

    @pytest.mark.asyncio
    async def test_burst_produces_single_write(self, state_store):
        """Many requests inside the window write once."""
        calls = []

        def provider():
            calls.append(1)
            return make_snapshot()

        state_store.snapshot_provider = provider
        for _ in range(10):
            state_store.request_save()
        await asyncio.sleep(0.1)

        assert len(calls) == 1
        assert state_store.saves_completed == 1

    @pytest.mark.asyncio
    async def test_request_without_provider_is_noop(self, state_store):
        state_store.request_save()
        await asyncio.sleep(0.05)

        assert state_store.saves_completed == 0

    @pytest.mark.asyncio
    async def test_flush_writes_immediately(self):
        """Flush cancels the pending timer and writes the latest state."""
        store = StateStore(
            "sqlite+aiosqlite:///:memory:",
            debounce_seconds=60,
            snapshot_provider=make_snapshot,
        )
        await store.initialize()
        try:
            store.request_save()
            await store.flush()

            assert store.saves_completed == 1
            assert (await store.load()) == make_snapshot()
        finally:
            await store.engine.dispose()

    def test_sqlite_url_made_async(self):
        store = StateStore("sqlite:///data/test.db")

        assert store.url == "sqlite+aiosqlite:///data/test.db"


# =============================================================================
# Trade History Tests
# =============================================================================

class TestTradeHistory:
    """Test record_trade and get_trades."""

    @pytest.mark.asyncio
    async def test_record_and_read_back(self, state_store):
        trade = make_trade()

        assert await state_store.record_trade(trade) is True
        trades = await state_store.get_trades()

        assert len(trades) == 1
        loaded = trades[0]
        assert loaded.id == trade.id
        assert loaded.side == TradeSide.SELL
        assert loaded.quantity == Decimal("8")
        assert loaded.profit == Decimal("0.5")
        assert loaded.timestamp == trade.timestamp
        assert loaded.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, state_store):
        for minutes in (0, 5, 10):
            await state_store.record_trade(make_trade(minutes=minutes))

        trades = await state_store.get_trades(limit=2)

        assert [t.timestamp for t in trades] == [
            NOW + timedelta(minutes=10),
            NOW + timedelta(minutes=5),
        ]

    @pytest.mark.asyncio
    async def test_filter_by_asset(self, state_store):
        await state_store.record_trade(make_trade(asset="TOKEN_A"))
        await state_store.record_trade(make_trade(asset="TOKEN_B", minutes=1))

        trades = await state_store.get_trades(asset="TOKEN_A")

        assert [t.asset for t in trades] == ["TOKEN_A"]

    @pytest.mark.asyncio
    async def test_duplicate_trade_reported(self, state_store):
        """Storage errors are returned as False, never raised."""
        trade = make_trade()
        await state_store.record_trade(trade)

        assert await state_store.record_trade(trade) is False
