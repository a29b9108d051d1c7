"""Tests for TradingDecisionEngine entry/exit decisions."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from sideways_trader.analysis.regime_detector import RegimeDetector
from sideways_trader.core.exceptions import DataCollectionError, OrderRejectedError
from sideways_trader.core.trading_engine import CycleAction, TradingDecisionEngine
from sideways_trader.execution.paper_exchange import PaperExchange
from sideways_trader.execution.position_ledger import PositionLedger
from sideways_trader.models.candle import Candle
from sideways_trader.models.notification import NotificationType
from sideways_trader.models.order import Order, OrderPurpose, OrderSide, OrderStatus, OrderType
from sideways_trader.models.regime import RegimeResult
from sideways_trader.utils.config import TradingConfig

BASE_TIME = datetime(2026, 3, 2, tzinfo=timezone.utc)


def make_candles(last_close, count=30):
    candles = []
    for i in range(count):
        close = last_close if i == count - 1 else 100.0
        open_time = BASE_TIME + timedelta(minutes=15 * i)
        candles.append(Candle(
            symbol="BTCUSDT",
            interval="15m",
            open_time=open_time,
            open=close,
            high=max(close, 100.0) + 1,
            low=min(close, 100.0) - 1,
            close=close,
            volume=5.0,
            close_time=open_time + timedelta(minutes=15),
        ))
    return candles


def filled(side, quantity, price, purpose, order_id="5001"):
    return Order(
        symbol="BTCUSDT",
        order_type=OrderType.MARKET,
        side=side,
        quantity=quantity,
        order_id=order_id,
        status=OrderStatus.FILLED,
        filled_quantity=quantity,
        avg_price=price,
        purpose=purpose,
    )


def sideways(support=100.0, resistance=102.0):
    return RegimeResult(
        is_sideways=True, support=support, resistance=resistance,
        in_range=True, multiple_touches=True, not_trending=True,
    )


@pytest.fixture
def config():
    return TradingConfig()


@pytest.fixture
def gateway():
    gw = Mock()
    gw.get_candles = AsyncMock(return_value=make_candles(100.4))
    gw.get_balance = AsyncMock(return_value=1000.0)
    gw.calculate_order_quantity = AsyncMock(return_value=0.1)
    gw.place_market_order = AsyncMock(
        return_value=filled(OrderSide.BUY, 0.1, 100.4, OrderPurpose.ENTRY)
    )
    gw.get_current_price = AsyncMock(return_value=100.4)
    gw.get_order = AsyncMock(return_value=None)
    return gw


@pytest.fixture
def notifier():
    relay = Mock()
    relay.publish = AsyncMock()
    return relay


@pytest.fixture
def detector():
    det = Mock()
    det.classify.return_value = sideways()
    return det


@pytest.fixture
def ledger(gateway, config, notifier):
    return PositionLedger(gateway, config, notifier)


@pytest.fixture
def engine(config, gateway, ledger, detector, notifier):
    return TradingDecisionEngine(config, gateway, ledger, detector, notifier)


def published_types(notifier):
    return [c.args[0].event_type for c in notifier.publish.call_args_list]


class TestCycleGuards:

    @pytest.mark.asyncio
    async def test_candle_request_uses_window_plus_margin(self, engine, gateway, detector):
        await engine.analyze_market()

        gateway.get_candles.assert_awaited_once_with("BTCUSDT", "15m", 30)
        candles, window, threshold = detector.classify.call_args.args
        assert window == 20
        assert threshold == 0.02

    @pytest.mark.asyncio
    async def test_candle_fetch_error_is_a_no_op(self, engine, gateway):
        gateway.get_candles.side_effect = DataCollectionError("timeout")

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_candles_is_a_no_op(self, engine, gateway, detector):
        gateway.get_candles.return_value = []

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        detector.classify.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_sideways_does_nothing(self, engine, gateway, detector):
        detector.classify.return_value = RegimeResult(False, 100.0, 110.0)

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.get_balance.assert_not_awaited()
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_sideways_publishes_market_analysis(self, engine, detector, notifier):
        detector.classify.return_value = RegimeResult(False, 100.0, 110.0, range_ratio=0.1)

        await engine.analyze_market()

        event = notifier.publish.call_args.args[0]
        assert event.event_type == NotificationType.MARKET_ANALYSIS
        assert event.price == 100.4
        assert event.data["range_ratio"] == 0.1
        assert NotificationType.SIDEWAYS_DETECTED not in published_types(notifier)

    @pytest.mark.asyncio
    async def test_sideways_is_published(self, engine, notifier):
        await engine.analyze_market()

        assert NotificationType.SIDEWAYS_DETECTED in published_types(notifier)


class TestEntry:

    @pytest.mark.asyncio
    async def test_enters_near_support(self, engine, gateway, ledger):
        action = await engine.analyze_market()

        assert action == CycleAction.ENTERED
        gateway.calculate_order_quantity.assert_awaited_once_with("BTCUSDT", 10.0, 100.4)
        gateway.place_market_order.assert_awaited_once_with(
            "BTCUSDT", OrderSide.BUY, 0.1, purpose=OrderPurpose.ENTRY
        )
        position = ledger.get_active_position("BTCUSDT")
        assert position.side == "LONG"
        assert position.entry_price == 100.4
        assert position.quantity == 0.1

    @pytest.mark.asyncio
    async def test_price_above_buy_level_does_not_enter(self, engine, gateway):
        # buy level = 100 * 1.005 = 100.5
        gateway.get_candles.return_value = make_candles(100.8)

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, engine, gateway):
        gateway.get_balance.return_value = 9.99

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.calculate_order_quantity.assert_not_awaited()
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_quantity_after_rounding(self, engine, gateway):
        gateway.calculate_order_quantity.return_value = 0.0

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_entry_publishes_failure(self, engine, gateway, ledger, notifier):
        gateway.place_market_order.side_effect = OrderRejectedError("insufficient margin")

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        assert ledger.get_active_position("BTCUSDT") is None
        assert NotificationType.ORDER_FAILED in published_types(notifier)

    @pytest.mark.asyncio
    async def test_partly_filled_expired_entry_opens_position(self, engine, gateway, ledger, notifier):
        expired = filled(OrderSide.BUY, 0.1, 100.4, OrderPurpose.ENTRY)
        expired.status = OrderStatus.EXPIRED
        expired.filled_quantity = 0.05
        gateway.place_market_order.return_value = expired

        assert await engine.analyze_market() == CycleAction.ENTERED

        position = ledger.get_active_position("BTCUSDT")
        assert position.quantity == 0.05
        assert position.entry_price == 100.4
        assert NotificationType.ORDER_FAILED not in published_types(notifier)

        # The held remainder blocks a second entry on the next cycle
        assert await engine.analyze_market() == CycleAction.HOLD
        assert gateway.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_without_fill_opens_nothing(self, engine, gateway, ledger, notifier):
        expired = filled(OrderSide.BUY, 0.1, 100.4, OrderPurpose.ENTRY)
        expired.status = OrderStatus.EXPIRED
        expired.filled_quantity = 0.0
        expired.avg_price = 0.0
        gateway.place_market_order.return_value = expired

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        assert ledger.get_active_position("BTCUSDT") is None
        assert NotificationType.ORDER_FAILED in published_types(notifier)

    @pytest.mark.asyncio
    async def test_unfilled_entry_is_tracked_and_blocks_new_entries(self, engine, gateway, ledger):
        pending = filled(OrderSide.BUY, 0.1, 100.4, OrderPurpose.ENTRY)
        pending.status = OrderStatus.NEW
        pending.filled_quantity = 0.0
        pending.avg_price = 0.0
        gateway.place_market_order.return_value = pending

        assert await engine.analyze_market() == CycleAction.ENTRY_PENDING
        assert ledger.has_pending_order("BTCUSDT", OrderPurpose.ENTRY)
        assert ledger.get_active_position("BTCUSDT") is None

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        assert gateway.place_market_order.await_count == 1

    @pytest.mark.asyncio
    async def test_near_resistance_without_shorts(self, engine, gateway):
        gateway.get_candles.return_value = make_candles(101.9)

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_short_entry_near_resistance_when_enabled(
        self, gateway, detector, notifier
    ):
        config = TradingConfig(enable_short_entries=True)
        ledger = PositionLedger(gateway, config, notifier)
        engine = TradingDecisionEngine(config, gateway, ledger, detector, notifier)
        gateway.get_candles.return_value = make_candles(101.9)
        gateway.place_market_order.return_value = filled(
            OrderSide.SELL, 0.1, 101.9, OrderPurpose.ENTRY
        )

        assert await engine.analyze_market() == CycleAction.ENTERED
        gateway.place_market_order.assert_awaited_once_with(
            "BTCUSDT", OrderSide.SELL, 0.1, purpose=OrderPurpose.ENTRY
        )
        assert ledger.get_active_position("BTCUSDT").side == "SHORT"


class TestExit:

    @pytest.mark.asyncio
    async def test_below_target_profit_holds(self, engine, gateway, ledger, detector):
        detector.classify.return_value = sideways(support=99.0, resistance=101.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(100.2)

        assert await engine.analyze_market() == CycleAction.HOLD
        gateway.place_market_order.assert_not_awaited()
        assert ledger.has_active_position("BTCUSDT")

    @pytest.mark.asyncio
    async def test_negative_profit_holds(self, engine, gateway, ledger, detector):
        detector.classify.return_value = sideways(support=99.0, resistance=101.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(99.5)

        assert await engine.analyze_market() == CycleAction.HOLD
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_target_profit_closes_with_realized_pnl(self, engine, gateway, ledger, detector):
        detector.classify.return_value = sideways(support=99.0, resistance=101.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(100.5)
        gateway.place_market_order.return_value = filled(
            OrderSide.SELL, 0.1, 100.5, OrderPurpose.EXIT
        )

        assert await engine.analyze_market() == CycleAction.EXITED
        gateway.place_market_order.assert_awaited_once_with(
            "BTCUSDT", OrderSide.SELL, 0.1, purpose=OrderPurpose.EXIT
        )
        closed = ledger.last_closed_position("BTCUSDT")
        assert closed.realized_pnl == pytest.approx((100.5 - 100.0) * 0.1)
        assert closed.close_reason == "min_profit"

    @pytest.mark.asyncio
    async def test_exit_takes_precedence_over_entry(self, engine, gateway, ledger, detector):
        # Price is both >= profit target and <= buy level (100.4 * 1.005)
        detector.classify.return_value = sideways(support=100.4, resistance=102.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(100.5)
        gateway.place_market_order.return_value = filled(
            OrderSide.SELL, 0.1, 100.5, OrderPurpose.EXIT
        )

        assert await engine.analyze_market() == CycleAction.EXITED
        assert gateway.place_market_order.await_count == 1
        assert gateway.place_market_order.call_args.kwargs["purpose"] == OrderPurpose.EXIT
        assert ledger.get_active_position("BTCUSDT") is None

    @pytest.mark.asyncio
    async def test_holding_position_blocks_entry(self, engine, gateway, ledger):
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 101.0)

        # 100.4 is below the buy level but a position is open
        assert await engine.analyze_market() == CycleAction.HOLD
        gateway.place_market_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_close_keeps_holding(self, engine, gateway, ledger, detector):
        detector.classify.return_value = sideways(support=99.0, resistance=101.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(100.5)
        gateway.place_market_order.side_effect = OrderRejectedError("busy")

        assert await engine.analyze_market() == CycleAction.HOLD
        assert ledger.has_active_position("BTCUSDT")

    @pytest.mark.asyncio
    async def test_exits_ignored_outside_range_by_default(self, engine, gateway, ledger, detector):
        detector.classify.return_value = RegimeResult(False, 95.0, 110.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(101.0)

        assert await engine.analyze_market() == CycleAction.NO_ACTION
        assert ledger.has_active_position("BTCUSDT")

    @pytest.mark.asyncio
    async def test_exits_outside_range_when_enabled(self, gateway, detector, notifier):
        config = TradingConfig(manage_exits_outside_range=True)
        ledger = PositionLedger(gateway, config, notifier)
        engine = TradingDecisionEngine(config, gateway, ledger, detector, notifier)
        detector.classify.return_value = RegimeResult(False, 95.0, 110.0)
        await ledger.create_position("BTCUSDT", "LONG", 0.1, 100.0)
        gateway.get_candles.return_value = make_candles(101.0)
        gateway.place_market_order.return_value = filled(
            OrderSide.SELL, 0.1, 101.0, OrderPurpose.EXIT
        )

        assert await engine.analyze_market() == CycleAction.EXITED
        assert not ledger.has_active_position("BTCUSDT")


class TestWithPaperExchange:
    """Real detector and paper fills, no mocks."""

    @pytest.mark.asyncio
    async def test_entry_then_profit_exit(self):
        config = TradingConfig(order_size=100.0)
        exchange = PaperExchange(initial_balance=1000.0, slippage_bps=0.0, fee_rate=0.0, step_size=0.0001)
        ledger = PositionLedger(exchange, config)
        engine = TradingDecisionEngine(config, exchange, ledger, RegimeDetector())

        rows = [(19150, 19200, 19100, 19150)] * 20
        rows[0] = (19100, 19200, 19050, 19100)
        rows[3] = (19100, 19150, 19000, 19100)
        rows[7] = (19200, 19300, 19150, 19250)
        rows[11] = (19100, 19150, 19010, 19100)
        rows[15] = (19200, 19290, 19150, 19250)
        rows[19] = (19060, 19100, 19010, 19050)

        def feed(rows):
            exchange.feed_candles("BTCUSDT", [
                Candle("BTCUSDT", "15m", BASE_TIME + timedelta(minutes=15 * i), o, h, l, c, 1.0,
                       BASE_TIME + timedelta(minutes=15 * (i + 1)))
                for i, (o, h, l, c) in enumerate(rows)
            ])

        feed(rows)
        assert await engine.analyze_market() == CycleAction.ENTERED
        position = ledger.get_active_position("BTCUSDT")
        assert position.quantity == pytest.approx(0.0052)
        assert position.entry_price == pytest.approx(19050)

        # Back to the middle of the range: +0.52% over entry
        rows[19] = (19100, 19160, 19090, 19150)
        feed(rows)
        assert await engine.analyze_market() == CycleAction.EXITED
        closed = ledger.last_closed_position("BTCUSDT")
        assert closed.realized_pnl == pytest.approx((19150 - 19050) * 0.0052)
