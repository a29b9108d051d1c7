"""Human-readable rendering of notification events for chat delivery."""

from typing import Callable, Dict, Optional

from sideways_trader.models.notification import NotificationEvent, NotificationType


def _money(value: Optional[float]) -> str:
    return f"${value:,.2f}" if value is not None else "n/a"


def _qty(value: Optional[float]) -> str:
    return f"{value:.8f}".rstrip("0").rstrip(".") if value is not None else "n/a"


class NotificationFormatter:
    """Maps each NotificationType to a plain-text template."""

    def __init__(self):
        self._templates: Dict[NotificationType, Callable[[NotificationEvent], str]] = {
            NotificationType.ORDER_PLACED: self._order_placed,
            NotificationType.ORDER_FILLED: self._order_filled,
            NotificationType.ORDER_CANCELLED: self._order_cancelled,
            NotificationType.ORDER_FAILED: self._order_failed,
            NotificationType.POSITION_OPENED: self._position_opened,
            NotificationType.POSITION_CLOSED: self._position_closed,
            NotificationType.SIDEWAYS_DETECTED: self._sideways_detected,
            NotificationType.MARKET_ANALYSIS: self._market_analysis,
            NotificationType.SYSTEM_START: self._system_start,
            NotificationType.SYSTEM_STOP: self._system_stop,
            NotificationType.CONNECTION_LOST: self._connection_lost,
            NotificationType.ERROR: self._error,
        }

    def format(self, event: NotificationEvent) -> str:
        template = self._templates.get(event.event_type)
        if template is None:
            return event.message or event.event_type.value
        return template(event)

    @staticmethod
    def _side_label(event: NotificationEvent) -> str:
        side = str(event.data.get("side", "")).upper()
        if side in ("BUY", "LONG"):
            return f"🟢 {side}"
        if side in ("SELL", "SHORT"):
            return f"🔴 {side}"
        return side or "?"

    def _order_placed(self, event: NotificationEvent) -> str:
        return (
            f"{self._side_label(event)} {event.data.get('order_type', 'MARKET')} Order Placed\n"
            f"Symbol: {event.symbol}\n"
            f"Quantity: {_qty(event.quantity)}\n"
            f"Price: {_money(event.price)}\n"
            f"Order ID: {event.data.get('order_id', 'n/a')}"
        )

    def _order_filled(self, event: NotificationEvent) -> str:
        return (
            f"{self._side_label(event)} Order Filled ✅\n"
            f"Symbol: {event.symbol}\n"
            f"Quantity: {_qty(event.quantity)}\n"
            f"Price: {_money(event.price)}\n"
            f"Order ID: {event.data.get('order_id', 'n/a')}"
        )

    def _order_cancelled(self, event: NotificationEvent) -> str:
        return (
            f"⚠️ Order Cancelled\n"
            f"Symbol: {event.symbol}\n"
            f"Order ID: {event.data.get('order_id', 'n/a')}"
        )

    def _order_failed(self, event: NotificationEvent) -> str:
        return (
            f"❌ Order Failed\n"
            f"Symbol: {event.symbol}\n"
            f"Side: {event.data.get('side', '?')}\n"
            f"Quantity: {_qty(event.quantity)}\n"
            f"Reason: {event.message}"
        )

    def _position_opened(self, event: NotificationEvent) -> str:
        return (
            f"{self._side_label(event)} Position Opened\n"
            f"Symbol: {event.symbol}\n"
            f"Quantity: {_qty(event.quantity)}\n"
            f"Entry Price: {_money(event.price)}\n"
            f"Entry Time: {event.timestamp:%H:%M:%S}"
        )

    def _position_closed(self, event: NotificationEvent) -> str:
        pnl = event.pnl or 0.0
        head = "💰" if pnl >= 0 else "📉"
        color = "🟢" if pnl >= 0 else "🔴"
        return (
            f"{head} Position Closed ({event.data.get('reason', 'manual')})\n"
            f"Symbol: {event.symbol}\n"
            f"Exit Price: {_money(event.price)}\n"
            f"{color} P&L: {_money(pnl)}"
        )

    def _sideways_detected(self, event: NotificationEvent) -> str:
        return (
            f"📈 Sideways Market Detected\n"
            f"Symbol: {event.symbol}\n"
            f"Range: {_money(event.data.get('support'))} - {_money(event.data.get('resistance'))}\n"
            f"Current Price: {_money(event.price)}"
        )

    def _market_analysis(self, event: NotificationEvent) -> str:
        return (
            f"📊 Market Analysis\n"
            f"Symbol: {event.symbol}\n"
            f"Current Price: {_money(event.price)}\n"
            f"Time: {event.timestamp:%H:%M:%S}"
        )

    def _system_start(self, event: NotificationEvent) -> str:
        return f"🚀 {event.message}\nStarted at: {event.timestamp:%Y-%m-%d %H:%M:%S}"

    def _system_stop(self, event: NotificationEvent) -> str:
        return f"⏹️ {event.message}\nStopped at: {event.timestamp:%Y-%m-%d %H:%M:%S}"

    def _connection_lost(self, event: NotificationEvent) -> str:
        return f"🔌 Connection Lost\n{event.message}"

    def _error(self, event: NotificationEvent) -> str:
        lines = [f"🚨 Error\n{event.message}"]
        if "error_type" in event.data:
            lines.append(f"Type: {event.data['error_type']}")
        return "\n".join(lines)
