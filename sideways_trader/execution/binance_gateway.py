"""
Live ExchangeGateway backed by the Binance USDT-M futures REST API.

The connector is synchronous; every request runs in a worker thread via
``asyncio.to_thread`` so the monitoring loop stays responsive. Transient
failures are retried inside the worker thread, everything else is
translated into the ExchangeError family.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, Type

import requests
from binance.error import ClientError, ServerError
from binance.um_futures import UMFutures

from sideways_trader.core.audit_logger import AuditEventType, AuditLogger
from sideways_trader.core.exceptions import (
    DataCollectionError,
    ExchangeError,
    OrderExecutionError,
    OrderRejectedError,
    RateLimitError,
    ValidationError,
)
from sideways_trader.core.retry import describe_error, retry_with_backoff
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.models.candle import Candle
from sideways_trader.models.order import Order, OrderPurpose, OrderSide, OrderStatus, OrderType

TESTNET_URL = "https://testnet.binancefuture.com"
MAINNET_URL = "https://fapi.binance.com"

DEFAULT_STEP_SIZE = 0.001
EXCHANGE_INFO_TTL = timedelta(hours=24)
# Binance resets x-mbx-used-weight-1m every minute
WEIGHT_WINDOW_SECONDS = 60

# Binance error codes with a specific meaning for this gateway
ERROR_RATE_LIMIT = -1003
ERROR_AUTH = -2015
ERROR_UNKNOWN_ORDER = -2011
ERROR_ORDER_NOT_FOUND = -2013
VALIDATION_ERROR_CODES = {
    -1013,  # Filter failure (LOT_SIZE, PRICE_FILTER)
    -1111,  # Precision over the maximum defined
    -4164,  # Notional below minimum
}

# Status names the futures API may return beyond the core set
_STATUS_ALIASES = {
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
}


class RequestWeightTracker:
    """
    Tracks used request weight reported by Binance.

    With ``show_limit_usage=True`` the connector returns the
    ``x-mbx-used-weight-1m`` header alongside the payload.
    """

    def __init__(self, weight_limit: int = 2400):
        self.current_weight = 0
        self.weight_limit = weight_limit
        self._updated_at: Optional[float] = None
        self.logger = logging.getLogger(__name__)

    def update(self, usage: Optional[Dict[str, Any]]) -> None:
        if not usage:
            return
        weight = None
        for key, value in usage.items():
            if key.lower() == "x-mbx-used-weight-1m":
                weight = value
                break
        if weight is None:
            return
        try:
            self.current_weight = int(weight)
        except (TypeError, ValueError):
            self.logger.error(f"Invalid weight value in header: {weight}")
            return
        self._updated_at = time.monotonic()

        if self.current_weight > self.weight_limit * 0.8:
            self.logger.warning(
                f"Approaching Binance rate limit: {self.current_weight}/{self.weight_limit} "
                f"({self.current_weight / self.weight_limit * 100:.1f}%)"
            )

    def check_limit(self) -> bool:
        """True while below 90% of the limit, or once the reading is older than the weight window."""
        if self._updated_at is not None and time.monotonic() - self._updated_at >= WEIGHT_WINDOW_SECONDS:
            return True
        return self.current_weight < self.weight_limit * 0.9


def floor_to_step(quantity: float, step_size: float) -> float:
    """
    Floor a quantity to the exchange lot step.

    Decimal arithmetic avoids float artifacts (0.0002 / 0.0001 must give
    exactly 2 steps).
    """
    if step_size <= 0:
        raise ValueError(f"step_size must be > 0, got {step_size}")
    if quantity <= 0:
        return 0.0
    step = Decimal(str(step_size))
    steps = (Decimal(str(quantity)) / step).to_integral_value(rounding=ROUND_DOWN)
    return float(steps * step)


def parse_kline(raw: List[Any], symbol: str, interval: str) -> Candle:
    """
    Parse a REST kline array.

    Layout: [0] open_time ms, [1] open, [2] high, [3] low, [4] close,
    [5] volume, [6] close_time ms, [7..11] unused here.
    """
    try:
        return Candle(
            symbol=symbol,
            interval=interval,
            open_time=datetime.fromtimestamp(int(raw[0]) / 1000, tz=timezone.utc),
            open=float(raw[1]),
            high=float(raw[2]),
            low=float(raw[3]),
            close=float(raw[4]),
            volume=float(raw[5]),
            close_time=datetime.fromtimestamp(int(raw[6]) / 1000, tz=timezone.utc),
        )
    except (IndexError, ValueError, TypeError) as e:
        raise DataCollectionError(f"Invalid kline data format: {e}") from e


def parse_order(response: Dict[str, Any], purpose: Optional[OrderPurpose] = None) -> Order:
    """
    Parse a Binance order payload (new_order, query_order, open orders).

    Example (MARKET with newOrderRespType=RESULT):
        {"orderId": 123456789, "symbol": "BTCUSDT", "status": "FILLED",
         "clientOrderId": "abc", "price": "0", "avgPrice": "59808.02",
         "origQty": "0.001", "executedQty": "0.001", "type": "MARKET",
         "side": "BUY", "updateTime": 1653563095000}
    """
    try:
        status_name = response["status"]
        status = _STATUS_ALIASES.get(status_name) or OrderStatus[status_name]
        price = float(response.get("price") or 0)
        stop_price = float(response.get("stopPrice") or 0)
        timestamp_ms = response.get("time") or response.get("updateTime")
        created_at = (
            datetime.fromtimestamp(int(timestamp_ms) / 1000, tz=timezone.utc)
            if timestamp_ms
            else datetime.now(timezone.utc)
        )
        return Order(
            symbol=response["symbol"],
            order_type=OrderType(response.get("type", "MARKET")),
            side=OrderSide(response["side"]),
            quantity=float(response.get("origQty") or 0),
            price=price if price > 0 else None,
            stop_price=stop_price if stop_price > 0 else None,
            order_id=str(response["orderId"]),
            client_order_id=response.get("clientOrderId"),
            status=status,
            created_at=created_at,
            filled_quantity=float(response.get("executedQty") or 0),
            avg_price=float(response.get("avgPrice") or 0),
            purpose=purpose,
        )
    except KeyError as e:
        raise OrderExecutionError(f"Missing required field in API response: {e}") from e
    except (ValueError, TypeError) as e:
        raise OrderExecutionError(f"Invalid data in API response: {e}") from e


class BinanceGateway(ExchangeGateway):
    """
    ExchangeGateway for Binance USDT-M futures.

    Args:
        api_key: Binance API key
        api_secret: Binance API secret
        is_testnet: Use testnet.binancefuture.com (default: True)
        client: Pre-built UMFutures client (tests inject a Mock)
        audit_logger: Audit trail for order operations
        max_retries: Retries for transient failures
        retry_delay: Initial retry delay in seconds
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        is_testnet: bool = True,
        client: Optional[UMFutures] = None,
        audit_logger: Optional[AuditLogger] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.is_testnet = is_testnet
        self.client = client or UMFutures(
            key=api_key,
            secret=api_secret,
            base_url=TESTNET_URL if is_testnet else MAINNET_URL,
            show_limit_usage=True,
        )
        self.audit_logger = audit_logger
        self.weight_tracker = RequestWeightTracker()
        self.logger = logging.getLogger(__name__)

        self._lot_size_cache: Dict[str, Dict[str, float]] = {}
        self._cache_timestamp: Optional[datetime] = None

        self._request = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=retry_delay,
            on_retry=self._audit_retry,
        )(self._raw_request)

    # ── Request plumbing ─────────────────────────────────────────

    def _raw_request(self, method_name: str, **params) -> Any:
        response = getattr(self.client, method_name)(**params)
        if isinstance(response, dict) and "data" in response and "limit_usage" in response:
            self.weight_tracker.update(response["limit_usage"])
            return response["data"]
        return response

    def _audit_retry(self, operation: str, attempt: int, exc: Exception, delay: float) -> None:
        if self.audit_logger:
            self.audit_logger.log_retry_attempt(operation, attempt, describe_error(exc), delay)

    def _audit(self, event_type: AuditEventType, operation: str, **fields) -> None:
        if self.audit_logger:
            self.audit_logger.log_event(event_type, operation=operation, **fields)

    async def _invoke(
        self,
        operation: str,
        method_name: str,
        error_cls: Type[ExchangeError] = ExchangeError,
        **params,
    ) -> Any:
        """Run one connector call in a worker thread and translate its errors."""
        # Order placement bypasses this gate so exits are never held back
        if not self.weight_tracker.check_limit():
            raise RateLimitError(
                f"{operation}: used request weight {self.weight_tracker.current_weight}"
                f"/{self.weight_tracker.weight_limit} near the limit, request deferred"
            )
        try:
            return await asyncio.to_thread(self._request, method_name, **params)
        except ClientError as e:
            if e.error_code == ERROR_RATE_LIMIT or e.status_code == 429:
                if self.audit_logger:
                    self.audit_logger.log_rate_limit(
                        operation, describe_error(e), self.weight_tracker.current_weight
                    )
                raise RateLimitError(
                    f"{operation}: rate limit exceeded ({e.error_message})",
                    error_code=e.error_code,
                    status_code=e.status_code,
                ) from e
            self._audit(
                AuditEventType.API_ERROR,
                operation,
                symbol=params.get("symbol"),
                error=describe_error(e),
            )
            if e.error_code == ERROR_AUTH:
                raise error_cls(
                    f"{operation}: API authentication failed ({e.error_message})",
                    error_code=e.error_code,
                    status_code=e.status_code,
                ) from e
            raise error_cls(
                f"{operation} failed: code={e.error_code}, msg={e.error_message}",
                error_code=e.error_code,
                status_code=e.status_code,
            ) from e
        except ServerError as e:
            self._audit(AuditEventType.API_ERROR, operation, error=describe_error(e))
            raise error_cls(
                f"{operation}: Binance server error ({e.message})",
                status_code=e.status_code,
            ) from e
        except requests.RequestException as e:
            raise error_cls(f"{operation}: network error ({e})") from e

    # ── ExchangeGateway ──────────────────────────────────────────

    async def test_connection(self) -> bool:
        try:
            await self._invoke("test_connection", "ping")
            await self._invoke("test_connection", "account")
        except ExchangeError as e:
            self.logger.error(f"Binance connection test failed: {e}")
            return False
        self.logger.info(
            f"Connected to Binance futures {'testnet' if self.is_testnet else 'mainnet'}"
        )
        return True

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        raw = await self._invoke(
            "get_candles", "klines", DataCollectionError,
            symbol=symbol, interval=interval, limit=limit,
        )
        candles = [parse_kline(k, symbol, interval) for k in raw]
        if candles:
            self.logger.debug(
                f"Retrieved {len(candles)} candles for {symbol} {interval} "
                f"({candles[0].open_time.isoformat()} to {candles[-1].open_time.isoformat()})"
            )
        else:
            self.logger.warning(f"No candles returned for {symbol} {interval} (limit={limit})")
        return candles

    async def get_current_price(self, symbol: str) -> float:
        data = await self._invoke("get_current_price", "ticker_price", DataCollectionError, symbol=symbol)
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise DataCollectionError(f"Invalid ticker response for {symbol}: {e}") from e

    async def get_balance(self, asset: str) -> float:
        account = await self._invoke("get_balance", "account")
        self._audit(AuditEventType.BALANCE_QUERY, "get_balance", additional_data={"asset": asset})
        try:
            for entry in account["assets"]:
                if entry.get("asset") == asset:
                    return float(entry["availableBalance"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeError(f"Failed to parse account data: {e}") from e

        self.logger.warning(f"{asset} not found in account assets, returning 0.0")
        return 0.0

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        purpose: Optional[OrderPurpose] = None,
    ) -> Order:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "type": OrderType.MARKET.value,
            "quantity": quantity,
            "newOrderRespType": "RESULT",
        }
        if purpose == OrderPurpose.EXIT:
            params["reduceOnly"] = "true"
        return await self._submit_order("place_market_order", params, purpose)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
    ) -> Order:
        params = {
            "symbol": symbol,
            "side": side.value,
            "type": OrderType.LIMIT.value,
            "timeInForce": "GTC",
            "quantity": quantity,
            "price": price,
        }
        return await self._submit_order("place_limit_order", params, None)

    async def _submit_order(
        self,
        operation: str,
        params: Dict[str, Any],
        purpose: Optional[OrderPurpose],
    ) -> Order:
        if params["quantity"] <= 0:
            raise ValidationError(f"Order quantity must be > 0, got {params['quantity']}")

        self.logger.info(
            f"Submitting {params['type']} {params['side']} {params['quantity']} {params['symbol']}"
            + (f" @ {params['price']}" if "price" in params else "")
        )
        try:
            # Not retried: a timed-out order may still have been accepted
            response = await asyncio.to_thread(self._raw_request, "new_order", **params)
        except ClientError as e:
            error = describe_error(e)
            if self.audit_logger:
                self.audit_logger.log_order_rejected(params["symbol"], params, error)
            self.logger.error(
                f"Order rejected by Binance: code={e.error_code}, msg={e.error_message}"
            )
            if e.error_code == ERROR_RATE_LIMIT or e.status_code == 429:
                exc_cls: Type[OrderExecutionError] = RateLimitError
            elif e.error_code in VALIDATION_ERROR_CODES:
                exc_cls = ValidationError
            else:
                exc_cls = OrderRejectedError
            raise exc_cls(
                f"Binance rejected order: {e.error_message}",
                error_code=e.error_code,
                status_code=e.status_code,
            ) from e
        except ServerError as e:
            self._audit(AuditEventType.API_ERROR, operation, symbol=params["symbol"],
                        order_data=params, error=describe_error(e))
            raise OrderExecutionError(
                f"Binance server error placing order: {e.message}",
                status_code=e.status_code,
            ) from e
        except requests.RequestException as e:
            raise OrderExecutionError(f"Network error placing order: {e}") from e

        order = parse_order(response, purpose)

        if self.audit_logger:
            self.audit_logger.log_order_placed(
                params["symbol"],
                params,
                {
                    "order_id": order.order_id,
                    "status": order.status.value,
                    "avg_price": order.avg_price,
                    "executed_qty": order.filled_quantity,
                },
            )
        self.logger.info(
            f"Order {order.order_id} {order.status.value}: "
            f"filled={order.filled_quantity} @ {order.avg_price}"
        )
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        try:
            await self._invoke(
                "cancel_order", "cancel_order", OrderExecutionError,
                symbol=symbol, orderId=order_id,
            )
        except OrderExecutionError as e:
            if e.error_code == ERROR_UNKNOWN_ORDER:
                self.logger.warning(f"Cancel ignored, unknown order {order_id} for {symbol}")
                return False
            raise
        self._audit(AuditEventType.ORDER_CANCELLED, "cancel_order", symbol=symbol,
                    additional_data={"order_id": order_id})
        self.logger.info(f"Order {order_id} cancelled for {symbol}")
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[Order]:
        try:
            data = await self._invoke(
                "get_order", "query_order", OrderExecutionError,
                symbol=symbol, orderId=order_id,
            )
        except OrderExecutionError as e:
            if e.error_code == ERROR_ORDER_NOT_FOUND:
                return None
            raise
        order = parse_order(data)
        self._audit(AuditEventType.ORDER_QUERY, "get_order", symbol=symbol,
                    response={"orderId": order.order_id, "status": order.status.value})
        return order

    async def get_open_orders(self, symbol: str) -> List[Order]:
        data = await self._invoke("get_open_orders", "get_orders", OrderExecutionError, symbol=symbol)
        return [parse_order(item) for item in data]

    async def calculate_order_quantity(
        self,
        symbol: str,
        notional: float,
        price: Optional[float] = None,
    ) -> float:
        if notional <= 0:
            raise ValidationError(f"Notional must be > 0, got {notional}")
        if price is None:
            price = await self.get_current_price(symbol)
        if price <= 0:
            raise ValidationError(f"Price must be > 0, got {price}")

        lot = await self._get_lot_size(symbol)
        quantity = floor_to_step(notional / price, lot["stepSize"])
        if quantity < lot["minQty"]:
            self.logger.warning(
                f"Quantity {quantity} for {notional} notional is below minQty "
                f"{lot['minQty']} for {symbol}"
            )
            return 0.0
        return quantity

    # ── Exchange info ────────────────────────────────────────────

    def _is_cache_expired(self) -> bool:
        if self._cache_timestamp is None:
            return True
        return datetime.now(timezone.utc) - self._cache_timestamp > EXCHANGE_INFO_TTL

    async def _refresh_exchange_info(self) -> None:
        self.logger.info("Fetching exchange information from Binance")
        info = await self._invoke("exchange_info", "exchange_info")
        parsed = 0
        try:
            for symbol_data in info["symbols"]:
                for f in symbol_data["filters"]:
                    if f["filterType"] == "LOT_SIZE":
                        self._lot_size_cache[symbol_data["symbol"]] = {
                            "stepSize": float(f["stepSize"]),
                            "minQty": float(f["minQty"]),
                        }
                        parsed += 1
                        break
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeError(f"Failed to parse exchange info: {e}") from e
        self._cache_timestamp = datetime.now(timezone.utc)
        self.logger.info(f"Exchange info cached: {parsed} symbols loaded")

    async def _get_lot_size(self, symbol: str) -> Dict[str, float]:
        if self._is_cache_expired():
            await self._refresh_exchange_info()

        if symbol in self._lot_size_cache:
            return self._lot_size_cache[symbol]

        self.logger.warning(
            f"Symbol {symbol} not found in exchange info. "
            f"Using default stepSize={DEFAULT_STEP_SIZE}"
        )
        return {"stepSize": DEFAULT_STEP_SIZE, "minQty": DEFAULT_STEP_SIZE}
