"""
Audit trail of exchange operations in JSON Lines format.

One file per UTC day under ``logs/audit/``. Each line is a self-contained
JSON object, so the trail greps cleanly and loads with ``jq -s``.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class AuditEventType(Enum):
    ORDER_PLACED = "order_placed"
    ORDER_REJECTED = "order_rejected"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_QUERY = "order_query"
    BALANCE_QUERY = "balance_query"
    API_ERROR = "api_error"
    RETRY_ATTEMPT = "retry_attempt"
    RATE_LIMIT = "rate_limit"


class AuditLogger:
    """
    Writes what the live gateway sent to Binance and what came back.

    Example line:
        {"timestamp": "2026-03-02T10:30:45+00:00", "event_type": "order_placed",
         "operation": "place_order", "symbol": "BTCUSDT",
         "order_data": {"side": "SELL", "quantity": 0.0052, "reduceOnly": "true"},
         "response": {"orderId": 12345, "status": "FILLED"}}

    Lines go to a private logger that does not propagate, so audit records
    never show up in trading.log or on the console.
    """

    def __init__(self, log_dir: str = "logs/audit"):
        log_path = Path(log_dir)
        self.log_dir = log_path if log_path.is_absolute() else PROJECT_ROOT / log_path
        self.log_dir.mkdir(parents=True, exist_ok=True)

        day = datetime.now(timezone.utc).strftime('%Y%m%d')
        self.log_file = self.log_dir / f"audit_{day}.jsonl"

        self.logger = logging.getLogger(f"{__name__}.{id(self)}")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        self._handler = logging.FileHandler(self.log_file)
        self._handler.setFormatter(logging.Formatter('%(message)s'))
        self.logger.addHandler(self._handler)

    def log_event(
        self,
        event_type: AuditEventType,
        operation: str,
        symbol: Optional[str] = None,
        order_data: Optional[Dict[str, Any]] = None,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        retry_attempt: Optional[int] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write one audit line; fields left empty are omitted."""
        optional = {
            'symbol': symbol,
            'order_data': order_data,
            'response': response,
            'error': error,
            'additional_data': additional_data,
        }
        event: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event_type': event_type.value,
            'operation': operation,
        }
        event.update({key: value for key, value in optional.items() if value})
        if retry_attempt is not None:
            event['retry_attempt'] = retry_attempt

        self.logger.info(json.dumps(event, default=str))

    def log_order_placed(self, symbol: str, order_data: Dict[str, Any], response: Dict[str, Any]) -> None:
        self.log_event(AuditEventType.ORDER_PLACED, "place_order",
                       symbol=symbol, order_data=order_data, response=response)

    def log_order_rejected(self, symbol: str, order_data: Dict[str, Any], error: Dict[str, Any]) -> None:
        self.log_event(AuditEventType.ORDER_REJECTED, "place_order",
                       symbol=symbol, order_data=order_data, error=error)

    def log_retry_attempt(self, operation: str, attempt: int, error: Dict[str, Any], delay: float) -> None:
        self.log_event(AuditEventType.RETRY_ATTEMPT, operation, error=error,
                       retry_attempt=attempt, additional_data={'delay_seconds': delay})

    def log_rate_limit(self, operation: str, error: Dict[str, Any], used_weight: int) -> None:
        """Record a request refused by Binance for exceeding the weight budget."""
        self.log_event(AuditEventType.RATE_LIMIT, operation, error=error,
                       additional_data={'used_weight_1m': used_weight})

    def close(self) -> None:
        self.logger.removeHandler(self._handler)
        self._handler.close()
