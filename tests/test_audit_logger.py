"""
Unit tests for AuditLogger.
"""
import json
import pytest
from datetime import datetime
from pathlib import Path
from sideways_trader.core.audit_logger import AuditLogger, AuditEventType


class TestAuditLogger:
    """Test cases for AuditLogger class."""

    @pytest.fixture
    def audit_logger(self, tmp_path):
        """Create AuditLogger instance writing into a temp directory."""
        logger = AuditLogger(log_dir=str(tmp_path))
        yield logger
        logger.close()

    def read_entries(self, audit_logger):
        with open(audit_logger.log_file) as f:
            return [json.loads(line) for line in f]

    def test_audit_logger_initialization(self, tmp_path):
        """Log directory and daily file are created up front."""
        log_dir = tmp_path / "audit"
        logger = AuditLogger(log_dir=str(log_dir))

        assert Path(log_dir).exists()
        assert logger.log_file.exists()
        assert logger.log_file.name.startswith("audit_")
        assert logger.log_file.suffix == ".jsonl"
        logger.close()

    def test_log_event_basic(self, audit_logger):
        audit_logger.log_event(
            event_type=AuditEventType.ORDER_QUERY,
            operation="get_order",
            symbol="BTCUSDT"
        )

        log_entry = self.read_entries(audit_logger)[0]

        assert log_entry['event_type'] == 'order_query'
        assert log_entry['operation'] == 'get_order'
        assert log_entry['symbol'] == 'BTCUSDT'
        assert 'timestamp' in log_entry

    def test_log_order_placed(self, audit_logger):
        order_data = {
            'symbol': 'BTCUSDT',
            'side': 'BUY',
            'type': 'MARKET',
            'quantity': 0.0005
        }
        response = {
            'orderId': 123456,
            'status': 'FILLED',
            'avgPrice': '19050.0'
        }

        audit_logger.log_order_placed(
            symbol="BTCUSDT",
            order_data=order_data,
            response=response
        )

        log_entry = self.read_entries(audit_logger)[0]

        assert log_entry['event_type'] == 'order_placed'
        assert log_entry['operation'] == 'place_order'
        assert log_entry['order_data'] == order_data
        assert log_entry['response'] == response

    def test_log_order_rejected(self, audit_logger):
        order_data = {'symbol': 'BTCUSDT', 'side': 'SELL', 'quantity': 0.001, 'reduceOnly': 'true'}
        error = {
            'status_code': 400,
            'error_code': -2022,
            'error_message': 'ReduceOnly Order is rejected.'
        }

        audit_logger.log_order_rejected(
            symbol="BTCUSDT",
            order_data=order_data,
            error=error
        )

        log_entry = self.read_entries(audit_logger)[0]

        assert log_entry['event_type'] == 'order_rejected'
        assert log_entry['error'] == error

    def test_log_retry_attempt(self, audit_logger):
        error = {
            'status_code': 429,
            'error_code': -1003,
            'error_message': 'Too many requests'
        }

        audit_logger.log_retry_attempt(
            operation="_raw_request",
            attempt=2,
            error=error,
            delay=2.0
        )

        log_entry = self.read_entries(audit_logger)[0]

        assert log_entry['event_type'] == 'retry_attempt'
        assert log_entry['retry_attempt'] == 2
        assert log_entry['additional_data']['delay_seconds'] == 2.0

    def test_multiple_log_entries(self, audit_logger):
        audit_logger.log_event(AuditEventType.BALANCE_QUERY, operation="get_balance")
        audit_logger.log_event(AuditEventType.ORDER_CANCELLED, operation="cancel_order", symbol="BTCUSDT")
        audit_logger.log_event(AuditEventType.RATE_LIMIT, operation="klines")

        entries = self.read_entries(audit_logger)

        assert [e['event_type'] for e in entries] == ['balance_query', 'order_cancelled', 'rate_limit']

    def test_timestamp_format(self, audit_logger):
        audit_logger.log_event(
            event_type=AuditEventType.API_ERROR,
            operation="test"
        )

        timestamp_str = self.read_entries(audit_logger)[0]['timestamp']
        parsed = datetime.fromisoformat(timestamp_str)
        assert parsed.tzinfo is not None

    def test_optional_fields_omitted(self, audit_logger):
        audit_logger.log_event(
            event_type=AuditEventType.BALANCE_QUERY,
            operation="get_balance"
        )

        log_entry = self.read_entries(audit_logger)[0]

        assert set(log_entry) == {'timestamp', 'event_type', 'operation'}

    def test_non_json_values_are_stringified(self, audit_logger):
        audit_logger.log_event(
            AuditEventType.ORDER_PLACED,
            operation="place_order",
            additional_data={'sent_at': datetime(2026, 3, 2, 10, 30)}
        )

        log_entry = self.read_entries(audit_logger)[0]
        assert log_entry['additional_data']['sent_at'] == '2026-03-02 10:30:00'

    def test_audit_lines_stay_out_of_root_logger(self, audit_logger, caplog):
        audit_logger.log_event(AuditEventType.API_ERROR, operation="ping")

        assert 'ping' not in caplog.text

    def test_log_rate_limit(self, audit_logger):
        error = {'status_code': 429, 'error_code': -1003, 'error_message': 'Too many requests'}

        audit_logger.log_rate_limit("get_candles", error, used_weight=2390)

        log_entry = self.read_entries(audit_logger)[0]
        assert log_entry['event_type'] == 'rate_limit'
        assert log_entry['operation'] == 'get_candles'
        assert log_entry['additional_data'] == {'used_weight_1m': 2390}
