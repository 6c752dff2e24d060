"""
Tests for Punto Settlement monitoring (src/monitoring/).

Tests cover:
- Sensitive data redaction
- JSON and console log formatting
- Request context propagation
- Metrics collection and Prometheus export
- Metrics path normalization
"""

import json
import logging
import sys

import pytest

from monitoring.logging import (
    ConsoleFormatter,
    JSONFormatter,
    LoggingContext,
    clear_request_context,
    configure_logging,
    get_request_context,
    redact_sensitive_data,
    redact_string,
    set_request_context,
)
from monitoring.metrics import MetricsCollector
from monitoring.middleware import normalize_path

WALLET = "0x" + "ab" * 20
TX_HASH = "0x" + "cd" * 32


def make_record(msg, level=logging.INFO, args=(), **extra):
    record = logging.LogRecord("payout_processor", level, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clean_context():
    clear_request_context()
    yield
    clear_request_context()


class TestRedaction:
    """Tests for credential and wallet redaction."""

    def test_api_key_assignment(self):
        assert redact_string("api_key=abc123 sent") == "api_key=[REDACTED] sent"

    def test_bearer_token(self):
        assert redact_string("Authorization: Bearer eyJhbGci") == "Authorization: Bearer [REDACTED]"

    def test_dsn_password(self):
        text = "connecting to postgresql://punto:hunter2@db:5432/punto"
        assert redact_string(text) == "connecting to postgresql://punto:[REDACTED]@db:5432/punto"

    def test_wallet_shortened(self):
        assert redact_string(f"paid {WALLET}") == "paid 0xabab...abab"

    def test_transaction_hash_untouched(self):
        assert redact_string(f"receipt {TX_HASH}") == f"receipt {TX_HASH}"

    def test_non_string_passthrough(self):
        assert redact_string(42) == 42

    def test_redacts_dict_fields(self):
        data = {
            "api_key": "k",
            "X-API-Key": "k2",
            "nested": {"database_url": "postgresql://a:b@c/d", "amount": 5000},
            "wallets": [WALLET],
        }

        redacted = redact_sensitive_data(data)

        assert redacted["api_key"] == "[REDACTED]"
        assert redacted["X-API-Key"] == "[REDACTED]"
        assert redacted["nested"] == {"database_url": "[REDACTED]", "amount": 5000}
        assert redacted["wallets"] == ["0xabab...abab"]

    def test_max_depth(self):
        assert redact_sensitive_data({"a": {"b": 1}}, max_depth=0) == {"a": "[MAX_DEPTH_EXCEEDED]"}


class TestFormatters:
    """Tests for log formatters."""

    def test_json_formatter_fields(self):
        record = make_record("Paid %s", args=("pay_1",), payment_id="pay_1", amount=5000)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "payout_processor"
        assert entry["message"] == "Paid pay_1"
        assert entry["payment_id"] == "pay_1"
        assert entry["amount"] == 5000
        assert "location" not in entry

    def test_json_formatter_redacts(self):
        record = make_record(f"sending to {WALLET}", recipient=WALLET, api_key="secret-key")

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "sending to 0xabab...abab"
        assert entry["recipient"] == "0xabab...abab"
        assert entry["api_key"] == "[REDACTED]"

    def test_json_formatter_without_redaction(self):
        record = make_record(f"sending to {WALLET}")
        entry = json.loads(JSONFormatter(redact_sensitive=False).format(record))
        assert entry["message"] == f"sending to {WALLET}"

    def test_json_formatter_location_on_warning(self):
        entry = json.loads(JSONFormatter().format(make_record("careful", level=logging.WARNING)))
        assert entry["location"]["line"] == 10

    def test_json_formatter_exception(self):
        try:
            raise RuntimeError("node gone")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: node gone" in entry["exception"]

    def test_json_formatter_context(self):
        set_request_context(request_id="req-1", issue_id="iss_1")

        entry = json.loads(JSONFormatter().format(make_record("hello")))

        assert entry["context"] == {"request_id": "req-1", "issue_id": "iss_1"}

    def test_console_formatter(self):
        set_request_context(request_id="req-1")
        line = ConsoleFormatter().format(make_record("Queue empty", issue_id="iss_1"))

        assert "[payout_processor]" in line
        assert "Queue empty" in line
        assert "request_id=req-1" in line
        assert "issue_id=iss_1" in line

    def test_configure_logging(self, tmp_path):
        log_file = tmp_path / "punto.log"
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            configure_logging("debug", json_output=True, log_file=str(log_file))
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert len(root.handlers) == 2
            assert logging.getLogger("urllib3").level == logging.WARNING
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


class TestLoggingContext:
    """Tests for request context handling."""

    def test_set_and_clear(self):
        set_request_context(request_id="abc")
        set_request_context(method="GET")
        assert get_request_context() == {"request_id": "abc", "method": "GET"}

        clear_request_context()
        assert get_request_context() == {}

    def test_context_manager_restores(self):
        set_request_context(request_id="outer")

        with LoggingContext(issue_id="iss_1"):
            assert get_request_context() == {"request_id": "outer", "issue_id": "iss_1"}

        assert get_request_context() == {"request_id": "outer"}

    def test_context_manager_from_empty(self):
        with LoggingContext(run="payout"):
            assert get_request_context() == {"run": "payout"}
        assert get_request_context() == {}


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    @pytest.fixture
    def collector(self):
        return MetricsCollector()

    def test_counter(self, collector):
        collector.increment("payments_paid_total")
        collector.increment("payments_paid_total", 2)
        assert collector.get_counter("payments_paid_total") == 3

    def test_labelled_counter(self, collector):
        collector.increment("payouts_rejected_total", labels={"reason": "declined"})
        collector.increment("payouts_rejected_total", labels={"reason": "reverted"})
        collector.increment("payouts_rejected_total", labels={"reason": "declined"})

        assert collector.get_counter("payouts_rejected_total", labels={"reason": "declined"}) == 2
        assert collector.get_counter("payouts_rejected_total", labels={"reason": "reverted"}) == 1
        assert collector.get_counter("payouts_rejected_total") == 0

    def test_label_order_irrelevant(self, collector):
        collector.increment("http_requests_total", labels={"status": "200", "method": "GET"})
        assert collector.get_counter("http_requests_total", labels={"method": "GET", "status": "200"}) == 1

    def test_gauges(self, collector):
        collector.increment_gauge("http_requests_active")
        collector.increment_gauge("http_requests_active")
        collector.decrement_gauge("http_requests_active")
        assert collector.get_gauge("http_requests_active") == 1.0

        collector.set_gauge("http_requests_active", 7)
        assert collector.get_gauge("http_requests_active") == 7

    def test_timer(self, collector):
        with collector.timer("payout_confirmation_ms"):
            pass

        assert collector.get_histogram("payout_confirmation_ms").count == 1
        assert collector.get_histogram("payout_confirmation_ms", labels={"x": "y"}) is None

    def test_histogram_buckets(self, collector):
        collector.timing("payout_confirmation_ms", 20)
        collector.timing("payout_confirmation_ms", 4000)

        buckets = dict(collector.get_histogram("payout_confirmation_ms").cumulative())
        assert buckets["5"] == 0
        assert buckets["25"] == 1
        assert buckets["5000"] == 2
        assert buckets["+Inf"] == 2

    def test_prometheus_export(self, collector):
        collector.increment("submissions_created_total")
        collector.increment("submissions_reviewed_total", labels={"decision": "ACCEPTED"})
        collector.timing("payout_confirmation_ms", 1200)

        text = collector.to_prometheus()

        assert "# TYPE punto_uptime_seconds gauge" in text
        assert "# HELP punto_submissions_created_total Submissions received" in text
        assert "punto_submissions_created_total 1" in text
        assert 'punto_submissions_reviewed_total{decision="ACCEPTED"} 1' in text
        assert "# TYPE punto_payout_confirmation_ms histogram" in text
        assert 'punto_payout_confirmation_ms_bucket{le="+Inf"} 1' in text
        assert "punto_payout_confirmation_ms_count 1" in text

    def test_labelled_histogram_export(self, collector):
        collector.timing("http_request_duration_ms", 3, labels={"path": "/health", "method": "GET"})

        text = collector.to_prometheus()

        assert 'punto_http_request_duration_ms_bucket{method="GET",path="/health",le="5"} 1' in text
        assert 'punto_http_request_duration_ms_count{method="GET",path="/health"} 1' in text

    def test_reset(self, collector):
        collector.increment("payments_paid_total")
        collector.reset()
        assert collector.get_counter("payments_paid_total") == 0
        assert "payments_paid_total" not in collector.to_prometheus()


class TestNormalizePath:
    """Tests for metrics path normalization."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/health", "/health"),
            ("/", "/"),
            ("/submissions/sub_3f9a0c2e1b7d4a55/review", "/submissions/:id/review"),
            ("/issues/iss_0123456789abcdef/payouts/next", "/issues/:id/payouts/next"),
            (f"/payments/by-hash/{TX_HASH}", "/payments/by-hash/:id"),
            ("/attempts/42", "/attempts/:id"),
            ("/submissions/not-an-id", "/submissions/not-an-id"),
        ],
    )
    def test_normalize(self, path, expected):
        assert normalize_path(path) == expected
