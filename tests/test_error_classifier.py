"""Tests for mapping exchange/transport failures to the typed error taxonomy."""

from unittest.mock import Mock

import pytest
from requests.exceptions import ConnectionError

from core.error_classifier import ErrorClassifier
from core.exceptions import (
    ExchangeError,
    InsufficientMargin,
    NetworkError,
    OrderRejected,
    RateLimited,
    ResyncRequired,
    ValidationError,
)
from tests.helpers import http_error


@pytest.fixture
def clock():
    return Mock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def classifier(clock, sleeps):
    return ErrorClassifier(clock_sync=clock, rate_limit_cooldown=1.0, sleep=sleeps.append)


class TestDesync:

    def test_minus_1021_forces_one_resync(self, classifier, clock):
        """Test timestamp errors trigger exactly one clock resync."""
        error = classifier.classify(http_error(-1021, "Timestamp outside recvWindow"))

        assert isinstance(error, ResyncRequired)
        assert error.retryable is True
        assert clock.sync.call_count == 1

    def test_failed_resync_still_surfaces_resync_required(self, classifier, clock):
        """Test a failing resync is logged and the original error still returned."""
        clock.sync.side_effect = NetworkError("time request failed")

        error = classifier.classify(http_error(-1021, "Timestamp outside recvWindow"))

        assert isinstance(error, ResyncRequired)
        assert isinstance(error.__context__, NetworkError)

    def test_without_clock_returns_error_only(self):
        """Test classification works with no clock attached."""
        error = ErrorClassifier(clock_sync=None).classify(http_error(-1021, "late"))

        assert isinstance(error, ResyncRequired)


class TestRateLimit:

    @pytest.mark.parametrize("code,status", [(-1003, 400), (-429, 400), (None, 429), (None, 418)])
    def test_rate_limit_signals(self, classifier, sleeps, code, status):
        """Test rate-limit codes and statuses sleep one cooldown."""
        error = classifier.classify(http_error(code, "slow down", status=status))

        assert isinstance(error, RateLimited)
        assert error.retryable is True
        assert sleeps == [1.0]

    def test_records_rate_limit_metric(self, clock):
        """Test rate-limit hits reach metrics."""
        metrics = Mock()
        classifier = ErrorClassifier(clock_sync=clock, sleep=lambda s: None, metrics=metrics)

        classifier.classify(http_error(-1003, "Too many requests", status=429))

        metrics.record_rate_limited.assert_called_once()


class TestFatalCodes:

    def test_insufficient_margin(self, classifier):
        """Test -2019 maps to InsufficientMargin with the message verbatim."""
        error = classifier.classify(http_error(-2019, "Margin is insufficient."))

        assert isinstance(error, InsufficientMargin)
        assert error.retryable is False
        assert error.message == "Margin is insufficient."
        assert str(error) == "API Error: Margin is insufficient. (Code: -2019)"

    @pytest.mark.parametrize("code", [-4131, -2010, -2021])
    def test_order_rejections(self, classifier, code):
        """Test order rejection codes map to OrderRejected."""
        error = classifier.classify(http_error(code, "rejected"))

        assert isinstance(error, OrderRejected)
        assert error.code == code

    def test_unknown_code_is_generic(self, classifier, clock, sleeps):
        """Test other codes map to ExchangeError with no side effects."""
        error = classifier.classify(http_error(-4046, "No need to change margin type."))

        assert type(error) is ExchangeError
        assert clock.sync.call_count == 0
        assert sleeps == []


class TestNetwork:

    def test_connection_error(self, classifier):
        """Test exceptions without a response are NetworkErrors."""
        original = ConnectionError("refused")
        error = classifier.classify(original)

        assert isinstance(error, NetworkError)
        assert error.original is original

    def test_html_body_is_network_error(self, classifier):
        """Test unstructured error bodies are NetworkErrors carrying the status."""
        error = classifier.classify(http_error(None, status=502))

        assert isinstance(error, NetworkError)
        assert error.status == 502

    def test_trading_errors_pass_through(self, classifier):
        """Test already-typed errors are returned unchanged."""
        original = ValidationError("bad input")

        assert classifier.classify(original) is original
