"""
Pytest configuration and fixtures for aster-futures-trader tests.

This conftest.py provides shared fixtures for all tests.
"""
from unittest.mock import Mock

import pytest

from core.exchange_aster import AsterExchange, SymbolInfo
from core.signing import ApiKeyCredentials, HmacSigner


@pytest.fixture
def hmac_signer():
    return HmacSigner(ApiKeyCredentials(api_key="test_key", api_secret="test_secret"))


@pytest.fixture
def sleeps():
    """Recorded sleep durations (stands in for time.sleep)."""
    return []


@pytest.fixture
def exchange(hmac_signer, sleeps):
    """AsterExchange with clock sync disabled and no real sleeping."""
    return AsterExchange(
        signer=hmac_signer,
        base_url="https://fapi.test",
        clock_sync_enabled=False,
        min_request_interval=0.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def symbol_info():
    return SymbolInfo(
        symbol="ADAUSDT",
        tick_size=0.0001,
        step_size=0.001,
        min_qty=0.001,
        max_qty=1000000.0,
    )


@pytest.fixture
def mock_exchange(symbol_info):
    """Mock exchange for order/reconcile/bot tests."""
    exchange = Mock(spec=AsterExchange)
    exchange.path.side_effect = lambda name: f"/fapi/v1/{name}"
    exchange.get_usdt_balance.return_value = 1000.0
    exchange.get_current_price.return_value = 100.0
    exchange.get_symbol_info.return_value = symbol_info
    exchange.get_open_positions.return_value = []
    exchange.get_trade_history.return_value = []
    return exchange
