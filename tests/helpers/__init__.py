"""Test helpers for aster-futures-trader tests."""

from tests.helpers.exchange_stubs import (
    TEST_PRIVATE_KEY,
    TEST_USER_ADDRESS,
    exchange_position,
    http_error,
    make_response,
    trade,
)

__all__ = [
    "TEST_PRIVATE_KEY",
    "TEST_USER_ADDRESS",
    "exchange_position",
    "http_error",
    "make_response",
    "trade",
]
