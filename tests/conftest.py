"""
Shared pytest configuration and fixtures for oracle feeder tests.

Provides standard configs, sample addresses and a mocked AsyncWeb3 used
across the unit test suite.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, PropertyMock

import pytest

from config.loader import get_config

# ---------------------------------------------------------------------------
# Sample values
# ---------------------------------------------------------------------------

SAMPLE_ORACLE_ADDRESS = "0x" + "12" * 20
SAMPLE_SIGNER_KEY = "0x" + "ab" * 32
SAMPLE_CALLER = bytes(range(32))
SAMPLE_TX_HASH = bytes.fromhex("cd" * 32)
SAMPLE_TX_HASH_HEX = "0x" + "cd" * 32

# 5 gwei base gas price
SAMPLE_GAS_PRICE = 5 * 10**9

SAMPLE_RECEIPT_SUCCESS = {
    "status": 1,
    "transactionHash": SAMPLE_TX_HASH,
    "gasUsed": 60000,
    "blockNumber": 12345,
}

SAMPLE_RECEIPT_FAILED = {
    "status": 0,
    "transactionHash": SAMPLE_TX_HASH,
    "gasUsed": 45000,
    "blockNumber": 12345,
}


# ---------------------------------------------------------------------------
# Standard mock configs (can be overridden per test)
# ---------------------------------------------------------------------------

STANDARD_ORACLE_CONFIG = {
    "oracle_address": SAMPLE_ORACLE_ADDRESS,
    "meta_path": "config/schemas/oracle.json",
    "random_value_bound": 9_999_999_999_999,
    "event_signature": "UserMessageSent(address,bytes)",
    "max_concurrent_submissions": 0,
    "beacon": {"url": "https://beacon.test/public/latest"},
}

STANDARD_TIMING_CONFIG = {
    "beacon": {"interval_seconds": 30, "request_timeout_seconds": 5},
    "transaction": {
        "confirmation_timeout_seconds": None,
        "receipt_poll_interval_seconds": 0,
    },
}

STANDARD_WEBSOCKET_CONFIG = {
    "connection": {
        "max_connection_attempts": 3,
        "ping_interval_seconds": 20,
        "ping_timeout_seconds": 30,
        "close_timeout_seconds": 10,
    },
    "timeouts": {"subscription_response_timeout_seconds": 1},
    "reconnection": {
        "base_delay_seconds": 0,
        "max_delay_seconds": 0,
        "jitter_max_seconds": 0,
    },
}


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_oracle_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_app_config.return_value = {
        "feeder": {"mode": "request"},
        "logging": {"log_dir": "logs"},
    }
    loader.get_oracle_config.return_value = {**STANDARD_ORACLE_CONFIG}
    loader.get_timing_config.return_value = {**STANDARD_TIMING_CONFIG}
    loader.get_websocket_config.return_value = {**STANDARD_WEBSOCKET_CONFIG}
    return loader


@pytest.fixture
def oracle_schema_path() -> str:
    """Absolute path of the bundled request-oracle interface description."""
    return get_config().get_schema_path("oracle")


@pytest.fixture
def randomness_schema_path() -> str:
    """Absolute path of the bundled randomness-oracle interface description."""
    return get_config().get_schema_path("randomness_oracle")


# ---------------------------------------------------------------------------
# AsyncWeb3 mock
# ---------------------------------------------------------------------------


async def _gas_price_coro():
    """Coroutine that returns sample gas price (used as property mock)."""
    return SAMPLE_GAS_PRICE


async def _chain_id_coro():
    return 1337


@pytest.fixture
def mock_w3():
    w3 = MagicMock()
    w3.eth = MagicMock()
    w3.eth.call = AsyncMock(return_value=b"")
    w3.eth.estimate_gas = AsyncMock(return_value=60000)
    # gas_price and chain_id are properties in web3 that return a coroutine
    type(w3.eth).gas_price = PropertyMock(side_effect=lambda: _gas_price_coro())
    type(w3.eth).chain_id = PropertyMock(side_effect=lambda: _chain_id_coro())
    w3.eth.get_transaction_count = AsyncMock(return_value=42)
    w3.eth.send_raw_transaction = AsyncMock(return_value=SAMPLE_TX_HASH)
    w3.eth.get_transaction_receipt = AsyncMock(return_value=SAMPLE_RECEIPT_SUCCESS)

    # Account signing
    signed_mock = MagicMock()
    signed_mock.raw_transaction = b"\x00" * 100
    w3.eth.account = MagicMock()
    w3.eth.account.sign_transaction = MagicMock(return_value=signed_mock)

    return w3
