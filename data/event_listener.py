"""
Live request listener for the oracle feeder.

Purpose:
    Connect to the ledger node via WebSocket, subscribe to the generic
    "message sent" log category, keep only messages whose source is the
    oracle program, and decode request-creation payloads into
    PendingRequest objects.

Per-event handling (stateless, in delivery order):
    Idle → Filtering (source must be the oracle) → Decoding (ABI-unwrap the
    ``bytes`` payload, then decode the new-request layout) → emit one
    PendingRequest, or discard when the event is foreign, not a request,
    or malformed.

Usage:
    listener = RequestEventListener(ws_url, oracle_address)
    await listener.run(on_request)
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from typing import Any

import websockets
from eth_abi.abi import decode as abi_decode
from web3 import Web3

from config.loader import get_config
from execution.payload_codec import MalformedEventError, decode_new_request
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import USER_MESSAGE_SENT_SIGNATURE
from shared.types import PendingRequest


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value.removeprefix("0x"))
    raise ValueError(f"Cannot convert {type(value).__name__} to bytes")


def _addr_str(value: Any) -> str:
    """Normalize an address (hex string or bytes) to lowercase 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value).lower()


class RequestEventListener:
    """
    WebSocket subscriber that turns oracle request events into PendingRequests.

    Reconnects with exponential backoff and jitter when the connection
    drops; gives up after ``max_connection_attempts`` consecutive failures.
    """

    def __init__(
        self,
        ws_url: str,
        oracle_address: str,
        event_signature: str = USER_MESSAGE_SENT_SIGNATURE,
    ) -> None:
        self._ws_url = ws_url
        self._oracle_address = oracle_address.lower()
        self._event_topic = Web3.to_hex(Web3.keccak(text=event_signature))

        ws_cfg = get_config().get_websocket_config()
        conn_cfg = ws_cfg.get("connection", {})
        timeout_cfg = ws_cfg.get("timeouts", {})
        reconnect_cfg = ws_cfg.get("reconnection", {})

        self._max_connection_attempts: int = conn_cfg.get("max_connection_attempts", 10)
        self._ping_interval: float = conn_cfg.get("ping_interval_seconds", 20)
        self._ping_timeout: float = conn_cfg.get("ping_timeout_seconds", 30)
        self._close_timeout: float = conn_cfg.get("close_timeout_seconds", 10)
        self._subscription_timeout: float = timeout_cfg.get(
            "subscription_response_timeout_seconds", 15.0
        )
        self._reconnect_base_delay: float = reconnect_cfg.get("base_delay_seconds", 2)
        self._reconnect_max_delay: float = reconnect_cfg.get("max_delay_seconds", 60)
        self._jitter_max: float = reconnect_cfg.get("jitter_max_seconds", 1.0)

        self._running = False
        self._logger = setup_module_logger(
            "event_listener", "event_listener.log", module_folder="Event_Listener_Logs"
        )

    # ------------------------------------------------------------------
    # Per-event decoding
    # ------------------------------------------------------------------

    def handle_log(self, log_data: dict[str, Any]) -> PendingRequest | None:
        """
        Decode one raw log into a PendingRequest.

        Returns None for logs from other programs, other event categories,
        non-request payloads, and malformed payloads.
        """
        # Filtering
        source = _addr_str(log_data.get("address", ""))
        if source != self._oracle_address:
            return None

        try:
            topics = [_to_bytes(topic) for topic in log_data.get("topics", [])]
        except ValueError:
            return None
        if not topics or Web3.to_hex(topics[0]) != self._event_topic:
            return None

        # Decoding
        try:
            (payload,) = abi_decode(["bytes"], _to_bytes(log_data.get("data", "0x")))
            request = decode_new_request(payload)
        except MalformedEventError as exc:
            self._logger.debug("Discarding malformed request event from %s: %s", source, exc)
            return None
        except Exception as exc:
            self._logger.debug("Discarding undecodable message from %s: %s", source, exc)
            return None

        if request is None:
            return None

        # Indexed destination: address in the low 20 bytes of the topic
        destination = _addr_str(topics[1][-20:]) if len(topics) > 1 else "(unknown)"

        self._logger.info(
            "[+] New request! From: %s To: %s ID: %d Caller: 0x%s",
            source,
            destination,
            request.id,
            request.caller.hex(),
        )
        return request

    def build_subscription_params(self) -> dict[str, Any]:
        """
        Build the eth_subscribe JSON-RPC payload for the log subscription.

        Filters by event topic only; the oracle address is matched
        client-side in ``handle_log``.
        """
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"topics": [self._event_topic]}],
        }

    # ------------------------------------------------------------------
    # Subscription loop
    # ------------------------------------------------------------------

    async def run(self, on_request: Callable[[PendingRequest], None]) -> None:
        """
        Subscribe and feed every decoded request to ``on_request``, in
        delivery order, until stopped or reconnection attempts run out.
        """
        self._running = True
        retry_count = 0

        try:
            while self._running and retry_count < self._max_connection_attempts:
                try:
                    self._logger.info("Connecting to %s...", self._ws_url)
                    async with websockets.connect(
                        self._ws_url,
                        ping_interval=self._ping_interval,
                        ping_timeout=self._ping_timeout,
                        close_timeout=self._close_timeout,
                        max_size=10 * 1024 * 1024,
                    ) as ws:
                        await ws.send(json.dumps(self.build_subscription_params()))

                        response = json.loads(
                            await asyncio.wait_for(ws.recv(), timeout=self._subscription_timeout)
                        )
                        if "error" in response:
                            raise ConnectionError(f"Subscription error: {response['error']}")
                        self._logger.info("Subscribed. Subscription ID: %s", response.get("result"))
                        retry_count = 0

                        async for raw_message in ws:
                            if not self._running:
                                break
                            self._dispatch(raw_message, on_request)

                    if self._running:
                        self._logger.warning("Subscription stream ended, reconnecting")
                        retry_count += 1

                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    retry_count += 1
                    delay = min(
                        self._reconnect_base_delay * (2**retry_count)
                        + random.uniform(0, self._jitter_max),
                        self._reconnect_max_delay,
                    )
                    self._logger.warning(
                        "Connection error: %s. Retry %d/%d in %.1fs",
                        exc,
                        retry_count,
                        self._max_connection_attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._logger.info("Event listener cancelled")
            raise
        finally:
            self._running = False

        if retry_count >= self._max_connection_attempts:
            raise ConnectionError(
                f"Exhausted {self._max_connection_attempts} connection attempts to {self._ws_url}"
            )

    def stop(self) -> None:
        """Signal the run loop to stop."""
        self._running = False

    def _dispatch(
        self, raw_message: str | bytes, on_request: Callable[[PendingRequest], None]
    ) -> None:
        try:
            message = json.loads(raw_message)
        except json.JSONDecodeError as exc:
            self._logger.warning("Invalid JSON message: %s", exc)
            return

        # eth_subscribe notifications have method "eth_subscription"
        if not isinstance(message, dict) or message.get("method") != "eth_subscription":
            return
        params = message.get("params")
        log_data = params.get("result") if isinstance(params, dict) else None
        if not isinstance(log_data, dict):
            self._logger.debug("Discarded notification without a log object")
            return

        request = self.handle_log(log_data)
        if request is not None:
            on_request(request)
