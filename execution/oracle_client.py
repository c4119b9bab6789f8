"""
Oracle program client: thin state-read wrapper.

Reads the oracle program's state via ``eth_call`` with an encoded state
query and decodes the response with the program schema.  No transaction
submission here; that is handled by TxSubmitter.

Usage:
    client = OracleClient(w3, schema, oracle_address)
    backlog = await client.get_requests_queue()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3, Web3

from execution.payload_codec import PayloadCodecError, to_human
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import (
    STATE_QUERY_LAST_ROUND,
    STATE_QUERY_REQUESTS_QUEUE,
    STATE_RESPONSE_LAST_ROUND,
    STATE_RESPONSE_REQUESTS_QUEUE,
)
from shared.types import PendingRequest

if TYPE_CHECKING:
    from execution.payload_codec import ProgramSchema


class OracleClientError(Exception):
    """Raised when a program state query fails or returns an unexpected shape."""


class OracleClient:
    """
    Async state reader for the oracle program.

    Accepts an AsyncWeb3 instance via dependency injection so the same
    connection can be shared with the submitter.
    """

    def __init__(self, w3: AsyncWeb3, schema: ProgramSchema, oracle_address: str) -> None:
        self._w3 = w3
        self._schema = schema
        self._oracle_address = Web3.to_checksum_address(oracle_address)
        self._logger = setup_module_logger(
            "oracle_client", "oracle_client.log", module_folder="Oracle_Client_Logs"
        )

    # ------------------------------------------------------------------
    # Read operations (async, RPC calls)
    # ------------------------------------------------------------------

    async def read_state(self, query: str, arg: Any = None) -> dict[str, Any]:
        """
        Run a read-only state query and return the human-readable response,
        e.g. ``{"RequestsQueue": [["7", "0x..."]]}``.
        """
        try:
            data = self._schema.encode_state_query(query, arg)
            raw = await self._w3.eth.call({"to": self._oracle_address, "data": "0x" + data.hex()})
            variant, payload = self._schema.decode_state_response(bytes(raw))
        except PayloadCodecError as e:
            raise OracleClientError(f"{query}: cannot encode/decode state: {e}") from e
        except Exception as e:
            self._logger.error("State query %s failed: %s", query, e)
            raise OracleClientError(f"{query} failed: {e}") from e
        return {variant: to_human(payload)}

    async def get_requests_queue(self) -> list[PendingRequest]:
        """
        Read the pending-request queue in node order.

        Every id is parsed as a decimal integer; a single unparsable item
        fails the whole read.
        """
        state = await self.read_state(STATE_QUERY_REQUESTS_QUEUE)
        items = state.get(STATE_RESPONSE_REQUESTS_QUEUE)
        if not isinstance(items, list):
            raise OracleClientError(f"Unexpected response to {STATE_QUERY_REQUESTS_QUEUE}: {state}")

        requests: list[PendingRequest] = []
        for item in items:
            try:
                request_id, caller = item
                requests.append(
                    PendingRequest(id=int(request_id, 10), caller=bytes.fromhex(caller[2:]))
                )
            except (TypeError, ValueError) as e:
                raise OracleClientError(f"Invalid queue item {item!r}: {e}") from e

        self._logger.info("Requests queue: %d pending", len(requests))
        return requests

    async def get_last_round(self) -> int:
        """Read the last round stored by the randomness oracle."""
        state = await self.read_state(STATE_QUERY_LAST_ROUND)
        try:
            return int(state[STATE_RESPONSE_LAST_ROUND], 10)
        except (KeyError, TypeError, ValueError) as e:
            raise OracleClientError(f"Unexpected response to {STATE_QUERY_LAST_ROUND}: {state}") from e
