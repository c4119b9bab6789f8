"""
Update submission layer for the oracle feeder.

Encodes an oracle action, estimates gas for it, signs and broadcasts the
transaction, and waits for its receipt.  ``submit_update`` is the
fire-and-forget entry point: every failure is logged and swallowed, and
nothing is ever retried.

Usage:
    submitter = TxSubmitter(w3, account, oracle_address, schema_path)
    ok = await submitter.submit_update(UpdateValue(id=7, value=42))
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, cast

from eth_typing import HexStr
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxParams

from config.loader import get_config
from execution.payload_codec import load_program_schema
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import GAS_PRICE_BUFFER
from shared.types import OutgoingAction, SetRandomValue, UpdateValue

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

# Error(string) function selector: first 4 bytes of keccak256("Error(string)")
_ERROR_SELECTOR = bytes.fromhex("08c379a0")


class TxSubmitterError(Exception):
    """Base error for transaction submission failures."""


class GasEstimationError(TxSubmitterError):
    """Raised when the node cannot estimate gas for the update call."""


class TxRevertedError(TxSubmitterError):
    """Raised when a confirmed transaction has status=0 (reverted)."""


class TxTimeoutError(TxSubmitterError):
    """Raised when a transaction is not confirmed within the timeout."""


def describe_action(action: OutgoingAction) -> str:
    """Short human-readable form of an action for log lines."""
    if isinstance(action, UpdateValue):
        return f"UpdateValue({action.id}, {action.value})"
    if isinstance(action, SetRandomValue):
        seed = b"".join(action.value.randomness).hex()
        return f"SetRandomValue({action.round}, 0x{seed[:16]}...)"
    return repr(action)


class TxSubmitter:
    """
    Oracle update submitter with local nonce management.

    The signing account and schema path are fixed at construction; each
    ``submit_update`` call builds its own payload and transaction.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        oracle_address: str,
        schema_path: str,
        chain_id: int | None = None,
    ) -> None:
        self._w3 = w3
        self._account = account
        self._sender = Web3.to_checksum_address(account.address)
        self._oracle_address = Web3.to_checksum_address(oracle_address)
        self._schema_path = schema_path
        self._chain_id = chain_id

        cfg = get_config()
        tx_timing = cfg.get_timing_config().get("transaction", {})

        # Timing (None = wait for the receipt indefinitely)
        self._confirmation_timeout: float | None = tx_timing.get("confirmation_timeout_seconds")
        self._receipt_poll_interval: float = tx_timing.get("receipt_poll_interval_seconds", 1)

        # Gas
        self._gas_price_buffer: float = GAS_PRICE_BUFFER

        # Nonce state
        self._nonce: int | None = None
        self._nonce_lock = asyncio.Lock()

        self._logger = setup_module_logger(
            "tx_submitter", "tx_submitter.log", module_folder="TX_Submitter_Logs"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_update(self, action: OutgoingAction) -> bool:
        """
        Full update flow: schema → encode → estimate gas → build → sign and
        send → wait for receipt.

        Never raises.  Returns True when the receipt reports success and
        False (after logging) on any failure.
        """
        try:
            schema = load_program_schema(self._schema_path)
            payload = schema.encode_action_hex(action)
            gas_limit = await self.estimate_gas(payload)
            tx = {
                "to": self._oracle_address,
                "data": payload,
                "gas": gas_limit,
                "value": 0,
            }
            tx_hash = await self.submit(tx)
            await self.wait_for_receipt(tx_hash)
        except Exception as exc:
            self._logger.error("[-] Failed to send tx: %s: %s", describe_action(action), exc)
            return False

        self._logger.info("[+] %s", describe_action(action))
        return True

    async def estimate_gas(self, payload_hex: str) -> int:
        """
        Ask the node for the gas needed by the update call, sent from the
        signer with zero value.

        Raises ``GasEstimationError`` on failure.
        """
        call = {
            "from": self._sender,
            "to": self._oracle_address,
            "data": payload_hex,
            "value": 0,
        }
        try:
            gas = await self._w3.eth.estimate_gas(cast(TxParams, call))
        except Exception as exc:
            data = getattr(exc, "data", None)
            if isinstance(data, (bytes, str)) and data:
                reason = self.decode_revert_reason(data)
            else:
                reason = str(exc)
            raise GasEstimationError(f"Gas estimation failed: {reason}") from exc

        self._logger.debug("Estimated gas: %d", gas)
        return int(gas)

    async def submit(self, tx: dict[str, Any]) -> str:
        """
        Sign and broadcast a transaction.

        Assigns nonce, chain ID, and gas price automatically.
        Returns the transaction hash as a hex string.

        Nonce assignment, signing and broadcast run under the nonce lock,
        so the counter only advances past nonces the node accepted.
        """
        max_fee, priority_fee = await self.get_gas_price()
        chain_id = await self._get_chain_id()

        async with self._nonce_lock:
            nonce = await self._current_nonce()
            tx = {
                **tx,
                "chainId": chain_id,
                "nonce": nonce,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": priority_fee,
                "type": 2,  # EIP-1559
            }

            try:
                signed = self._w3.eth.account.sign_transaction(tx, self._account.key)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception:
                # The assigned nonce was never used on chain
                await self._resync_nonce()
                raise

            self._nonce = nonce + 1

        tx_hash_hex = Web3.to_hex(tx_hash)
        self._logger.info(
            "TX submitted: hash=%s nonce=%d gas=%d maxFee=%d",
            tx_hash_hex,
            nonce,
            tx.get("gas", 0),
            max_fee,
        )
        return tx_hash_hex

    async def wait_for_receipt(
        self, tx_hash: str, timeout: float | None = None
    ) -> dict[str, Any]:
        """
        Poll for the transaction receipt.

        Raises ``TxRevertedError`` if status=0, ``TxTimeoutError`` when a
        timeout is configured and exceeded.
        """
        if timeout is None:
            timeout = self._confirmation_timeout

        start = time.monotonic()

        while True:
            try:
                receipt = await self._w3.eth.get_transaction_receipt(cast(HexStr, tx_hash))
            except TransactionNotFound:
                receipt = None

            if receipt is not None:
                if receipt.get("status") == 1:
                    self._logger.debug(
                        "TX confirmed: hash=%s gasUsed=%s",
                        tx_hash,
                        receipt.get("gasUsed"),
                    )
                    return dict(receipt)

                # status == 0 → reverted on-chain
                raise TxRevertedError(f"TX reverted on-chain: {tx_hash}")

            if timeout is not None and time.monotonic() - start >= timeout:
                raise TxTimeoutError(f"TX {tx_hash} not confirmed after {timeout}s")

            await asyncio.sleep(self._receipt_poll_interval)

    async def get_gas_price(self) -> tuple[int, int]:
        """
        Get current gas price as (maxFeePerGas, maxPriorityFeePerGas) in Wei.

        Applies a 10% buffer to the base gas price.
        """
        base_price = await self._w3.eth.gas_price
        max_fee = int(base_price * self._gas_price_buffer)
        priority_fee = max(int(base_price * 0.1), 1)
        max_fee = max(max_fee, priority_fee)
        return max_fee, priority_fee

    # ------------------------------------------------------------------
    # Chain / nonce management
    # ------------------------------------------------------------------

    async def _get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._w3.eth.chain_id
        return self._chain_id

    async def _current_nonce(self) -> int:
        """Next unused nonce.  Caller must hold ``_nonce_lock``."""
        if self._nonce is None:
            self._nonce = await self._w3.eth.get_transaction_count(self._sender, "pending")
            self._logger.info("Nonce initialized from chain: %d", self._nonce)
        return self._nonce

    async def _resync_nonce(self) -> None:
        """Re-sync local nonce counter from chain.  Caller must hold the lock."""
        pending = await self._w3.eth.get_transaction_count(self._sender, "pending")
        old_nonce = self._nonce
        self._nonce = pending
        self._logger.warning("Nonce recovered: local=%s pending=%d", old_nonce, pending)

    # ------------------------------------------------------------------
    # Revert decoding
    # ------------------------------------------------------------------

    @staticmethod
    def decode_revert_reason(data: bytes | str) -> str:
        """
        Decode a revert reason from raw data.

        Handles ``Error(string)`` selector (0x08c379a0).
        Returns "Unknown revert" for empty data and the input text for
        strings that are not hex.
        """
        if not data:
            return "Unknown revert"

        if isinstance(data, str):
            try:
                data = bytes.fromhex(data.removeprefix("0x"))
            except ValueError:
                return data

        if len(data) < 4:
            return data.hex()

        if data[:4] == _ERROR_SELECTOR and len(data) >= 68:
            # ABI-encoded Error(string): selector(4) + offset(32) + length(32) + data
            str_len = int.from_bytes(data[36:68], "big")
            return data[68 : 68 + str_len].decode("utf-8", errors="replace")

        return data.hex()
