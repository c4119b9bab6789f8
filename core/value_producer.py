"""
Value producers for the oracle feeder.

Two interchangeable strategies, selected by deployment mode:

    LocalRandomProducer: uniform non-cryptographic integer below a fixed
        bound, drawn once per request.
    BeaconProducer: latest round of an external HTTP randomness
        beacon (drand-compatible JSON), fetched once per timer tick.
        Rounds only move forward; a failed or stale fetch skips the tick.

Usage:
    producer = LocalRandomProducer(bound=9_999_999_999_999)
    value = producer.next_value()

    beacon = BeaconProducer(beacon_url)
    latest = await beacon.next_round()   # (round, RandomnessRecord) or None
    await beacon.close()
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, cast

import aiohttp

from config.loader import get_config
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_BEACON_URL, DEFAULT_RANDOM_VALUE_BOUND
from shared.types import RandomnessRecord


class BeaconError(Exception):
    """Raised when the beacon cannot be reached or returns an unusable record."""


class LocalRandomProducer:
    """Uniform integers in ``[0, bound)`` from a non-cryptographic PRNG."""

    def __init__(
        self,
        bound: int = DEFAULT_RANDOM_VALUE_BOUND,
        rng: random.Random | None = None,
    ) -> None:
        if bound <= 0:
            raise ValueError(f"Random value bound must be positive, got {bound}")
        self.bound = bound
        self._rng = rng or random.Random()

    def next_value(self) -> int:
        return self._rng.randrange(self.bound)


class BeaconProducer:
    """
    Async client for an external randomness beacon.

    Tracks the last round handed out so that submitted rounds increase
    monotonically.  The aiohttp session is created lazily unless one is
    injected.
    """

    def __init__(
        self,
        beacon_url: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        cfg = get_config()
        beacon_cfg = cfg.get_oracle_config().get("beacon", {})
        timing_cfg = cfg.get_timing_config().get("beacon", {})

        self._url: str = beacon_url or beacon_cfg.get("url", DEFAULT_BEACON_URL)
        self._timeout: float = timing_cfg.get("request_timeout_seconds", 10)

        self._session = session
        self._owns_session = session is None
        self._last_round: int = 0

        self._logger = setup_module_logger(
            "value_producer", "value_producer.log", module_folder="Value_Producer_Logs"
        )

    @property
    def last_round(self) -> int:
        return self._last_round

    def seed_round(self, round_number: int) -> None:
        """Record a round already stored on chain; older rounds will be skipped."""
        if round_number > self._last_round:
            self._last_round = round_number
            self._logger.info("Beacon round seeded at %d", round_number)

    async def fetch_latest(self) -> tuple[int, RandomnessRecord]:
        """
        Fetch the beacon's latest output.

        Raises ``BeaconError`` on HTTP failure or malformed JSON.
        """
        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with session.get(self._url, timeout=timeout) as resp:
                resp.raise_for_status()
                data = cast(dict[str, Any], await resp.json(content_type=None))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise BeaconError(f"Beacon request to {self._url} failed: {exc}") from exc

        return self.parse_record(data)

    async def next_round(self) -> tuple[int, RandomnessRecord] | None:
        """
        Return the next unseen round, or None when the fetch fails or the
        beacon has not advanced past the last round handed out.
        """
        try:
            round_number, record = await self.fetch_latest()
        except BeaconError as exc:
            self._logger.error("Beacon tick skipped: %s", exc)
            return None

        if round_number <= self._last_round:
            self._logger.info(
                "Beacon tick skipped: round %d is not newer than %d",
                round_number,
                self._last_round,
            )
            return None

        self._last_round = round_number
        self._logger.info("New tick: round %d", round_number)
        return round_number, record

    async def close(self) -> None:
        """Close the underlying aiohttp session if this producer created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    @staticmethod
    def parse_record(data: dict[str, Any]) -> tuple[int, RandomnessRecord]:
        """
        Parse ``{round, randomness, signature, previous_signature}``.

        ``randomness`` is either one hex string, split into two equal
        halves, or a list of two hex strings.
        """
        try:
            round_number = int(data["round"])
            randomness = data["randomness"]
            if isinstance(randomness, str):
                seed = bytes.fromhex(randomness.removeprefix("0x"))
                half = len(seed) // 2
                pair = (seed[:half], seed[half:])
            else:
                first, second = randomness
                pair = (
                    bytes.fromhex(first.removeprefix("0x")),
                    bytes.fromhex(second.removeprefix("0x")),
                )
            signature = bytes.fromhex(data["signature"].removeprefix("0x"))
            prev_signature = bytes.fromhex(
                data.get("previous_signature", data.get("prevSignature", "")).removeprefix("0x")
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise BeaconError(f"Malformed beacon record: {exc}") from exc

        if round_number < 0:
            raise BeaconError(f"Malformed beacon record: negative round {round_number}")

        return round_number, RandomnessRecord(
            randomness=pair,
            signature=signature,
            prev_signature=prev_signature,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session
