"""
Oracle feeder orchestrator.

Wires the value producer, the state reader, the live request listener and
the update submitter together.  Two deployment modes:

    request: subscribe to request events and, alongside, reconcile the
        pending-request backlog once; every request gets a local random value.
    beacon: on a fixed cadence, push the latest beacon round to the
        randomness oracle.

Every submission is dispatched as an independent asyncio task and never
awaited by the trigger that produced it.

Usage:
    feeder = OracleFeeder(context, oracle_client, tx_submitter, producer, listener)
    asyncio.create_task(feeder.run())
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from config.loader import get_config
from execution.oracle_client import OracleClientError
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_BEACON_INTERVAL_SECONDS
from shared.types import (
    FeederContext,
    FeederMode,
    OutgoingAction,
    PendingRequest,
    SetRandomValue,
    UpdateValue,
)

if TYPE_CHECKING:
    from core.value_producer import BeaconProducer, LocalRandomProducer
    from data.event_listener import RequestEventListener
    from execution.oracle_client import OracleClient
    from execution.tx_submitter import TxSubmitter


class OracleFeeder:
    """
    Async driver for one oracle program.

    Holds no per-request state: the only bookkeeping is the set of
    submission tasks still in flight, kept so they are not garbage
    collected and can be awaited on shutdown.
    """

    def __init__(
        self,
        context: FeederContext,
        oracle_client: OracleClient,
        tx_submitter: TxSubmitter,
        producer: LocalRandomProducer | BeaconProducer,
        listener: RequestEventListener | None = None,
        beacon_interval: float | None = None,
    ) -> None:
        self._context = context
        self._mode = context.mode
        self._oracle_client = oracle_client
        self._tx_submitter = tx_submitter
        self._producer = producer
        self._listener = listener

        cfg = get_config()
        oracle_cfg = cfg.get_oracle_config()
        timing_cfg = cfg.get_timing_config().get("beacon", {})

        self._beacon_interval: float = beacon_interval or timing_cfg.get(
            "interval_seconds", DEFAULT_BEACON_INTERVAL_SECONDS
        )

        # 0 = unbounded
        limit: int = oracle_cfg.get("max_concurrent_submissions", 0)
        self._semaphore: asyncio.Semaphore | None = asyncio.Semaphore(limit) if limit > 0 else None

        self._in_flight: set[asyncio.Task[Any]] = set()
        self._running = False

        self._logger = setup_module_logger("feeder", "feeder.log", module_folder="Feeder_Logs")

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def reconcile_backlog(self) -> list[asyncio.Task[bool]]:
        """
        Resolve every request already pending in the program state.

        One submission per queue item, all dispatched at once.  A failed
        state read aborts this batch only.
        """
        try:
            backlog = await self._oracle_client.get_requests_queue()
        except OracleClientError as exc:
            self._logger.error("[-] Backlog reconciliation aborted: %s", exc)
            return []

        self._logger.info("[+] Reconciling %d pending requests", len(backlog))
        return [self.handle_request(request) for request in backlog]

    def handle_request(self, request: PendingRequest) -> asyncio.Task[bool]:
        """Draw a local value for one request and dispatch its update."""
        value = self._producer.next_value()  # type: ignore[union-attr]
        return self._dispatch(UpdateValue(id=request.id, value=value))

    async def beacon_tick(self) -> asyncio.Task[bool] | None:
        """Fetch the latest beacon round and dispatch it; None when skipped."""
        latest = await self._producer.next_round()  # type: ignore[union-attr]
        if latest is None:
            return None
        round_number, record = latest
        return self._dispatch(SetRandomValue(round=round_number, value=record))

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run the configured mode until stopped; designed to be launched as a Task."""
        self._running = True
        self._logger.info(
            "Oracle feeder started in %s mode for %s",
            self._mode.value,
            self._context.oracle_address,
        )
        try:
            if self._mode is FeederMode.REQUEST:
                await self._run_request_mode()
            else:
                await self._run_beacon_mode()
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the run loop (and the listener) to stop."""
        self._running = False
        if self._listener is not None:
            self._listener.stop()

    async def wait_in_flight(self) -> None:
        """Wait for every dispatched submission and tick to finish."""
        if self._in_flight:
            self._logger.info("Waiting for %d in-flight tasks", len(self._in_flight))
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _run_request_mode(self) -> None:
        if self._listener is None:
            raise ValueError("Request mode requires an event listener")

        # The subscription opens alongside the snapshot read so that a request
        # made in between is seen by at least one of them
        listen_task = asyncio.create_task(
            self._listener.run(self.handle_request), name="request_listener"
        )
        try:
            await self.reconcile_backlog()
            await listen_task
        finally:
            if not listen_task.done():
                listen_task.cancel()

    async def _run_beacon_mode(self) -> None:
        try:
            last_round = await self._oracle_client.get_last_round()
            self._producer.seed_round(last_round)  # type: ignore[union-attr]
        except OracleClientError as exc:
            self._logger.warning("Last stored round unavailable, starting fresh: %s", exc)

        # Fixed cadence: a slow fetch never delays the next tick
        while self._running:
            await asyncio.sleep(self._beacon_interval)
            if not self._running:
                break
            self._track(asyncio.create_task(self._guarded_tick(), name="beacon_tick"))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, action: OutgoingAction) -> asyncio.Task[bool]:
        task = asyncio.create_task(self._submit(action), name=f"submit:{type(action).__name__}")
        self._track(task)
        return task

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _submit(self, action: OutgoingAction) -> bool:
        if self._semaphore is None:
            return await self._tx_submitter.submit_update(action)
        async with self._semaphore:
            return await self._tx_submitter.submit_update(action)

    async def _guarded_tick(self) -> None:
        try:
            await self.beacon_tick()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("Beacon tick failed: %s", exc)
