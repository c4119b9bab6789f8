"""
Unit tests for core/feeder.py.

The oracle client, submitter, producers and listener are mocked; tests
verify backlog reconciliation, per-request dispatch, beacon ticks,
fire-and-forget failure isolation, the optional concurrency bound, and
the run loop of both modes.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from eth_account import Account

from execution.oracle_client import OracleClientError
from shared.types import (
    FeederContext,
    FeederMode,
    PendingRequest,
    RandomnessRecord,
    SetRandomValue,
    UpdateValue,
)

ORACLE = "0x" + "12" * 20
CALLER = b"\x01" * 32
SAMPLE_RECORD = RandomnessRecord(
    randomness=(b"\xaa" * 16, b"\xbb" * 16),
    signature=b"\xcc" * 48,
    prev_signature=b"\xdd" * 48,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _context(mode: FeederMode) -> FeederContext:
    return FeederContext(
        w3=MagicMock(),
        account=MagicMock(),
        schema=MagicMock(),
        schema_path="config/schemas/oracle.json",
        oracle_address=ORACLE,
        chain_id=1337,
        mode=mode,
    )


@pytest.fixture
def oracle_client():
    client = MagicMock()
    client.get_requests_queue = AsyncMock(return_value=[])
    client.get_last_round = AsyncMock(return_value=0)
    return client


@pytest.fixture
def tx_submitter():
    submitter = MagicMock()
    submitter.submit_update = AsyncMock(return_value=True)
    return submitter


@pytest.fixture
def local_producer():
    producer = MagicMock()
    producer.next_value = MagicMock(return_value=4242)
    return producer


@pytest.fixture
def beacon_producer():
    producer = MagicMock()
    producer.next_round = AsyncMock(return_value=(5, SAMPLE_RECORD))
    return producer


@pytest.fixture
def listener():
    instance = MagicMock()
    instance.run = AsyncMock(return_value=None)
    return instance


def _make_feeder(
    mode,
    oracle_client,
    tx_submitter,
    producer,
    listener=None,
    config_loader=None,
    beacon_interval=None,
):
    loader = config_loader or MagicMock()
    if config_loader is None:
        loader.get_oracle_config.return_value = {"max_concurrent_submissions": 0}
        loader.get_timing_config.return_value = {"beacon": {"interval_seconds": 30}}
    with (
        patch("core.feeder.get_config", return_value=loader),
        patch("core.feeder.setup_module_logger") as mock_logger,
    ):
        mock_logger.return_value = MagicMock()
        from core.feeder import OracleFeeder

        return OracleFeeder(
            _context(mode),
            oracle_client,
            tx_submitter,
            producer,
            listener=listener,
            beacon_interval=beacon_interval,
        )


@pytest.fixture
def request_feeder(oracle_client, tx_submitter, local_producer, listener):
    return _make_feeder(FeederMode.REQUEST, oracle_client, tx_submitter, local_producer, listener)


@pytest.fixture
def beacon_feeder(oracle_client, tx_submitter, beacon_producer):
    return _make_feeder(
        FeederMode.BEACON, oracle_client, tx_submitter, beacon_producer, beacon_interval=0.001
    )


# ---------------------------------------------------------------------------
# A. Backlog reconciliation
# ---------------------------------------------------------------------------


class TestReconcileBacklog:

    async def test_empty_backlog_submits_nothing(self, request_feeder, tx_submitter):
        tasks = await request_feeder.reconcile_backlog()

        assert tasks == []
        tx_submitter.submit_update.assert_not_called()
        request_feeder._logger.info.assert_any_call("[+] Reconciling %d pending requests", 0)

    async def test_one_submission_per_pending_request(
        self, request_feeder, oracle_client, tx_submitter
    ):
        oracle_client.get_requests_queue = AsyncMock(
            return_value=[PendingRequest(id=i, caller=CALLER) for i in (3, 1, 2)]
        )

        tasks = await request_feeder.reconcile_backlog()
        await asyncio.gather(*tasks)

        assert len(tasks) == 3
        submitted = [c.args[0] for c in tx_submitter.submit_update.await_args_list]
        assert sorted(a.id for a in submitted) == [1, 2, 3]
        assert all(isinstance(a, UpdateValue) and a.value == 4242 for a in submitted)
        request_feeder._logger.info.assert_any_call("[+] Reconciling %d pending requests", 3)

    async def test_query_failure_aborts_batch_only(self, request_feeder, oracle_client, tx_submitter):
        oracle_client.get_requests_queue = AsyncMock(side_effect=OracleClientError("node down"))

        tasks = await request_feeder.reconcile_backlog()

        assert tasks == []
        tx_submitter.submit_update.assert_not_called()
        request_feeder._logger.error.assert_called_once()

    async def test_snapshot_resolved_end_to_end(
        self, oracle_client, mock_w3, mock_config_loader, oracle_schema_path
    ):
        """Snapshot [{id: 7}] yields one signed UpdateValue(7, v) with v < 10**13."""
        from core.value_producer import LocalRandomProducer
        from execution.payload_codec import load_program_schema

        with (
            patch("execution.tx_submitter.get_config", return_value=mock_config_loader),
            patch("execution.tx_submitter.setup_module_logger"),
        ):
            from execution.tx_submitter import TxSubmitter

            submitter = TxSubmitter(
                mock_w3, Account.from_key("0x" + "ab" * 32), ORACLE, oracle_schema_path
            )

        oracle_client.get_requests_queue = AsyncMock(
            return_value=[PendingRequest(id=7, caller=CALLER)]
        )
        feeder = _make_feeder(
            FeederMode.REQUEST,
            oracle_client,
            submitter,
            LocalRandomProducer(),
            config_loader=mock_config_loader,
        )

        tasks = await feeder.reconcile_backlog()
        assert await asyncio.gather(*tasks) == [True]

        mock_w3.eth.send_raw_transaction.assert_awaited_once()
        signed_tx = mock_w3.eth.account.sign_transaction.call_args[0][0]
        action = load_program_schema(oracle_schema_path).decode_action(
            bytes.fromhex(signed_tx["data"][2:])
        )
        assert isinstance(action, UpdateValue)
        assert action.id == 7
        assert 0 <= action.value < 10**13

    async def test_one_failure_does_not_affect_others(
        self, request_feeder, oracle_client, tx_submitter
    ):
        oracle_client.get_requests_queue = AsyncMock(
            return_value=[PendingRequest(id=i, caller=CALLER) for i in range(4)]
        )
        tx_submitter.submit_update = AsyncMock(side_effect=[False, True, True, True])

        tasks = await request_feeder.reconcile_backlog()
        results = await asyncio.gather(*tasks)

        assert sorted(results) == [False, True, True, True]
        assert tx_submitter.submit_update.await_count == 4


# ---------------------------------------------------------------------------
# B. Live requests
# ---------------------------------------------------------------------------


class TestHandleRequest:

    async def test_dispatches_update_with_local_value(
        self, request_feeder, tx_submitter, local_producer
    ):
        task = request_feeder.handle_request(PendingRequest(id=7, caller=CALLER))
        assert await task is True

        tx_submitter.submit_update.assert_awaited_once_with(UpdateValue(id=7, value=4242))
        local_producer.next_value.assert_called_once()

    async def test_fresh_value_per_request(self, request_feeder, tx_submitter, local_producer):
        local_producer.next_value = MagicMock(side_effect=[10, 20])

        await request_feeder.handle_request(PendingRequest(id=1, caller=CALLER))
        await request_feeder.handle_request(PendingRequest(id=1, caller=CALLER))

        values = [c.args[0].value for c in tx_submitter.submit_update.await_args_list]
        assert values == [10, 20]

    async def test_in_flight_tracked_until_done(self, request_feeder, tx_submitter):
        release = asyncio.Event()

        async def slow_submit(action):
            await release.wait()
            return True

        tx_submitter.submit_update = slow_submit

        task = request_feeder.handle_request(PendingRequest(id=1, caller=CALLER))
        await asyncio.sleep(0)
        assert request_feeder.in_flight == 1

        release.set()
        await task
        await asyncio.sleep(0)
        assert request_feeder.in_flight == 0

    async def test_concurrency_bound(self, oracle_client, tx_submitter, local_producer, listener):
        loader = MagicMock()
        loader.get_oracle_config.return_value = {"max_concurrent_submissions": 2}
        loader.get_timing_config.return_value = {}
        feeder = _make_feeder(
            FeederMode.REQUEST,
            oracle_client,
            tx_submitter,
            local_producer,
            listener,
            config_loader=loader,
        )

        active = 0
        peak = 0

        async def tracked_submit(action):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            active -= 1
            return True

        tx_submitter.submit_update = tracked_submit

        tasks = [feeder.handle_request(PendingRequest(id=i, caller=CALLER)) for i in range(6)]
        await asyncio.gather(*tasks)

        assert peak == 2

    async def test_unbounded_by_default(self, request_feeder, tx_submitter):
        release = asyncio.Event()
        started = 0

        async def blocking_submit(action):
            nonlocal started
            started += 1
            await release.wait()
            return True

        tx_submitter.submit_update = blocking_submit

        tasks = [request_feeder.handle_request(PendingRequest(id=i, caller=CALLER)) for i in range(5)]
        await asyncio.sleep(0)

        assert started == 5
        release.set()
        await asyncio.gather(*tasks)


# ---------------------------------------------------------------------------
# C. Beacon ticks
# ---------------------------------------------------------------------------


class TestBeaconTick:

    async def test_tick_dispatches_latest_round(self, beacon_feeder, tx_submitter):
        task = await beacon_feeder.beacon_tick()
        assert task is not None
        await task

        tx_submitter.submit_update.assert_awaited_once_with(
            SetRandomValue(round=5, value=SAMPLE_RECORD)
        )

    async def test_skipped_tick_submits_nothing(self, beacon_feeder, beacon_producer, tx_submitter):
        beacon_producer.next_round = AsyncMock(return_value=None)

        assert await beacon_feeder.beacon_tick() is None
        tx_submitter.submit_update.assert_not_called()


# ---------------------------------------------------------------------------
# D. Run loop
# ---------------------------------------------------------------------------


class TestRunRequestMode:

    async def test_listener_runs_alongside_backlog_read(
        self, request_feeder, oracle_client, listener, tx_submitter
    ):
        """The snapshot read only completes once the listener is already running."""
        listening = asyncio.Event()

        async def listen(on_request):
            listening.set()
            on_request(PendingRequest(id=2, caller=CALLER))

        async def read_queue():
            await asyncio.wait_for(listening.wait(), timeout=1)
            return [PendingRequest(id=1, caller=CALLER)]

        oracle_client.get_requests_queue = AsyncMock(side_effect=read_queue)
        listener.run = AsyncMock(side_effect=listen)

        await request_feeder.run()
        await request_feeder.wait_in_flight()

        listener.run.assert_awaited_once_with(request_feeder.handle_request)
        ids = sorted(c.args[0].id for c in tx_submitter.submit_update.await_args_list)
        assert ids == [1, 2]

    async def test_unexpected_backlog_error_cancels_listener(
        self, request_feeder, oracle_client, listener
    ):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def listen(on_request):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def read_queue():
            await started.wait()
            raise RuntimeError("decoder bug")

        oracle_client.get_requests_queue = AsyncMock(side_effect=read_queue)
        listener.run = AsyncMock(side_effect=listen)

        with pytest.raises(RuntimeError, match="decoder bug"):
            await request_feeder.run()
        await asyncio.sleep(0)

        assert cancelled.is_set()

    async def test_listener_requests_are_dispatched(self, request_feeder, listener, tx_submitter):
        async def deliver(on_request):
            on_request(PendingRequest(id=11, caller=CALLER))
            on_request(PendingRequest(id=12, caller=CALLER))

        listener.run = deliver

        await request_feeder.run()
        await request_feeder.wait_in_flight()

        ids = sorted(c.args[0].id for c in tx_submitter.submit_update.await_args_list)
        assert ids == [11, 12]

    async def test_backlog_failure_keeps_listening(self, request_feeder, oracle_client, listener):
        oracle_client.get_requests_queue = AsyncMock(side_effect=OracleClientError("boom"))

        await request_feeder.run()

        listener.run.assert_awaited_once()

    async def test_requires_listener(self, oracle_client, tx_submitter, local_producer):
        feeder = _make_feeder(FeederMode.REQUEST, oracle_client, tx_submitter, local_producer)

        with pytest.raises(ValueError, match="listener"):
            await feeder.run()

    def test_stop_stops_listener(self, request_feeder, listener):
        request_feeder.stop()

        listener.stop.assert_called_once()


class TestRunBeaconMode:

    async def test_seeds_round_then_ticks(
        self, beacon_feeder, oracle_client, beacon_producer, tx_submitter
    ):
        oracle_client.get_last_round = AsyncMock(return_value=77)

        async def tick_once():
            beacon_feeder.stop()
            return (78, SAMPLE_RECORD)

        beacon_producer.next_round = AsyncMock(side_effect=tick_once)

        await asyncio.wait_for(beacon_feeder.run(), timeout=1)
        await beacon_feeder.wait_in_flight()

        beacon_producer.seed_round.assert_called_once_with(77)
        tx_submitter.submit_update.assert_awaited_once_with(
            SetRandomValue(round=78, value=SAMPLE_RECORD)
        )

    async def test_seed_failure_is_not_fatal(self, beacon_feeder, oracle_client, beacon_producer):
        oracle_client.get_last_round = AsyncMock(side_effect=OracleClientError("no state"))

        async def tick_once():
            beacon_feeder.stop()
            return None

        beacon_producer.next_round = AsyncMock(side_effect=tick_once)

        await asyncio.wait_for(beacon_feeder.run(), timeout=1)
        await beacon_feeder.wait_in_flight()

        beacon_producer.seed_round.assert_not_called()
        beacon_producer.next_round.assert_awaited()

    async def test_tick_error_does_not_stop_timer(
        self, beacon_feeder, beacon_producer, tx_submitter
    ):
        ticks = 0

        async def flaky_tick():
            nonlocal ticks
            ticks += 1
            if ticks == 1:
                raise RuntimeError("unexpected")
            beacon_feeder.stop()
            return (9, SAMPLE_RECORD)

        beacon_producer.next_round = AsyncMock(side_effect=flaky_tick)

        await asyncio.wait_for(beacon_feeder.run(), timeout=1)
        await beacon_feeder.wait_in_flight()

        assert ticks >= 2
        tx_submitter.submit_update.assert_awaited_with(SetRandomValue(round=9, value=SAMPLE_RECORD))
