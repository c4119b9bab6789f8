"""
Oracle Feeder: Main Entrypoint.

Single-process asyncio runner that keeps an on-chain oracle program
supplied with values.  One long-lived feeder task, in one of two modes:
    request: reconcile the pending-request backlog, then answer every
             new request event with a local random value
    beacon:  push the latest external beacon round on a fixed timer

Every submission is an independent task; failures are logged and never
retried.  Only startup failures (config, node connection, keystore,
schema) end the process, with exit status 1.

Usage:
    python main.py          # settings from config/*.json and .env
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

from dotenv import load_dotenv

from config.loader import get_config, get_env_var, resolve_project_path
from config.validate import ConfigValidationError, validate_all_configs
from feeder_logging.logger_manager import setup_module_logger
from shared.constants import (
    DEFAULT_ENDPOINT_URL,
    DEFAULT_ENDPOINT_WS_URL,
    DEFAULT_META_PATH,
    USER_MESSAGE_SENT_SIGNATURE,
)
from shared.types import FeederContext, FeederMode, SetRandomValue, UpdateValue

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


def _env(name: str, fallback: str) -> str:
    """Environment value, or ``fallback`` when unset or empty."""
    return os.getenv(name) or fallback


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(
    mode: FeederMode,
    rpc_url: str,
    oracle_address: str,
    meta_path: str,
    signer: str,
) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Oracle feeder starting")
    _logger.info("=" * 60)
    _logger.info("  mode            : %s", mode.value)
    _logger.info(
        "  rpc             : %s...%s", rpc_url[:25], rpc_url[-6:] if len(rpc_url) > 31 else ""
    )
    _logger.info("  oracle          : %s", oracle_address)
    _logger.info("  schema          : %s", meta_path)
    _logger.info("  signer          : %s", signer)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Task done callback: detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when the feeder task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
    else:
        _logger.info("Task %s finished", task.get_name())
    shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and launch the feeder task."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    cfg = get_config()
    app_cfg = cfg.get_app_config()
    oracle_cfg = cfg.get_oracle_config()

    # Environment variables (empty values fall back to config)
    rpc_url: str = _env("ENDPOINT_URL", DEFAULT_ENDPOINT_URL)
    ws_url: str = _env("ENDPOINT_WS_URL", DEFAULT_ENDPOINT_WS_URL)
    oracle_address: str = _env("ORACLE_ADDRESS", oracle_cfg.get("oracle_address", ""))
    keyring_path: str = _env("KEYRING_PATH", "")
    passphrase: str = os.getenv("KEYRING_PASSPHRASE", "")
    beacon_url: str | None = os.getenv("BEACON_URL") or None
    beacon_interval: float | None = get_env_var("BEACON_INTERVAL_SECONDS", None, float)
    mode_name: str = _env("FEEDER_MODE", app_cfg.get("feeder", {}).get("mode", "request"))

    try:
        mode = FeederMode(mode_name.lower())
    except ValueError:
        _logger.critical("Unknown FEEDER_MODE %r (expected request or beacon)", mode_name)
        sys.exit(1)

    from web3 import Web3

    if not oracle_address:
        _logger.critical("ORACLE_ADDRESS not set in environment or config/oracle.json")
        sys.exit(1)
    if not Web3.is_address(oracle_address):
        _logger.critical("ORACLE_ADDRESS %r is not a valid address", oracle_address)
        sys.exit(1)
    if not keyring_path:
        _logger.critical("KEYRING_PATH not set in environment")
        sys.exit(1)

    default_meta = (
        cfg.get_schema_path("randomness_oracle")
        if mode is FeederMode.BEACON
        else oracle_cfg.get("meta_path", DEFAULT_META_PATH)
    )
    meta_path = resolve_project_path(_env("ORACLE_META_PATH", default_meta))

    # ------------------------------------------------------------------
    # 2. Load identity and program schema
    # ------------------------------------------------------------------
    from execution.keyring import KeyringError, load_identity
    from execution.payload_codec import PayloadCodecError, load_program_schema

    try:
        account = load_identity(keyring_path, passphrase)
    except KeyringError as exc:
        _logger.critical("Cannot load signing identity: %s", exc)
        sys.exit(1)

    try:
        schema = load_program_schema(meta_path)
        schema.validate_action(SetRandomValue if mode is FeederMode.BEACON else UpdateValue)
    except PayloadCodecError as exc:
        _logger.critical("Invalid program schema %s: %s", meta_path, exc)
        sys.exit(1)

    _log_banner(mode, rpc_url, oracle_address, meta_path, account.address)

    # ------------------------------------------------------------------
    # 3. Initialize AsyncWeb3 provider (shared across all components)
    # ------------------------------------------------------------------
    from web3 import AsyncWeb3
    from web3.providers import AsyncHTTPProvider

    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    connected = await w3.is_connected()
    if not connected:
        _logger.critical("Cannot connect to node RPC at %s", rpc_url)
        sys.exit(1)
    chain_id = await w3.eth.chain_id
    client_version = await w3.client_version
    _logger.info("Connected to %s (chain %d) via %s", client_version, chain_id, rpc_url[:40])

    # ------------------------------------------------------------------
    # 4. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    from core.feeder import OracleFeeder
    from core.value_producer import BeaconProducer, LocalRandomProducer
    from data.event_listener import RequestEventListener
    from execution.oracle_client import OracleClient
    from execution.tx_submitter import TxSubmitter

    context = FeederContext(
        w3=w3,
        account=account,
        schema=schema,
        schema_path=meta_path,
        oracle_address=oracle_address,
        chain_id=chain_id,
        mode=mode,
    )

    oracle_client = OracleClient(w3, schema, oracle_address)
    tx_submitter = TxSubmitter(w3, account, oracle_address, meta_path, chain_id=chain_id)

    listener: RequestEventListener | None = None
    beacon: BeaconProducer | None = None
    producer: LocalRandomProducer | BeaconProducer
    if mode is FeederMode.BEACON:
        beacon = BeaconProducer(beacon_url)
        producer = beacon
    else:
        producer = LocalRandomProducer(oracle_cfg.get("random_value_bound"))
        listener = RequestEventListener(
            ws_url,
            oracle_address,
            oracle_cfg.get("event_signature", USER_MESSAGE_SENT_SIGNATURE),
        )

    feeder = OracleFeeder(
        context,
        oracle_client,
        tx_submitter,
        producer,
        listener=listener,
        beacon_interval=beacon_interval,
    )

    # ------------------------------------------------------------------
    # 5. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 6. Launch the feeder task
    # ------------------------------------------------------------------
    task_feeder = asyncio.create_task(feeder.run(), name=f"feeder_{mode.value}")
    task_feeder.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("Feeder task launched (%s mode)", mode.value)

    # ------------------------------------------------------------------
    # 7. Wait for shutdown signal, then cancel tasks
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, cancelling tasks")

        feeder.stop()
        if not task_feeder.done():
            task_feeder.cancel()

        results = await asyncio.gather(task_feeder, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", task_feeder.get_name(), result)

        # In-flight submissions get a grace period, then are cancelled
        grace = cfg.get_timing_config().get("shutdown", {}).get("grace_seconds", 10)
        try:
            await asyncio.wait_for(feeder.wait_in_flight(), timeout=grace)
        except asyncio.TimeoutError:
            _logger.warning("In-flight submissions still pending after %ss, abandoned", grace)

        # Cleanup resources
        if beacon is not None:
            await beacon.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
