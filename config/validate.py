"""
Configuration schema validation for the oracle feeder.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config
from shared.types import FeederMode


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    errors = _check_keys(config, ["feeder.mode", "logging.log_dir"], "app.json")
    if not errors:
        mode = config["feeder"]["mode"]
        if mode not in {m.value for m in FeederMode}:
            errors.append(f"feeder.mode: unknown mode '{mode}'")
    return errors


def validate_oracle_config(config: dict[str, Any]) -> list[str]:
    """Validate oracle.json has required fields."""
    errors = _check_keys(
        config,
        [
            "meta_path",
            "random_value_bound",
            "event_signature",
            "beacon.url",
        ],
        "oracle.json",
    )
    if not errors:
        bound = config["random_value_bound"]
        if not isinstance(bound, int) or isinstance(bound, bool) or bound <= 0:
            errors.append("random_value_bound: must be a positive integer")
        limit = config.get("max_concurrent_submissions", 0)
        if not isinstance(limit, int) or limit < 0:
            errors.append("max_concurrent_submissions: must be a non-negative integer")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    errors = _check_keys(
        config,
        [
            "beacon.interval_seconds",
            "transaction.receipt_poll_interval_seconds",
        ],
        "timing.json",
    )
    if not errors and config["beacon"]["interval_seconds"] <= 0:
        errors.append("beacon.interval_seconds: must be positive")
    return errors


def validate_websocket_config(config: dict[str, Any]) -> list[str]:
    """Validate websocket.json has required fields."""
    return _check_keys(
        config,
        [
            "connection.max_connection_attempts",
            "reconnection.base_delay_seconds",
            "reconnection.max_delay_seconds",
        ],
        "websocket.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "app.json": (loader.get_app_config, validate_app_config),
        "oracle.json": (loader.get_oracle_config, validate_oracle_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "websocket.json": (loader.get_websocket_config, validate_websocket_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))
