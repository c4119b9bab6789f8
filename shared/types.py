"""
Shared data types for the oracle feeder.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FeederMode(Enum):
    REQUEST = "request"  # Local PRNG, driven by on-chain request events
    BEACON = "beacon"  # External beacon, driven by a fixed timer


# ---------------------------------------------------------------------------
# Request / value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PendingRequest:
    """An unresolved randomness request read from the oracle program."""

    id: int  # u64
    caller: bytes  # ledger address of the requesting program/user


@dataclass(frozen=True)
class RandomnessRecord:
    """One beacon output, as stored by the randomness oracle."""

    randomness: tuple[bytes, bytes]
    signature: bytes
    prev_signature: bytes


ResolvedValue = int | RandomnessRecord


# ---------------------------------------------------------------------------
# Outgoing actions (handle-input variants of the oracle program)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpdateValue:
    id: int
    value: int


@dataclass(frozen=True)
class SetRandomValue:
    round: int
    value: RandomnessRecord


OutgoingAction = UpdateValue | SetRandomValue


# ---------------------------------------------------------------------------
# Process-wide context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeederContext:
    """
    Read-only bundle built once at startup.

    Holds the node connection, the signing account, the program schema
    and the addressing needed by every component.
    """

    w3: Any  # AsyncWeb3
    account: Any  # eth_account LocalAccount
    schema: Any  # execution.payload_codec.ProgramSchema
    schema_path: str
    oracle_address: str
    chain_id: int
    mode: FeederMode
