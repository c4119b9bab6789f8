"""
Payload codec for oracle program messages.

Encodes outgoing handle actions and state queries, and decodes state
responses and raw request events, using the program's interface
description (a JSON type registry) as the serialization contract.

Wire format is SCALE: little-endian fixed-width integers, compact-prefixed
lengths for vectors/bytes/strings, a one-byte variant index for enums
(declaration order), fields in declaration order for structs and tuples.

Usage:
    schema = load_program_schema("config/schemas/oracle.json")
    schema.validate_action(UpdateValue)
    payload_hex = schema.encode_action_hex(UpdateValue(id=7, value=42))
    request = decode_new_request(raw_event_payload)
"""

from __future__ import annotations

import dataclasses
import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

from shared.constants import (
    NEW_REQUEST_DISCRIMINANT,
    REQUEST_CALLER_OFFSET,
    REQUEST_ID_OFFSET,
    REQUEST_ID_SIZE,
)
from shared.types import (
    OutgoingAction,
    PendingRequest,
    RandomnessRecord,
    SetRandomValue,
    UpdateValue,
)

_UINT_WIDTHS = {"u8": 1, "u16": 2, "u32": 4, "u64": 8, "u128": 16}
_BYTES_TYPES = ("Bytes", "Vec<u8>")
_STRING_TYPES = ("String", "Text")
_BYTE_ARRAY_RE = re.compile(r"\[\s*u8\s*;\s*(\d+)\s*\]")


class PayloadCodecError(Exception):
    """Raised when a value cannot be encoded or a payload cannot be decoded."""


class SchemaError(PayloadCodecError):
    """Raised when the interface description is missing, invalid, or incompatible."""


class MalformedEventError(PayloadCodecError):
    """Raised when a request-creation event payload is truncated."""


# ---------------------------------------------------------------------------
# Compact integers
# ---------------------------------------------------------------------------


def _encode_compact(n: int) -> bytes:
    if n < 0:
        raise PayloadCodecError(f"Compact length cannot be negative: {n}")
    if n < 1 << 6:
        return bytes([n << 2])
    if n < 1 << 14:
        return ((n << 2) | 0b01).to_bytes(2, "little")
    if n < 1 << 30:
        return ((n << 2) | 0b10).to_bytes(4, "little")
    size = (n.bit_length() + 7) // 8
    return bytes([((size - 4) << 2) | 0b11]) + n.to_bytes(size, "little")


def _decode_compact(data: bytes, offset: int) -> tuple[int, int]:
    _require(data, offset, 1)
    mode = data[offset] & 0b11
    if mode == 0b00:
        return data[offset] >> 2, offset + 1
    if mode == 0b01:
        _require(data, offset, 2)
        return int.from_bytes(data[offset : offset + 2], "little") >> 2, offset + 2
    if mode == 0b10:
        _require(data, offset, 4)
        return int.from_bytes(data[offset : offset + 4], "little") >> 2, offset + 4
    size = (data[offset] >> 2) + 4
    _require(data, offset + 1, size)
    return int.from_bytes(data[offset + 1 : offset + 1 + size], "little"), offset + 1 + size


def _require(data: bytes, offset: int, size: int) -> None:
    if offset + size > len(data):
        raise PayloadCodecError(
            f"Unexpected end of payload: need {size} bytes at offset {offset}, have {len(data)}"
        )


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str) and value.startswith("0x"):
        return bytes.fromhex(value[2:])
    raise PayloadCodecError(f"Expected bytes or 0x-hex string, got {type(value).__name__}")


def _split_top_level(inner: str) -> list[str]:
    """Split a comma-separated type list, ignoring commas inside brackets."""
    parts: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(inner):
        if ch in "<([":
            depth += 1
        elif ch in ">)]":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(inner[start:i].strip())
            start = i + 1
    tail = inner[start:].strip()
    if tail:
        parts.append(tail)
    return parts


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class ProgramSchema:
    """
    Typed encode/decode schema built from a program interface description.

    The description follows the polkadot.js type-registry convention:
    a ``types`` map whose values are either an alias string, an enum
    (``{"_enum": {Variant: null | type | {field: type}}}``) or a struct
    (``{field: type}``).  ``handle`` and ``state`` name the input/output
    types of the program's message handler and state query entry points.
    """

    def __init__(self, definition: dict[str, Any]) -> None:
        self.title: str = definition.get("title", "")
        self._types: dict[str, Any] = definition.get("types", {})

        handle = definition.get("handle", {})
        state = definition.get("state", {})
        self.handle_input: str = handle.get("input", "Action")
        self.handle_output: str = handle.get("output", "Event")
        self.state_input: str = state.get("input", "StateQuery")
        self.state_output: str = state.get("output", "StateResponse")

        if self.handle_input not in self._types:
            raise SchemaError(f"Interface description has no handle input type '{self.handle_input}'")

    @classmethod
    def from_file(cls, path: str | Path) -> ProgramSchema:
        """Load an interface description JSON file."""
        try:
            with open(path, "r") as f:
                definition = json.load(f)
        except FileNotFoundError as exc:
            raise SchemaError(f"Interface description not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise SchemaError(f"Invalid JSON in interface description {path}: {exc}") from exc
        if not isinstance(definition, dict):
            raise SchemaError(f"Interface description {path} must be a JSON object")
        return cls(definition)

    # ------------------------------------------------------------------
    # Generic encode / decode
    # ------------------------------------------------------------------

    def encode(self, type_expr: str, value: Any) -> bytes:
        out = bytearray()
        self._encode(type_expr, value, out)
        return bytes(out)

    def decode(self, type_expr: str, data: bytes) -> Any:
        """Decode ``data`` as ``type_expr``; trailing bytes are an error."""
        data = bytes(data)
        value, offset = self._decode(type_expr, data, 0)
        if offset != len(data):
            raise PayloadCodecError(
                f"{len(data) - offset} trailing bytes after decoding {type_expr}"
            )
        return value

    # ------------------------------------------------------------------
    # Handle actions
    # ------------------------------------------------------------------

    def validate_action(self, action_cls: type) -> None:
        """
        Check that the handle input enum declares ``action_cls`` as a
        struct variant with the same field names, in the same order.

        Raises ``SchemaError`` on mismatch.
        """
        variants = self._enum_variants(self.handle_input)
        variant = action_cls.__name__
        if variant not in variants:
            raise SchemaError(f"{self.handle_input} has no variant {variant}")

        expected = tuple(f.name for f in dataclasses.fields(action_cls))
        declared = variants[variant]
        if not isinstance(declared, dict) or tuple(declared) != expected:
            raise SchemaError(
                f"{self.handle_input}::{variant} fields {declared!r} do not match {expected!r}"
            )

    def encode_action(self, action: OutgoingAction) -> bytes:
        return self.encode(self.handle_input, _action_to_value(action))

    def encode_action_hex(self, action: OutgoingAction) -> str:
        return "0x" + self.encode_action(action).hex()

    def decode_action(self, data: bytes) -> OutgoingAction:
        decoded = self.decode(self.handle_input, data)
        return _value_to_action(decoded)

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def encode_state_query(self, query: str, arg: Any = None) -> bytes:
        value: Any = query if arg is None else {query: arg}
        return self.encode(self.state_input, value)

    def decode_state_response(self, data: bytes) -> tuple[str, Any]:
        """Decode a state response into ``(variant, payload)``."""
        decoded = self.decode(self.state_output, data)
        ((variant, payload),) = decoded.items()
        return variant, payload

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enum_variants(self, name: str) -> dict[str, Any]:
        definition = self._types.get(name)
        while isinstance(definition, str):
            definition = self._types.get(definition)
        if not isinstance(definition, dict) or "_enum" not in definition:
            raise SchemaError(f"Type {name} is not an enum")
        return definition["_enum"]

    def _encode(self, expr: str, value: Any, out: bytearray) -> None:
        expr = expr.strip()

        if expr in _UINT_WIDTHS:
            width = _UINT_WIDTHS[expr]
            if (
                not isinstance(value, int)
                or isinstance(value, bool)
                or value < 0
                or value >= 1 << (8 * width)
            ):
                raise PayloadCodecError(f"{value!r} does not fit {expr}")
            out += value.to_bytes(width, "little")
            return
        if expr == "bool":
            out.append(1 if value else 0)
            return
        if expr in _BYTES_TYPES:
            data = _as_bytes(value)
            out += _encode_compact(len(data))
            out += data
            return
        if expr in _STRING_TYPES:
            data = str(value).encode("utf-8")
            out += _encode_compact(len(data))
            out += data
            return

        array = _BYTE_ARRAY_RE.fullmatch(expr)
        if array:
            data = _as_bytes(value)
            size = int(array.group(1))
            if len(data) != size:
                raise PayloadCodecError(f"Expected {size} bytes for {expr}, got {len(data)}")
            out += data
            return
        if expr.startswith("Vec<") and expr.endswith(">"):
            items = list(value)
            out += _encode_compact(len(items))
            for item in items:
                self._encode(expr[4:-1], item, out)
            return
        if expr.startswith("Option<") and expr.endswith(">"):
            if value is None:
                out.append(0)
            else:
                out.append(1)
                self._encode(expr[7:-1], value, out)
            return
        if expr.startswith("(") and expr.endswith(")"):
            members = _split_top_level(expr[1:-1])
            values = list(value)
            if len(values) != len(members):
                raise PayloadCodecError(f"Expected {len(members)} values for {expr}")
            for member, item in zip(members, values):
                self._encode(member, item, out)
            return

        definition = self._types.get(expr)
        if definition is None:
            raise SchemaError(f"Unknown type: {expr}")
        if isinstance(definition, str):
            self._encode(definition, value, out)
        elif "_enum" in definition:
            self._encode_enum(expr, definition["_enum"], value, out)
        else:
            self._encode_fields(expr, definition, value, out)

    def _encode_enum(
        self, name: str, variants: dict[str, Any], value: Any, out: bytearray
    ) -> None:
        if isinstance(value, str):
            variant, payload = value, None
        elif isinstance(value, dict) and len(value) == 1:
            ((variant, payload),) = value.items()
        else:
            raise PayloadCodecError(f"Enum {name} value must be a variant name or single-key dict")

        if variant not in variants:
            raise PayloadCodecError(f"{name} has no variant {variant}")
        out.append(list(variants).index(variant))

        declared = variants[variant]
        if declared is None:
            return
        if isinstance(declared, dict):
            self._encode_fields(f"{name}::{variant}", declared, payload, out)
        else:
            self._encode(declared, payload, out)

    def _encode_fields(
        self, name: str, fields: dict[str, str], value: Any, out: bytearray
    ) -> None:
        if not isinstance(value, dict):
            raise PayloadCodecError(f"{name} value must be a dict of fields")
        for field, field_type in fields.items():
            if field not in value:
                raise PayloadCodecError(f"{name} is missing field '{field}'")
            self._encode(field_type, value[field], out)

    def _decode(self, expr: str, data: bytes, offset: int) -> tuple[Any, int]:
        expr = expr.strip()

        if expr in _UINT_WIDTHS:
            width = _UINT_WIDTHS[expr]
            _require(data, offset, width)
            return int.from_bytes(data[offset : offset + width], "little"), offset + width
        if expr == "bool":
            _require(data, offset, 1)
            if data[offset] > 1:
                raise PayloadCodecError(f"Invalid bool byte {data[offset]}")
            return data[offset] == 1, offset + 1
        if expr in _BYTES_TYPES or expr in _STRING_TYPES:
            length, offset = _decode_compact(data, offset)
            _require(data, offset, length)
            raw = data[offset : offset + length]
            if expr in _STRING_TYPES:
                return raw.decode("utf-8"), offset + length
            return raw, offset + length

        array = _BYTE_ARRAY_RE.fullmatch(expr)
        if array:
            size = int(array.group(1))
            _require(data, offset, size)
            return data[offset : offset + size], offset + size
        if expr.startswith("Vec<") and expr.endswith(">"):
            count, offset = _decode_compact(data, offset)
            items = []
            for _ in range(count):
                item, offset = self._decode(expr[4:-1], data, offset)
                items.append(item)
            return items, offset
        if expr.startswith("Option<") and expr.endswith(">"):
            _require(data, offset, 1)
            if data[offset] == 0:
                return None, offset + 1
            return self._decode(expr[7:-1], data, offset + 1)
        if expr.startswith("(") and expr.endswith(")"):
            members = []
            for member in _split_top_level(expr[1:-1]):
                item, offset = self._decode(member, data, offset)
                members.append(item)
            return tuple(members), offset

        definition = self._types.get(expr)
        if definition is None:
            raise SchemaError(f"Unknown type: {expr}")
        if isinstance(definition, str):
            return self._decode(definition, data, offset)
        if "_enum" in definition:
            variants = definition["_enum"]
            _require(data, offset, 1)
            index = data[offset]
            names = list(variants)
            if index >= len(names):
                raise PayloadCodecError(f"{expr} has no variant with index {index}")
            variant = names[index]
            declared = variants[variant]
            offset += 1
            if declared is None:
                return {variant: None}, offset
            if isinstance(declared, dict):
                payload, offset = self._decode_fields(declared, data, offset)
            else:
                payload, offset = self._decode(declared, data, offset)
            return {variant: payload}, offset
        return self._decode_fields(definition, data, offset)

    def _decode_fields(
        self, fields: dict[str, str], data: bytes, offset: int
    ) -> tuple[dict[str, Any], int]:
        result: dict[str, Any] = {}
        for field, field_type in fields.items():
            result[field], offset = self._decode(field_type, data, offset)
        return result, offset


@lru_cache(maxsize=8)
def load_program_schema(path: str) -> ProgramSchema:
    """Load and cache the interface description at ``path``."""
    return ProgramSchema.from_file(path)


# ---------------------------------------------------------------------------
# Action <-> schema value mapping
# ---------------------------------------------------------------------------


def _action_to_value(action: OutgoingAction) -> dict[str, Any]:
    if isinstance(action, UpdateValue):
        return {"UpdateValue": {"id": action.id, "value": action.value}}
    if isinstance(action, SetRandomValue):
        record = action.value
        return {
            "SetRandomValue": {
                "round": action.round,
                "value": {
                    "randomness": list(record.randomness),
                    "signature": record.signature,
                    "prev_signature": record.prev_signature,
                },
            }
        }
    raise PayloadCodecError(f"Unsupported action type: {type(action).__name__}")


def _value_to_action(decoded: dict[str, Any]) -> OutgoingAction:
    ((variant, payload),) = decoded.items()
    if variant == "UpdateValue":
        return UpdateValue(id=payload["id"], value=payload["value"])
    if variant == "SetRandomValue":
        value = payload["value"]
        return SetRandomValue(
            round=payload["round"],
            value=RandomnessRecord(
                randomness=(bytes(value["randomness"][0]), bytes(value["randomness"][1])),
                signature=bytes(value["signature"]),
                prev_signature=bytes(value["prev_signature"]),
            ),
        )
    raise PayloadCodecError(f"{variant} is not a feeder action")


# ---------------------------------------------------------------------------
# Human-readable form
# ---------------------------------------------------------------------------


def to_human(value: Any) -> Any:
    """
    Convert a decoded value to its human-readable form.

    Integers become decimal strings, byte strings become 0x-hex, tuples
    become lists.  Booleans, strings and None pass through.
    """
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {key: to_human(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_human(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Request-creation events
# ---------------------------------------------------------------------------


def decode_new_request(payload: bytes | bytearray | list[int]) -> PendingRequest | None:
    """
    Decode a raw event payload into a PendingRequest.

    Layout: byte 0 discriminant; bytes 1..16 the request id slot, whose low
    8 bytes hold the little-endian u64 id; bytes 17.. the caller address.

    Returns None when the discriminant is not the new-request tag (the
    rest of the payload is not inspected).  Raises ``MalformedEventError``
    for an empty payload or a new-request payload shorter than 17 bytes.
    """
    data = bytes(payload)
    if not data:
        raise MalformedEventError("Empty event payload")
    if data[0] != NEW_REQUEST_DISCRIMINANT:
        return None
    if len(data) < REQUEST_CALLER_OFFSET:
        raise MalformedEventError(
            f"New-request payload is {len(data)} bytes, expected at least {REQUEST_CALLER_OFFSET}"
        )

    id_bytes = data[REQUEST_ID_OFFSET : REQUEST_ID_OFFSET + REQUEST_ID_SIZE]
    return PendingRequest(
        id=int.from_bytes(id_bytes, "little"),
        caller=data[REQUEST_CALLER_OFFSET:],
    )
