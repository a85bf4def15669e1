"""
Big-integer preserving codec for snapshot documents

Market payloads carry integers that exceed what JSON consumers can represent
exactly (on-chain reserves, cumulative funding rates, oracle prices in native
precision). Before a document is written it is encoded so that each such value
becomes a tagged pair:

    {"kind": "bigint", "digits": "-123456789012345678901234567890"}

Decoding reverses the transform and yields BigInt instances with the exact
original magnitude and sign.

Encoding rules:
- BigInt instances are always tagged
- plain ints are tagged when their magnitude exceeds the safe integer limit
- mappings and sequences are traversed recursively (tuples become lists)
- pydantic models, dataclasses and plain objects are encoded as mappings of
  their public fields
- a property that fails to convert is replaced by a diagnostic string and the
  rest of the object is still encoded
- repeated visits to the same container within one call return the same
  result object, so cycles terminate and shared references stay shared
"""

import dataclasses
import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel

from market_snapshot_service.errors import CodecError
from market_snapshot_service.metrics import codec_fallbacks_total

logger = structlog.get_logger(__name__)

BIGINT_KIND = "bigint"
KIND_FIELD = "kind"
DIGITS_FIELD = "digits"

# Largest integer a double-precision JSON consumer represents exactly
MAX_SAFE_INTEGER = 2**53 - 1

_DIGITS_PATTERN = re.compile(r"[+-]?[0-9]+")

# Python refuses int<->str conversions above ~4300 digits; larger values are
# converted in fixed-size decimal chunks instead.
_CHUNK_DIGITS = 1000
_CHUNK_BASE = 10 ** _CHUNK_DIGITS
_DIRECT_CONVERSION_BITS = 3000


def _identity(value: Any) -> Any:
    return value


class BigInt(int):
    """Integer that is always stored in tagged bigint form."""

    __slots__ = ()


class ValueKind(Enum):
    """Tagged variant of a payload node at the codec boundary"""
    SCALAR = "scalar"
    BIGINT = "bigint"
    ARRAY = "array"
    MAP = "map"


def is_encoded_bigint(value: Any) -> bool:
    """Check whether a value carries the bigint tag; its digits may still be malformed."""
    return isinstance(value, Mapping) and value.get(KIND_FIELD) == BIGINT_KIND


def int_to_digits(value: int) -> str:
    """Base-10 representation of an integer of any size."""
    if value.bit_length() < _DIRECT_CONVERSION_BITS:
        return str(int(value))

    sign = "-" if value < 0 else ""
    remaining = abs(int(value))
    chunks: List[int] = []
    while remaining:
        remaining, chunk = divmod(remaining, _CHUNK_BASE)
        chunks.append(chunk)

    head = str(chunks[-1])
    tail = "".join(f"{chunk:0{_CHUNK_DIGITS}d}" for chunk in reversed(chunks[:-1]))
    return f"{sign}{head}{tail}"


def digits_to_int(digits: str) -> int:
    """Parse a sign-prefixed base-10 string of any length.

    Raises:
        ValueError: if the string is not an optionally signed run of digits
    """
    if not isinstance(digits, str) or not _DIGITS_PATTERN.fullmatch(digits):
        raise ValueError(f"Invalid bigint digits: {digits!r}")

    negative = digits.startswith("-")
    body = digits.lstrip("+-")
    if len(body) <= _CHUNK_DIGITS:
        magnitude = int(body)
    else:
        magnitude = 0
        for start in range(0, len(body), _CHUNK_DIGITS):
            chunk = body[start:start + _CHUNK_DIGITS]
            magnitude = magnitude * 10 ** len(chunk) + int(chunk)

    return -magnitude if negative else magnitude


def format_with_decimals(value: int, decimals: int = 0) -> str:
    """
    Render an integer stored in native precision as a decimal string

    Example:
        format_with_decimals(-1234567, 6) -> "-1.234567"
    """
    if value is None:
        return "0"

    digits = int_to_digits(value)
    if decimals <= 0:
        return digits

    negative = digits.startswith("-")
    magnitude = digits.lstrip("-").rjust(decimals + 1, "0")
    formatted = f"{magnitude[:-decimals]}.{magnitude[-decimals:]}"
    return f"-{formatted}" if negative else formatted


class Codec:
    """
    Bidirectional transform between in-memory payloads and storage form

    Args:
        safe_integer_limit: Plain ints with a larger magnitude are tagged
        strict: Raise CodecError on malformed bigint payloads instead of
            decoding them as zero
    """

    def __init__(self, safe_integer_limit: int = MAX_SAFE_INTEGER, strict: bool = False):
        self.safe_integer_limit = safe_integer_limit
        self.strict = strict

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, value: Any) -> ValueKind:
        """Map a raw payload node onto its tagged variant."""
        if isinstance(value, bool):
            return ValueKind.SCALAR
        if isinstance(value, BigInt):
            return ValueKind.BIGINT
        if isinstance(value, int):
            if abs(value) > self.safe_integer_limit:
                return ValueKind.BIGINT
            return ValueKind.SCALAR
        if isinstance(value, Mapping):
            return ValueKind.MAP
        if isinstance(value, (list, tuple)):
            return ValueKind.ARRAY
        if isinstance(value, (str, float, Decimal, datetime, date, type(None))):
            return ValueKind.SCALAR
        if isinstance(value, (Enum, bytes, bytearray)):
            return ValueKind.SCALAR
        if isinstance(value, BaseModel) or dataclasses.is_dataclass(value) or hasattr(value, "__dict__"):
            return ValueKind.MAP
        return ValueKind.SCALAR

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, value: Any) -> Any:
        """
        Convert a payload to its storage-safe form

        Raises:
            CodecError: if the top-level value itself cannot be converted
        """
        try:
            return self._encode(value, {})
        except RecursionError as e:
            raise CodecError(f"Payload nested too deeply to encode: {e}") from e
        except CodecError:
            raise
        except Exception as e:
            raise CodecError(f"Failed to encode payload: {e}") from e

    def _encode(self, value: Any, memo: Dict[int, Any]) -> Any:
        kind = self.classify(value)

        if kind is ValueKind.BIGINT:
            return {KIND_FIELD: BIGINT_KIND, DIGITS_FIELD: int_to_digits(value)}

        if kind is ValueKind.ARRAY:
            if id(value) in memo:
                return memo[id(value)][1]
            result: List[Any] = []
            memo[id(value)] = (value, result)
            for item in value:
                result.append(self._encode(item, memo))
            return result

        if kind is ValueKind.MAP:
            if id(value) in memo:
                return memo[id(value)][1]
            result_map: Dict[str, Any] = {}
            memo[id(value)] = (value, result_map)
            for key, getter in self._field_items(value):
                try:
                    result_map[str(key)] = self._encode(getter(), memo)
                except Exception as e:
                    codec_fallbacks_total.labels(direction="encode").inc()
                    logger.warning(
                        "Failed to encode field, storing diagnostic placeholder",
                        field=str(key),
                        error=str(e)
                    )
                    result_map[str(key)] = f"[Error processing: {e}]"
            return result_map

        return self._encode_scalar(value)

    def _field_items(self, value: Any) -> List[Tuple[Any, Callable[[], Any]]]:
        """(name, getter) pairs for a mapping-like node; getters run inside the per-field guard."""
        if isinstance(value, Mapping):
            return [(key, partial(_identity, prop)) for key, prop in value.items()]
        if isinstance(value, BaseModel):
            names = list(type(value).model_fields)
        elif dataclasses.is_dataclass(value):
            names = [field.name for field in dataclasses.fields(value)]
        else:
            names = [name for name in vars(value) if not name.startswith("_")]
        return [(name, partial(getattr, value, name)) for name in names]

    def _encode_scalar(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).hex()
        if isinstance(value, (str, int, float, Decimal, datetime, date, type(None))):
            return value
        # Opaque values (public keys, addresses) are kept by their string form
        return str(value)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, value: Any) -> Any:
        """
        Restore BigInt values from their tagged storage form

        A mapping tagged with kind "bigint" always decodes to a BigInt, whatever
        its other keys. Any other mapping passes through with its children
        decoded.
        """
        return self._decode(value, {})

    def _decode(self, value: Any, memo: Dict[int, Any]) -> Any:
        if is_encoded_bigint(value):
            return self._decode_bigint(value)

        if isinstance(value, list):
            if id(value) in memo:
                return memo[id(value)][1]
            result: List[Any] = []
            memo[id(value)] = (value, result)
            for item in value:
                result.append(self._decode(item, memo))
            return result

        if isinstance(value, Mapping):
            if id(value) in memo:
                return memo[id(value)][1]
            result_map: Dict[str, Any] = {}
            memo[id(value)] = (value, result_map)
            for key, prop in value.items():
                result_map[key] = self._decode(prop, memo)
            return result_map

        return value

    def _decode_bigint(self, value: Mapping) -> Optional[BigInt]:
        digits = value.get(DIGITS_FIELD)
        try:
            return BigInt(digits_to_int(digits))
        except ValueError as e:
            if self.strict:
                raise CodecError(str(e)) from e
            codec_fallbacks_total.labels(direction="decode").inc()
            logger.warning("Malformed bigint payload, decoding as zero", digits=repr(digits))
            return BigInt(0)
