# SPDX-License-Identifier: MPL-2.0
"""Canonical JSON serialization (RFC 8785 style).

Signed payloads in this project (enclave intent envelopes, ledger
transactions) are always signed over these bytes, so two parties that parse
and re-serialize the same object agree on what was signed.
"""

from __future__ import annotations

import json
import math
import unicodedata
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from trust_ledger.core.exceptions import CanonicalizationError


def _normalize(value: Any) -> Any:
    """Recursively normalise a value for canonical JSON serialisation."""

    if isinstance(value, Enum):
        value = value.value

    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)

    if isinstance(value, bool) or value is None or isinstance(value, int):
        return value

    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError("Non-finite float values are not allowed")
        if value.is_integer():
            return int(value)
        return float(Decimal(str(value)))

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        iso = value.isoformat(timespec="microseconds").replace("+00:00", "Z")
        main, rest = iso.split(".", 1)
        frac = rest.rstrip("Z").rstrip("0")
        return main + ("." + frac if frac else "") + "Z"

    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()

    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]

    if isinstance(value, dict):
        if any(not isinstance(k, str) for k in value):
            raise CanonicalizationError("Dictionary keys must be strings")
        return {unicodedata.normalize("NFC", k): _normalize(v) for k, v in value.items()}

    raise CanonicalizationError(f"Type {type(value)!r} is not supported for canonicalization")


def canonicalize(data: Any) -> str:
    """Convert data to a canonical JSON string."""

    canonical_data = _normalize(data)
    try:
        return json.dumps(
            canonical_data,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise CanonicalizationError(str(exc)) from exc


def canonical_bytes(data: Any) -> bytes:
    """UTF-8 encoded :func:`canonicalize` output, the form that gets signed."""

    return canonicalize(data).encode("utf-8")
