# FILE: atg/utils.py
from __future__ import annotations

import base64
import hmac
import json
import math
from typing import Any

# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------


def is_finite_number(value: Any) -> bool:
    """
    Return True if `value` is an int/float and is finite (not NaN / +/-inf).

    bool is rejected here: a stake or weight of True is a caller bug, not 1.
    """
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        try:
            return math.isfinite(float(value))
        except (OverflowError, ValueError):
            return False
    return False


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def round_half_up(value: float) -> int:
    """Round x.5 away from zero for non-negative inputs (no banker's rounding)."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Canonical JSON + encoding helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to a canonical JSON string: sorted keys, compact separators.

    Used for wire payloads and bearer tokens, where byte-for-byte stability
    matters for integrity tags.
    """
    return json.dumps(
        obj,
        ensure_ascii=ensure_ascii,
        sort_keys=True,
        separators=(",", ":"),
        allow_nan=False,
    )


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    """
    Decode unpadded base64url. Raises ValueError on malformed input.
    """
    if not isinstance(text, str):
        raise ValueError("expected str")
    pad = "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(text + pad)
    except (ValueError, TypeError) as exc:
        raise ValueError("malformed base64url") from exc


def secure_compare(a: Any, b: Any) -> bool:
    """
    Constant-time comparison of two strings (authority keys, tags, tokens).

    Non-string inputs never compare equal.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


__all__ = [
    "is_finite_number",
    "clamp",
    "round_half_up",
    "canonical_json_dumps",
    "b64url_encode",
    "b64url_decode",
    "secure_compare",
]
