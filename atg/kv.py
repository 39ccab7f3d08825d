# FILE: atg/kv.py
from __future__ import annotations

"""
Helpers for stable key/value hashing and deterministic IDs.

This module is used to build:
  - integrity tags for session credentials (keyed);
  - stable decision identifiers for logs and responses;
  - settings digests exposed in headers and on the admin plane.

Key properties:
  - Deterministic, canonical encoding of basic Python types;
  - Streaming hasher with optional HMAC secret key;
  - Explicit domain separation via labels and context strings;
  - Guards against accidentally hashing secrets (authority keys, payment blobs).
"""

import hashlib
import hmac
import json
import os
from typing import Any, Mapping, Optional


def _resolve_digest(alg: str):
    """
    Map a requested algorithm name to a hashlib constructor.

    Only a small set of modern digests is accepted.
    """
    name = (alg or "").lower()
    if name in ("sha256", "sha-256", ""):
        return hashlib.sha256
    if name in ("blake2s", "b2s"):
        return hashlib.blake2s
    raise ValueError(f"Unsupported digest algorithm for kv hashing: {alg!r}")


# Keys that must never be hashed into envelopes (secrets stay out of IDs).
_FORBIDDEN_KV_KEYS = {
    "authority_key",
    "origin_authority",
    "payment",
    "payment_evidence",
    "admin_token",
    "service_token",
    "signing_key",
}

# Rough guard for total size of KV material before hashing (in bytes).
_KV_MAX_APPROX_BYTES = int(os.environ.get("ATG_KV_MAX_BYTES", "8192"))


def _normalize_key(key: Optional[bytes]) -> Optional[bytes]:
    """
    Normalize and validate an HMAC key (bytes, at least 16 bytes long).
    """
    if key is None:
        return None
    if not isinstance(key, (bytes, bytearray)):
        raise TypeError("HMAC key must be bytes or bytearray")
    if len(key) < 16:
        raise ValueError("HMAC key too short; expected at least 16 bytes")
    return bytes(key)


class RollingHasher:
    """
    Streaming hasher for building stable digests over simple structures.

    Features:
      - Digest algorithm chosen by a symbolic `alg` (default SHA-256);
      - Optional HMAC secret key;
      - Domain separation via an explicit `label` and a `ctx` string.
    """

    def __init__(
        self,
        alg: str = "sha256",
        ctx: str = "",
        *,
        key: Optional[bytes] = None,
        label: str = "",
    ):
        digestmod = _resolve_digest(alg)
        self._alg = alg

        key = _normalize_key(key)
        if key is not None:
            self._h = hmac.new(key, digestmod=digestmod)
        else:
            self._h = digestmod()

        if label:
            self._h.update(b"kv.label:")
            self._h.update(label.encode("utf-8", errors="ignore"))
            self._h.update(b"\x00")

        if ctx:
            self._h.update(ctx.encode("utf-8", errors="ignore"))

    def update_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._h.update(data)

    def update_str(self, value: str) -> None:
        if not value:
            return
        self._h.update(value.encode("utf-8", errors="ignore"))

    def update_json(self, obj: Any) -> None:
        """
        Update with canonical JSON (sorted keys, compact separators).
        """
        payload = json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        self._h.update(payload.encode("utf-8"))

    def hex(self) -> str:
        return self._h.hexdigest()


def _feed_scalar(h: RollingHasher, value: Any) -> None:
    """
    Feed a scalar into the hasher with a small type tag, so that
    "True" and "1" never collide.
    """
    if value is None:
        h.update_bytes(b"t:none;")
        return

    if isinstance(value, bool):
        h.update_bytes(b"t:bool;")
        h.update_bytes(b"1" if value else b"0")
        h.update_bytes(b";")
        return

    if isinstance(value, int):
        h.update_bytes(b"t:int;")
        h.update_str(str(int(value)))
        h.update_bytes(b";")
        return

    if isinstance(value, float):
        v = float(value)
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("NaN or infinite values are not allowed in kv float encoding")
        h.update_bytes(b"t:float;")
        h.update_str(repr(v))
        h.update_bytes(b";")
        return

    if isinstance(value, str):
        h.update_bytes(b"t:str;")
        h.update_str(value)
        h.update_bytes(b";")
        return

    h.update_bytes(b"t:json;")
    h.update_json(value)
    h.update_bytes(b";")


def canonical_kv_hash(
    mapping: Mapping[str, Any],
    *,
    ctx: str = "",
    label: str = "kv",
    key: Optional[bytes] = None,
    alg: str = "sha256",
) -> str:
    """
    Compute a canonical hash for a mapping of key/value pairs.

    Rules:
      - Keys are converted to strings and sorted lexicographically.
      - For each key, "k:<key>;v:<typed_value>;" is fed into the hasher.
      - The result is independent of mapping insertion order.

    Guards:
      - Secret-bearing keys (authority keys, payment evidence) are rejected.
      - Overly large mappings are rejected.
    """
    for k in mapping.keys():
        ks = str(k)
        if ks.lower() in _FORBIDDEN_KV_KEYS:
            raise ValueError(f"canonical_kv_hash: forbidden key in mapping: {ks!r}")

    approx = 0
    for k, v in mapping.items():
        approx += len(str(k))
        if isinstance(v, (bytes, str)):
            approx += len(v)
        else:
            approx += len(repr(v))
        if approx > _KV_MAX_APPROX_BYTES:
            raise ValueError("canonical_kv_hash: mapping too large for envelope hashing")

    rh = RollingHasher(alg=alg, ctx=ctx, key=key, label=label)
    for k in sorted(mapping.keys(), key=lambda x: str(x)):
        rh.update_bytes(b"k:")
        rh.update_str(str(k))
        rh.update_bytes(b";v:")
        _feed_scalar(rh, mapping[k])
        rh.update_bytes(b";")
    return rh.hex()


# ---- Standardized envelope helpers ----

_FIELD_DIGEST_OVER = 256


def _bounded(value: str) -> str:
    """Long request-supplied fields enter envelopes as their digest."""
    if len(value) <= _FIELD_DIGEST_OVER:
        return value
    return "sha256:" + hashlib.sha256(value.encode("utf-8", "surrogatepass")).hexdigest()


def session_tag_hash(
    claims: Mapping[str, Any],
    *,
    key: bytes,
    ctx: str = "atg:session",
) -> str:
    """
    Keyed integrity tag over session credential claims.

    `claims` is the full credential body minus the tag itself.
    """
    return canonical_kv_hash(claims, ctx=ctx, label="session_tag", key=key)


def decision_id_hash(
    *,
    subject: str,
    outcome: str,
    reason: str,
    path: str,
    ts: float,
    ctx: str = "atg:decision",
) -> str:
    """
    Stable identifier for a single gateway decision (no secrets hashed).
    """
    mapping = {
        "subject": _bounded(str(subject)),
        "outcome": str(outcome),
        "reason": str(reason),
        "path": _bounded(str(path)),
        "ts": float(ts),
    }
    return canonical_kv_hash(mapping, ctx=ctx, label="decision_id")[:32]


__all__ = [
    "RollingHasher",
    "canonical_kv_hash",
    "session_tag_hash",
    "decision_id_hash",
]
