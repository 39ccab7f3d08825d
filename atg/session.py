# FILE: atg/session.py
from __future__ import annotations

"""
Resumable session credentials.

A credential is a self-contained bearer capability: base64url(canonical JSON)
of its claims plus an integrity tag computed with a keyed canonical hash.
Caveats travel inside the credential; the parts that need shared state
(request counter, cumulative cost, revocation) live in a SessionStateStore.

Verification order is fixed: revoked, tag, ttl, request count, path, cost.
Any failure raises SessionInvalid with a short reason; callers fall back to
the full admission pipeline.
"""

import fnmatch
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .errors import SessionInvalid
from .kv import session_tag_hash
from .storage import (
    CONSUME_COST,
    CONSUME_EXHAUSTED,
    CONSUME_OK,
    CONSUME_REVOKED,
    SessionStateStore,
)
from .utils import (
    b64url_decode,
    b64url_encode,
    canonical_json_dumps,
    is_finite_number,
    secure_compare,
)

logger = logging.getLogger(__name__)

_MAX_TOKEN_LEN = 4096


@dataclass(frozen=True)
class SessionCredential:
    session_id: str
    subject: str
    issued_at: float
    ttl_s: float
    max_requests: int
    allowed_paths: Tuple[str, ...]
    max_cost: float
    unit_price: float
    request_count: int = 0
    tag: str = ""

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl_s

    def claims(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "sub": self.subject,
            "iat": float(self.issued_at),
            "caveats": {
                "ttl": float(self.ttl_s),
                "max_requests": int(self.max_requests),
                "paths": list(self.allowed_paths),
                "max_cost": float(self.max_cost),
            },
            "unit_price": float(self.unit_price),
            "count": int(self.request_count),
        }

    def allows_path(self, path: str) -> bool:
        return any(fnmatch.fnmatchcase(path, pat) for pat in self.allowed_paths)


def _parse_claims(doc: Any) -> SessionCredential:
    if not isinstance(doc, dict):
        raise SessionInvalid("malformed")
    try:
        cav = doc["caveats"]
        paths = cav["paths"]
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise SessionInvalid("malformed")
        cred = SessionCredential(
            session_id=str(doc["id"]),
            subject=str(doc["sub"]),
            issued_at=float(doc["iat"]),
            ttl_s=float(cav["ttl"]),
            max_requests=int(cav["max_requests"]),
            allowed_paths=tuple(paths),
            max_cost=float(cav["max_cost"]),
            unit_price=float(doc["unit_price"]),
            request_count=int(doc["count"]),
            tag=str(doc["tag"]),
        )
    except (KeyError, TypeError, ValueError, OverflowError) as exc:
        raise SessionInvalid("malformed") from exc
    if not all(
        is_finite_number(v) for v in (cred.issued_at, cred.ttl_s, cred.max_cost, cred.unit_price)
    ):
        raise SessionInvalid("malformed")
    return cred


class SessionManager:
    """Issues, verifies and revokes session credentials."""

    def __init__(
        self,
        state: SessionStateStore,
        key: bytes,
        *,
        metrics: Any = None,
        purge_interval_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) < 16:
            raise ValueError("session key must be at least 16 bytes")
        self.state = state
        self._key = bytes(key)
        self.metrics = metrics
        self._clock = clock
        self.purge_interval_s = float(purge_interval_s)
        self._purge_lock = threading.Lock()
        self._next_purge = 0.0

    def _count(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.record_session(event)

    # ----- encoding -----

    def _tag(self, cred: SessionCredential) -> str:
        return session_tag_hash(cred.claims(), key=self._key)

    def encode(self, cred: SessionCredential) -> str:
        doc = cred.claims()
        doc["tag"] = cred.tag or self._tag(cred)
        return b64url_encode(canonical_json_dumps(doc).encode("utf-8"))

    def decode(self, token: str) -> SessionCredential:
        """Parse without verifying; raises SessionInvalid('malformed')."""
        if not isinstance(token, str) or not token or len(token) > _MAX_TOKEN_LEN:
            raise SessionInvalid("malformed")
        try:
            doc = json.loads(b64url_decode(token).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as exc:
            raise SessionInvalid("malformed") from exc
        return _parse_claims(doc)

    # ----- lifecycle -----

    def issue(
        self,
        subject: str,
        *,
        allowed_paths: Sequence[str],
        unit_price: float,
        ttl_s: float,
        max_requests: int,
        max_cost: float,
    ) -> Tuple[SessionCredential, str]:
        cred = SessionCredential(
            session_id=secrets.token_hex(16),
            subject=subject,
            issued_at=self._clock(),
            ttl_s=float(ttl_s),
            max_requests=int(max_requests),
            allowed_paths=tuple(allowed_paths) or ("*",),
            max_cost=float(max_cost),
            unit_price=float(unit_price),
        )
        cred = replace(cred, tag=self._tag(cred))
        self.state.register(cred.session_id, expires_at=cred.expires_at)
        self._count("issued")
        self.maybe_purge(cred.issued_at)
        return cred, self.encode(cred)

    def resume(self, token: str, path: str) -> Tuple[SessionCredential, str]:
        """
        Verify a presented credential for `path` and count one request
        against it. Returns the refreshed credential and its encoding.
        """
        cred = self.decode(token)
        sid = cred.session_id

        if self.state.is_revoked(sid):
            raise self._reject("revoked", sid)

        try:
            expected = self._tag(cred)
        except ValueError:
            # Claims the hasher refuses (oversized, non-finite) were never issued.
            raise self._reject("bad_tag", sid) from None
        if not secure_compare(cred.tag, expected):
            raise self._reject("bad_tag", sid)

        now = self._clock()
        if now - cred.issued_at > cred.ttl_s:
            raise self._reject("expired", sid)

        st = self.state.get(sid)
        count = max(cred.request_count, st.request_count if st is not None else 0)
        if count >= cred.max_requests:
            raise self._reject("max_requests", sid)

        if not cred.allows_path(path):
            raise self._reject("path_not_allowed", sid)

        result, after = self.state.consume(
            sid,
            expires_at=cred.expires_at,
            floor_count=cred.request_count,
            max_requests=cred.max_requests,
            cost=cred.unit_price,
            max_cost=cred.max_cost,
        )
        if result == CONSUME_REVOKED:
            raise self._reject("revoked", sid)
        if result == CONSUME_EXHAUSTED:
            raise self._reject("max_requests", sid)
        if result == CONSUME_COST:
            raise self._reject("max_cost", sid)
        if result != CONSUME_OK or after is None:
            raise self._reject("unknown", sid)

        refreshed = replace(cred, request_count=after.request_count, tag="")
        refreshed = replace(refreshed, tag=self._tag(refreshed))
        self._count("resumed")
        return refreshed, self.encode(refreshed)

    def revoke(self, session_id: str, *, retain_s: float = 86_400.0) -> None:
        """
        Revoke by id. The revocation is kept for at least `retain_s` (or the
        credential's own lifetime when known), long enough to outlive it.
        """
        self.state.revoke(session_id, until=self._clock() + retain_s)
        self._count("revoked")
        logger.info("session revoked", extra={"session_id": session_id})

    def purge_expired(self) -> int:
        return self.state.purge_expired(self._clock())

    def maybe_purge(self, now: Optional[float] = None) -> int:
        """Purge expired state at most once per `purge_interval_s`."""
        now = self._clock() if now is None else now
        with self._purge_lock:
            if now < self._next_purge:
                return 0
            self._next_purge = now + self.purge_interval_s
        return self.state.purge_expired(now)

    def _reject(self, reason: str, session_id: Optional[str]) -> SessionInvalid:
        self._count("rejected")
        return SessionInvalid(reason, session_id=session_id)


__all__ = ["SessionCredential", "SessionManager"]
