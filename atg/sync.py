# FILE: atg/sync.py
from __future__ import annotations

"""
Cross-domain reputation sync.

A subject's view is extended with scores reported by trusted remote ledgers.
Per (subject, domain) the state is Unknown until the first accepted SYNC
message, then Synced; every accepted message refreshes the entry (last write
wins). Entries are never expired: they are a cache of last-known remote opinion.

Inbound messages are admitted only when the claimed origin authority matches
the configured key for the claimed domain (constant-time compare), even if
the transport already authenticated the channel. Rejected messages never
touch state.

Two combination rules are exposed on purpose:
  - get_aggregated_score: integer mean of local + synced remote scores;
  - meets_threshold_across_domains: unanimous floor, one weak domain vetoes.
"""

import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .collaborators import SyncTransport, normalize_identifier
from .errors import InvalidInput, RemoteNotTrusted, Unauthorized, UntrustedSender
from .events import EventBus, FeedbackRecorded
from .ledger import ReputationLedger
from .logging import log_security_event
from .utils import canonical_json_dumps, secure_compare

logger = logging.getLogger(__name__)

MSG_SYNC = "SYNC"
POLICY_ARRIVAL = "arrival"
POLICY_CLAIMED_TIMESTAMP = "claimed_timestamp"
_MAX_PAYLOAD_BYTES = 16 * 1024


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncMessage:
    msg_type: str
    subject: str = ""
    score: int = 0
    timestamp: float = 0.0

    def encode(self) -> str:
        return canonical_json_dumps(
            {
                "msg_type": self.msg_type,
                "subject": self.subject,
                "score": self.score,
                "timestamp": self.timestamp,
            }
        )

    @classmethod
    def decode(cls, payload: Any) -> "SyncMessage":
        """
        Parse a wire payload (str, bytes or already-decoded mapping).

        Only the message type is checked for unknown types; SYNC bodies are
        fully validated. Raises InvalidInput on malformed input.
        """
        if isinstance(payload, (bytes, bytearray)):
            if len(payload) > _MAX_PAYLOAD_BYTES:
                raise InvalidInput("sync payload too large")
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidInput("sync payload is not utf-8") from exc
        if isinstance(payload, str):
            if len(payload) > _MAX_PAYLOAD_BYTES:
                raise InvalidInput("sync payload too large")
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise InvalidInput("sync payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidInput("sync payload must be a JSON object")

        msg_type = payload.get("msg_type")
        if not isinstance(msg_type, str) or not msg_type:
            raise InvalidInput("sync payload missing msg_type")
        if msg_type != MSG_SYNC:
            return cls(msg_type=msg_type)

        subject = payload.get("subject")
        if not isinstance(subject, str) or not normalize_identifier(subject):
            raise InvalidInput("sync payload missing subject")

        score = payload.get("score")
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise InvalidInput("sync score must be an integer in [0, 100]")

        ts = payload.get("timestamp")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts) or ts < 0:
            raise InvalidInput("sync timestamp must be a non-negative number")

        return cls(
            msg_type=MSG_SYNC,
            subject=normalize_identifier(subject),
            score=int(score),
            timestamp=float(ts),
        )


@dataclass(frozen=True)
class RemoteReputationEntry:
    subject: str
    domain_id: str
    reported_score: int
    observed_at: float
    received_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "domain_id": self.domain_id,
            "reported_score": self.reported_score,
            "observed_at": self.observed_at,
            "received_at": self.received_at,
        }


# ---------------------------------------------------------------------------
# CrossDomainSync
# ---------------------------------------------------------------------------


class CrossDomainSync:
    def __init__(
        self,
        ledger: ReputationLedger,
        transport: Optional[SyncTransport] = None,
        *,
        admins: Union[Iterable[str], Callable[[], Iterable[str]]] = ("admin",),
        policy: Union[str, Callable[[], str]] = POLICY_ARRIVAL,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        # Callables are read on every use so reloaded settings apply at once.
        if callable(policy):
            self._policy_provider = policy
        else:
            if policy not in (POLICY_ARRIVAL, POLICY_CLAIMED_TIMESTAMP):
                raise ValueError(f"unknown sync policy: {policy!r}")
            fixed_policy = policy
            self._policy_provider = lambda: fixed_policy
        if callable(admins):
            self._admins_provider = admins
        else:
            fixed_admins = frozenset(admins)
            self._admins_provider = lambda: fixed_admins
        self.ledger = ledger
        self.transport = transport
        self.metrics = metrics
        self._clock = clock
        self._remotes_lock = threading.RLock()
        self._trusted: Dict[str, str] = {}
        self._entries_lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], RemoteReputationEntry] = {}

    @property
    def policy(self) -> str:
        return self._policy_provider()

    def is_admin(self, actor: str) -> bool:
        return actor in frozenset(self._admins_provider())

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_sync(result)

    # ----- trusted remotes -----

    def set_trusted_remote(self, domain_id: str, authority_key: str, *, actor: str) -> None:
        """
        Idempotent upsert, last write wins. Only configured admin principals
        may change the trust set.
        """
        if not self.is_admin(actor):
            log_security_event(
                logger,
                threat_label="unauthorized_trust_change",
                domain_id=domain_id,
                actor=actor,
            )
            raise Unauthorized("actor may not configure trusted remotes", actor=actor)
        if not isinstance(domain_id, str) or not domain_id.strip():
            raise InvalidInput("domain_id must be non-empty")
        if not isinstance(authority_key, str) or not authority_key:
            raise InvalidInput("authority_key must be non-empty")
        with self._remotes_lock:
            replaced = domain_id in self._trusted
            self._trusted[domain_id] = authority_key
        logger.info(
            "trusted remote set",
            extra={"domain_id": domain_id, "actor": actor, "replaced": replaced},
        )

    def is_trusted(self, domain_id: str) -> bool:
        with self._remotes_lock:
            return domain_id in self._trusted

    def list_trusted_remotes(self) -> List[str]:
        """Domain ids only; authority keys never leave this object."""
        with self._remotes_lock:
            return sorted(self._trusted)

    # ----- outbound -----

    def publish_reputation(self, subject: str, domain_id: str) -> str:
        """
        Package the local score and hand it to the transport. Transport errors
        propagate to the caller; retrying is the caller's decision.
        """
        if not self.is_trusted(domain_id):
            raise RemoteNotTrusted(domain_id)
        if self.transport is None:
            raise ConnectionError("no sync transport configured")
        key = normalize_identifier(subject)
        msg = SyncMessage(
            msg_type=MSG_SYNC,
            subject=key,
            score=self.ledger.get_score(key),
            timestamp=self._clock(),
        )
        handle = self.transport.deliver(domain_id, msg.encode())
        self._count("published")
        logger.debug(
            "reputation published",
            extra={"subject": key, "domain_id": domain_id, "handle": handle},
        )
        return handle

    # ----- inbound -----

    def receive_message(
        self,
        origin_domain_id: str,
        origin_authority: str,
        payload: Any,
    ) -> Optional[RemoteReputationEntry]:
        """
        Apply one inbound message. Returns the stored entry for an accepted
        SYNC, or None when the message was ignored (unknown type, or stale
        under the claimed-timestamp policy).
        """
        with self._remotes_lock:
            expected = self._trusted.get(origin_domain_id)
        if expected is None or not secure_compare(origin_authority, expected):
            self._count("untrusted")
            log_security_event(
                logger,
                threat_label="untrusted_sync_sender",
                domain_id=origin_domain_id,
                severity=0.8,
            )
            raise UntrustedSender(origin_domain_id)

        try:
            msg = SyncMessage.decode(payload)
        except InvalidInput:
            self._count("invalid")
            raise

        if msg.msg_type != MSG_SYNC:
            self._count("ignored")
            logger.debug(
                "ignoring unknown sync message type",
                extra={"domain_id": origin_domain_id, "msg_type": msg.msg_type[:64]},
            )
            return None

        key = (msg.subject, origin_domain_id)
        entry = RemoteReputationEntry(
            subject=msg.subject,
            domain_id=origin_domain_id,
            reported_score=msg.score,
            observed_at=msg.timestamp,
            received_at=self._clock(),
        )
        with self._entries_lock:
            current = self._entries.get(key)
            if (
                self.policy == POLICY_CLAIMED_TIMESTAMP
                and current is not None
                and msg.timestamp < current.observed_at
            ):
                stale = True
            else:
                stale = False
                self._entries[key] = entry

        if stale:
            self._count("stale")
            logger.info(
                "stale sync message ignored",
                extra={"subject": msg.subject, "domain_id": origin_domain_id},
            )
            return None

        self._count("accepted")
        return entry

    # ----- views -----

    def get_remote_entry(self, subject: str, domain_id: str) -> Optional[RemoteReputationEntry]:
        with self._entries_lock:
            return self._entries.get((normalize_identifier(subject), domain_id))

    def _remote_scores(self, subject: str, domain_ids: Sequence[str]) -> Dict[str, int]:
        key = normalize_identifier(subject)
        out: Dict[str, int] = {}
        with self._entries_lock:
            for domain_id in domain_ids:
                entry = self._entries.get((key, domain_id))
                if entry is not None:
                    out[domain_id] = entry.reported_score
        return out

    def get_aggregated_score(self, subject: str, domain_ids: Sequence[str] = ()) -> int:
        """
        Integer mean (truncating) of the local score and every listed domain
        that has ever been synced; never-synced domains are excluded.
        """
        scores = [self.ledger.get_score(subject)]
        scores.extend(self._remote_scores(subject, domain_ids).values())
        return sum(scores) // len(scores)

    def meets_threshold_across_domains(
        self,
        subject: str,
        min_score: float,
        domain_ids: Sequence[str] = (),
    ) -> bool:
        if self.ledger.get_score(subject) < min_score:
            return False
        return all(s >= min_score for s in self._remote_scores(subject, domain_ids).values())

    def score_breakdown(self, subject: str, domain_ids: Sequence[str] = ()) -> Dict[str, Any]:
        local = self.ledger.get_score(subject)
        remotes = self._remote_scores(subject, domain_ids)
        values = [local, *remotes.values()]
        return {
            "subject": normalize_identifier(subject),
            "local": local,
            "remotes": remotes,
            "aggregated": sum(values) // len(values),
        }


# ---------------------------------------------------------------------------
# Feedback -> outbound propagation
# ---------------------------------------------------------------------------


class FeedbackPropagator:
    """
    Observer that publishes a subject's fresh score to a set of domains
    whenever the ledger records feedback for it. `domain_ids` may be a
    callable, read on every event.

    Delivery failures are logged and counted per domain; they never reach
    the ledger's write path.
    """

    def __init__(
        self,
        sync: CrossDomainSync,
        domain_ids: Union[Sequence[str], Callable[[], Sequence[str]]],
    ) -> None:
        self.sync = sync
        if callable(domain_ids):
            self._domains_provider = domain_ids
        else:
            fixed = tuple(domain_ids)
            self._domains_provider = lambda: fixed
        self.failures = 0

    @property
    def domain_ids(self) -> Tuple[str, ...]:
        return tuple(self._domains_provider())

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe(FeedbackRecorded, self)

    def __call__(self, event: FeedbackRecorded) -> None:
        for domain_id in self.domain_ids:
            try:
                self.sync.publish_reputation(event.subject, domain_id)
            except Exception:
                self.failures += 1
                self.sync._count("publish_failed")
                logger.warning(
                    "reputation propagation failed",
                    extra={"subject": event.subject, "domain_id": domain_id},
                    exc_info=True,
                )


__all__ = [
    "MSG_SYNC",
    "POLICY_ARRIVAL",
    "POLICY_CLAIMED_TIMESTAMP",
    "SyncMessage",
    "RemoteReputationEntry",
    "CrossDomainSync",
    "FeedbackPropagator",
]
