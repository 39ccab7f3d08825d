# FILE: atg/collaborators.py
from __future__ import annotations

"""
Narrow interfaces to the systems the gateway consumes but does not own:
subject registration, stake, payment settlement, cross-domain transport and
enrichment providers.

Each interface ships with a small in-process implementation used by the
development server and the test suite. Production deployments inject their
own objects; anything with the right methods satisfies the Protocol.
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .errors import InvalidInput


def normalize_identifier(identifier: str) -> str:
    """Address-like identifiers compare case-insensitively."""
    return (identifier or "").strip().lower()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class SubjectRegistry(Protocol):
    def is_registered(self, subject: str) -> bool:
        ...

    def resolve_subject_key(self, identifier: str) -> Optional[str]:
        ...


class InMemorySubjectRegistry:
    """Unique identifier -> subject mapping."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_identifier: Dict[str, str] = {}
        self._subjects: Dict[str, str] = {}

    def register(self, identifier: str, subject: Optional[str] = None) -> str:
        ident = normalize_identifier(identifier)
        if not ident:
            raise InvalidInput("identifier must be non-empty")
        key = normalize_identifier(subject) if subject else ident
        with self._lock:
            existing = self._by_identifier.get(ident)
            if existing is not None and existing != key:
                raise InvalidInput("identifier already registered to another subject")
            owner = self._subjects.get(key)
            if owner is not None and owner != ident:
                raise InvalidInput("subject already registered under another identifier")
            self._by_identifier[ident] = key
            self._subjects[key] = ident
        return key

    def is_registered(self, subject: str) -> bool:
        with self._lock:
            return normalize_identifier(subject) in self._subjects

    def resolve_subject_key(self, identifier: str) -> Optional[str]:
        with self._lock:
            return self._by_identifier.get(normalize_identifier(identifier))

    def __len__(self) -> int:
        with self._lock:
            return len(self._subjects)


# ---------------------------------------------------------------------------
# Stake
# ---------------------------------------------------------------------------


class StakeProvider(Protocol):
    def get_effective_stake(self, subject: str) -> float:
        ...


class StaticStakeProvider:
    """Fixed stake table; unknown subjects have zero stake."""

    def __init__(self, stakes: Optional[Dict[str, float]] = None) -> None:
        self._lock = threading.Lock()
        self._stakes: Dict[str, float] = {
            normalize_identifier(k): float(v) for k, v in (stakes or {}).items()
        }

    def set_stake(self, subject: str, amount: float) -> None:
        if amount < 0:
            raise InvalidInput("stake must be non-negative")
        with self._lock:
            self._stakes[normalize_identifier(subject)] = float(amount)

    def get_effective_stake(self, subject: str) -> float:
        with self._lock:
            return self._stakes.get(normalize_identifier(subject), 0.0)


# ---------------------------------------------------------------------------
# Payment verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentVerdict:
    accepted: bool
    settled_amount: float = 0.0
    reference: str = ""
    reason: str = ""


class PaymentVerifier(Protocol):
    def verify(self, evidence: str, *, amount: float, recipient: str) -> PaymentVerdict:
        ...


# ---------------------------------------------------------------------------
# Cross-domain transport
# ---------------------------------------------------------------------------


class SyncTransport(Protocol):
    def deliver(self, domain_id: str, payload: str) -> str:
        """Hand `payload` to the transport; returns an opaque delivery handle."""
        ...


InboundHandler = Callable[[str, str, str], object]


@dataclass
class LoopbackTransport:
    """
    In-process transport: delivers straight into a peer's inbound handler,
    presenting this side's (domain, authority) as the origin.

    Unknown destinations raise ConnectionError, as a real relay would fail.
    """

    origin_domain: str
    origin_authority: str
    peers: Dict[str, InboundHandler] = field(default_factory=dict)
    sent: List[Tuple[str, str, str]] = field(default_factory=list)

    def connect(self, domain_id: str, handler: InboundHandler) -> None:
        self.peers[domain_id] = handler

    def deliver(self, domain_id: str, payload: str) -> str:
        handler = self.peers.get(domain_id)
        if handler is None:
            raise ConnectionError(f"no route to domain {domain_id}")
        handle = uuid.uuid4().hex
        handler(self.origin_domain, self.origin_authority, payload)
        self.sent.append((domain_id, payload, handle))
        return handle


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Enrichment:
    score_adjustment: int = 0
    flags: Tuple[str, ...] = ()


NEUTRAL_ENRICHMENT = Enrichment()


class Enricher(Protocol):
    name: str

    def enrich(self, subject: str) -> Enrichment:
        ...


__all__ = [
    "normalize_identifier",
    "SubjectRegistry",
    "InMemorySubjectRegistry",
    "StakeProvider",
    "StaticStakeProvider",
    "PaymentVerdict",
    "PaymentVerifier",
    "SyncTransport",
    "LoopbackTransport",
    "Enrichment",
    "NEUTRAL_ENRICHMENT",
    "Enricher",
]
