# FILE: atg/runtime.py
from __future__ import annotations

"""
Wiring for one gateway process: settings, metrics, ledger, sync, stores and
the TrustGateway, shared by the public and admin HTTP planes.
"""

import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .collaborators import (
    Enricher,
    InMemorySubjectRegistry,
    LoopbackTransport,
    PaymentVerifier,
    StakeProvider,
    StaticStakeProvider,
    SubjectRegistry,
    SyncTransport,
)
from .config import ReloadableSettings, make_reloadable_settings
from .enrichment import EnrichmentPipeline
from .events import EventBus, FeedbackRecorded
from .exporter import GatewayMetrics
from .gateway import GatewayPolicy, TrustGateway
from .ledger import ReputationLedger, make_reputation_ledger
from .storage import (
    InMemoryChallengeStore,
    InMemoryRiskProfileStore,
    InMemorySessionStateStore,
)
from .sync import CrossDomainSync, FeedbackPropagator

logger = logging.getLogger(__name__)


def load_session_key() -> bytes:
    """
    ATG_SESSION_KEY (hex, >= 16 bytes) or a random per-process key. With a
    random key, credentials do not survive a restart.
    """
    raw = (os.environ.get("ATG_SESSION_KEY") or "").strip()
    if raw:
        key = bytes.fromhex(raw)
        if len(key) < 16:
            raise ValueError("ATG_SESSION_KEY must be at least 16 bytes of hex")
        return key
    logger.warning("ATG_SESSION_KEY not set; using an ephemeral session key")
    return secrets.token_bytes(32)


@dataclass
class GatewayRuntime:
    settings: ReloadableSettings
    metrics: GatewayMetrics
    events: EventBus
    registry: SubjectRegistry
    stake_provider: StakeProvider
    ledger: ReputationLedger
    sync: CrossDomainSync
    gateway: TrustGateway
    transport: Optional[SyncTransport] = None
    propagator: Optional[FeedbackPropagator] = None


def build_runtime(
    settings: Optional[ReloadableSettings] = None,
    *,
    registry: Optional[SubjectRegistry] = None,
    stake_provider: Optional[StakeProvider] = None,
    payment_verifier: Optional[PaymentVerifier] = None,
    transport: Optional[SyncTransport] = None,
    enrichers: Sequence[Enricher] = (),
    session_key: Optional[bytes] = None,
    clock: Callable[[], float] = time.time,
) -> GatewayRuntime:
    settings = settings or make_reloadable_settings()
    s = settings.get()

    metrics = GatewayMetrics(version=s.version, config_hash=s.config_hash())
    events = EventBus()
    events.subscribe(FeedbackRecorded, lambda _evt: metrics.record_feedback("ok"))
    registry = registry if registry is not None else InMemorySubjectRegistry()
    stake_provider = stake_provider if stake_provider is not None else StaticStakeProvider()
    ledger = make_reputation_ledger(s.ledger_dsn, registry, events=events, clock=clock)

    if transport is None:
        # Loopback with no peers: publishing fails loudly until a real
        # transport is injected.
        transport = LoopbackTransport(origin_domain=s.local_domain_id, origin_authority="")

    sync = CrossDomainSync(
        ledger,
        transport,
        admins=lambda: settings.get().admin_principal_set(),
        policy=lambda: settings.get().sync_policy,
        metrics=metrics,
        clock=clock,
    )

    propagator = FeedbackPropagator(sync, lambda: settings.get().remote_domain_list())
    propagator.attach(events)

    def _policy() -> GatewayPolicy:
        return GatewayPolicy.from_settings(settings.get())

    gateway = TrustGateway(
        ledger,
        registry,
        stake_provider,
        risk_store=InMemoryRiskProfileStore(),
        challenge_store=InMemoryChallengeStore(),
        session_store=InMemorySessionStateStore(),
        session_key=session_key or load_session_key(),
        sync=sync,
        policy_provider=_policy,
        payment_verifier=payment_verifier,
        enrichment=EnrichmentPipeline(enrichers) if enrichers else None,
        metrics=metrics,
        clock=clock,
    )

    return GatewayRuntime(
        settings=settings,
        metrics=metrics,
        events=events,
        registry=registry,
        stake_provider=stake_provider,
        ledger=ledger,
        sync=sync,
        gateway=gateway,
        transport=transport,
        propagator=propagator,
    )


__all__ = ["GatewayRuntime", "build_runtime", "load_session_key"]
