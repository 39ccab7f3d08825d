# FILE: atg/exporter.py
# Prometheus instruments for the trust gateway.
#
# - Every GatewayMetrics instance owns its CollectorRegistry, so several apps
#   (tests, public + admin plane) can live in one process without duplicate
#   registration errors.
# - Label values come from small closed sets (outcomes, reasons, event names);
#   anything else is folded into "other" and counted as a dropped label.
# - Subjects, session ids and domain ids are never used as label values.

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)

_OUTCOMES: FrozenSet[str] = frozenset(
    {"admitted", "challenge-required", "payment-required", "denied", "error"}
)
_REASONS: FrozenSet[str] = frozenset(
    {
        "",
        "session",
        "pow",
        "identity_required",
        "unregistered",
        "excessive_risk",
        "no_stake",
        "insufficient_stake",
        "insufficient_reputation",
        "payment_required",
        "payment_rejected",
        "paid",
        "internal_error",
    }
)
_SYNC_RESULTS: FrozenSet[str] = frozenset(
    {"accepted", "untrusted", "invalid", "ignored", "stale", "published", "publish_failed"}
)
_POW_EVENTS: FrozenSet[str] = frozenset({"issued", "redeemed", "invalid", "expired", "unknown"})
_SESSION_EVENTS: FrozenSet[str] = frozenset({"issued", "resumed", "rejected", "revoked"})
_FEEDBACK_RESULTS: FrozenSet[str] = frozenset({"ok", "invalid", "unknown_subject"})


def _bounded(value: Optional[str], allowed: FrozenSet[str]) -> str:
    v = "" if value is None else str(value)
    return v if v in allowed else "other"


class GatewayMetrics:
    """
    Gateway metrics surface.

        metrics = GatewayMetrics(version="0.1.0", config_hash=settings.config_hash())
        metrics.record_decision("admitted", "paid", 0.004)
        body = metrics.render()
    """

    def __init__(
        self,
        *,
        version: str = "dev",
        config_hash: str = "",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        r = self.registry

        self._build_info = Info("atg_build", "Gateway build information", registry=r)
        self._build_info.info({"version": str(version), "config_hash": str(config_hash)[:16]})

        self.decisions = Counter(
            "atg_decisions_total",
            "Admission decisions by outcome and reason",
            ["outcome", "reason"],
            registry=r,
        )
        self.decision_latency = Histogram(
            "atg_decision_latency_seconds",
            "Time spent in the admission pipeline",
            ["outcome"],
            buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0),
            registry=r,
        )
        self.risk_scores = Histogram(
            "atg_risk_score",
            "Behavioral risk scores at decision time",
            buckets=(10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
            registry=r,
        )
        self.feedback = Counter(
            "atg_feedback_total",
            "Feedback submissions by result",
            ["result"],
            registry=r,
        )
        self.sync_messages = Counter(
            "atg_sync_messages_total",
            "Cross-domain sync messages by result",
            ["result"],
            registry=r,
        )
        self.pow = Counter(
            "atg_pow_challenges_total",
            "Proof-of-work challenge events",
            ["event"],
            registry=r,
        )
        self.sessions = Counter(
            "atg_sessions_total",
            "Session credential events",
            ["event"],
            registry=r,
        )
        self.trusted_remotes = Gauge(
            "atg_trusted_remotes",
            "Number of configured trusted remote domains",
            registry=r,
        )
        self.http_requests = Counter(
            "atg_http_requests_total",
            "HTTP requests",
            ["route", "status"],
            registry=r,
        )
        self.http_latency = Histogram(
            "atg_http_request_latency_seconds",
            "HTTP request latency in seconds",
            ["route"],
            registry=r,
        )
        self.dropped_labels = Counter(
            "atg_metrics_dropped_labels_total",
            "Label values folded into 'other'",
            ["metric"],
            registry=r,
        )

    def _label(self, metric: str, value: Optional[str], allowed: FrozenSet[str]) -> str:
        v = _bounded(value, allowed)
        if v == "other":
            self.dropped_labels.labels(metric=metric).inc()
        return v

    # ----- recorders -----

    def record_decision(
        self,
        outcome: str,
        reason: str,
        latency_s: float,
        *,
        risk: Optional[int] = None,
    ) -> None:
        o = self._label("decisions", outcome, _OUTCOMES)
        self.decisions.labels(outcome=o, reason=self._label("decisions", reason, _REASONS)).inc()
        self.decision_latency.labels(outcome=o).observe(max(0.0, float(latency_s)))
        if risk is not None:
            self.risk_scores.observe(float(risk))

    def record_feedback(self, result: str) -> None:
        self.feedback.labels(result=self._label("feedback", result, _FEEDBACK_RESULTS)).inc()

    def record_sync(self, result: str) -> None:
        self.sync_messages.labels(result=self._label("sync", result, _SYNC_RESULTS)).inc()

    def record_pow(self, event: str) -> None:
        self.pow.labels(event=self._label("pow", event, _POW_EVENTS)).inc()

    def record_session(self, event: str) -> None:
        self.sessions.labels(event=self._label("sessions", event, _SESSION_EVENTS)).inc()

    def set_trusted_remotes(self, n: int) -> None:
        self.trusted_remotes.set(max(0, int(n)))

    def observe_http(self, route: str, status_code: int, elapsed: float) -> None:
        self.http_requests.labels(route=route, status=str(status_code)).inc()
        self.http_latency.labels(route=route).observe(max(0.0, elapsed))

    # ----- exposition -----

    def render(self) -> bytes:
        return generate_latest(self.registry)

    content_type = CONTENT_TYPE_LATEST

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of one sample (tests and /admin diagnostics)."""
        v = self.registry.get_sample_value(name, labels or {})
        return float(v) if v is not None else 0.0


__all__ = ["GatewayMetrics"]
