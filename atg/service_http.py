# FILE: atg/service_http.py
from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware

from .collaborators import normalize_identifier
from .errors import GatewayError, UnknownSubject
from .gateway import AccessRequest, GatewayDecision, Outcome
from .ledger import tier_for
from .logging import RequestLogMiddleware, get_logger
from .middleware import (
    MetricsMiddleware,
    RateLimitConfig,
    RateLimitMiddleware,
    RequestContextMiddleware,
)
from .runtime import GatewayRuntime, build_runtime


# ---------------------------------------------------------------------------
# Public plane configuration
# ---------------------------------------------------------------------------


@dataclass
class ServiceHttpConfig:
    """
    Configuration for the public HTTP plane.

    Distinct from the admin plane: no trust-set changes, no revocation, no
    config reload. Mutating subject endpoints can be gated by a service token.
    """

    api_version: str = "0.1.0"
    enable_docs: bool = False

    max_body_bytes: int = 1 * 1024 * 1024

    require_service_token: bool = False
    allow_no_auth_local: bool = True
    service_token_env_var: str = "ATG_SERVICE_TOKEN"

    cors_allow_all: bool = False
    cors_origins: Tuple[str, ...] = (
        "http://127.0.0.1",
        "http://127.0.0.1:3000",
        "http://localhost",
        "http://localhost:3000",
    )


def _split_env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [x.strip() for x in raw.split(",") if x.strip()]


def load_http_config() -> ServiceHttpConfig:
    return ServiceHttpConfig(
        api_version=os.getenv("ATG_HTTP_API_VERSION", "0.1.0"),
        enable_docs=os.getenv("ATG_HTTP_ENABLE_DOCS", "0") == "1",
        max_body_bytes=int(os.getenv("ATG_HTTP_MAX_BODY_BYTES", str(1 * 1024 * 1024))),
        require_service_token=os.getenv("ATG_HTTP_REQUIRE_TOKEN", "0") == "1",
        allow_no_auth_local=os.getenv("ATG_HTTP_ALLOW_NO_AUTH_LOCAL", "1") == "1",
        service_token_env_var=os.getenv("ATG_HTTP_SERVICE_TOKEN_ENV_VAR", "ATG_SERVICE_TOKEN"),
        cors_allow_all=os.getenv("ATG_HTTP_CORS_ALLOW_ALL", "0") == "1",
        cors_origins=tuple(_split_env_list("ATG_HTTP_CORS_ORIGINS"))
        or (
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
            "http://localhost",
            "http://localhost:3000",
        ),
    )


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

_ERROR_STATUS: Dict[str, int] = {
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "invalid_score": status.HTTP_400_BAD_REQUEST,
    "unknown_subject": status.HTTP_404_NOT_FOUND,
    "unknown_remote_domain": status.HTTP_404_NOT_FOUND,
    "remote_not_trusted": status.HTTP_404_NOT_FOUND,
    "untrusted_sender": status.HTTP_403_FORBIDDEN,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "insufficient_stake": status.HTTP_402_PAYMENT_REQUIRED,
    "insufficient_reputation": status.HTTP_402_PAYMENT_REQUIRED,
    "excessive_risk": status.HTTP_403_FORBIDDEN,
    "session_invalid": status.HTTP_401_UNAUTHORIZED,
}

# Denials the caller can remedy by paying, staking or earning reputation.
_PAYMENT_CLASS_DENIALS = frozenset({"insufficient_stake", "insufficient_reputation", "no_stake"})


def status_for_error(exc: GatewayError) -> int:
    return _ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)


def status_for_decision(decision: GatewayDecision) -> int:
    if decision.outcome is Outcome.ADMITTED:
        return status.HTTP_200_OK
    if decision.outcome is Outcome.CHALLENGE_REQUIRED:
        return status.HTTP_429_TOO_MANY_REQUESTS
    if decision.outcome is Outcome.PAYMENT_REQUIRED:
        return status.HTTP_402_PAYMENT_REQUIRED
    if decision.outcome is Outcome.DENIED:
        if decision.reason in _PAYMENT_CLASS_DENIALS:
            return status.HTTP_402_PAYMENT_REQUIRED
        if decision.reason in ("invalid_identifier", "invalid_path"):
            return status.HTTP_400_BAD_REQUEST
        return status.HTTP_403_FORBIDDEN
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=status_for_error(exc))


# ---------------------------------------------------------------------------
# Pydantic I/O models
# ---------------------------------------------------------------------------


class FeedbackIn(BaseModel):
    """
    Either `score` (-1, 0, +1) or `success`; `success` also marks a failure
    in the subject's risk profile when False.
    """

    model_config = ConfigDict(extra="ignore")

    score: Optional[int] = None
    success: Optional[bool] = None
    weight: float = 1.0
    evidence: str = Field("", max_length=1024)
    submitter: str = Field("", max_length=256)


class FeedbackOut(BaseModel):
    subject: str
    seq: int
    score: int
    feedback_count: int


class ReputationOut(BaseModel):
    subject: str
    score: int
    tier: str
    feedback_count: int
    aggregate: Optional[Dict[str, Any]] = None


class ServiceTokenAuth:
    """
    Service-level token guard for mutating public endpoints: a single shared
    token per process, optionally bypassed for local development.
    """

    def __init__(self, cfg: ServiceHttpConfig, service_token: str) -> None:
        self.cfg = cfg
        self.token = service_token

    def __call__(
        self,
        x_token: Optional[str] = Header(default=None, alias="X-ATG-Service-Token"),
    ) -> None:
        if not self.cfg.require_service_token:
            return

        target = self.token
        if not target:
            if self.cfg.allow_no_auth_local:
                return
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="service token required",
            )

        if not x_token or len(x_token) != len(target):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

        if not hmac.compare_digest(x_token, target):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


# ---------------------------------------------------------------------------
# App factory: public plane
# ---------------------------------------------------------------------------


def _decision_headers(decision: GatewayDecision) -> Dict[str, str]:
    headers: Dict[str, str] = {"X-Decision-Id": decision.decision_id}
    if decision.session:
        headers["X-Session-Credential"] = decision.session
    if decision.reputation is not None:
        headers["X-Trust-Score"] = str(decision.reputation)
    if decision.risk is not None:
        headers["X-Risk-Score"] = str(decision.risk)
    if decision.challenge is not None:
        headers["X-PoW-Challenge"] = decision.challenge.challenge
        headers["X-PoW-Difficulty"] = str(decision.challenge.difficulty)
    return headers


def _decision_body(decision: GatewayDecision) -> Dict[str, Any]:
    if decision.outcome is Outcome.ERROR:
        return {
            "outcome": decision.outcome.value,
            "reason": decision.reason,
            "decision_id": decision.decision_id,
        }
    return decision.to_dict()


def create_app(
    runtime: Optional[GatewayRuntime] = None,
    *,
    http_config: Optional[ServiceHttpConfig] = None,
    service_token: Optional[str] = None,
) -> FastAPI:
    """
    Build the public HTTP plane.

    - /v1/access: the admission pipeline;
    - subject reputation, feedback, cross-domain view and pricing quotes;
    - /v1/sync/inbound: callback for the cross-domain transport;
    - health/readiness/version/metrics.
    """
    cfg = http_config or load_http_config()
    rt = runtime or build_runtime()
    token = (
        service_token
        if service_token is not None
        else (os.environ.get(cfg.service_token_env_var) or "").strip()
    )

    app = FastAPI(
        title="atg-gateway",
        version=cfg.api_version,
        openapi_url="/openapi.json" if cfg.enable_docs else None,
        docs_url="/docs" if cfg.enable_docs else None,
        redoc_url="/redoc" if cfg.enable_docs else None,
    )
    app.state.runtime = rt

    logger = get_logger("atg.http")
    install_error_handlers(app)
    require_service_token = ServiceTokenAuth(cfg, token)
    settings = rt.settings
    gateway = rt.gateway

    # Edge middlewares (outermost last): body size guard, metrics, per-IP
    # rate limit, request id, CORS, request logs.
    @app.middleware("http")
    async def body_size_and_version_guard(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl is not None:
            try:
                cl_v = int(cl)
            except ValueError:
                return JSONResponse({"detail": "invalid content-length"}, status_code=400)
            if cl_v > cfg.max_body_bytes:
                return JSONResponse({"detail": "body too large"}, status_code=413)

        response = await call_next(request)
        response.headers["X-ATG-Http-Version"] = cfg.api_version
        response.headers["X-ATG-Config-Hash"] = settings.get().config_hash()
        return response

    s0 = settings.get()
    app.add_middleware(MetricsMiddleware, metrics=rt.metrics)
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            capacity=s0.http_rate_capacity,
            refill_per_s=s0.http_rate_refill_per_s,
        ),
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if cfg.cors_allow_all else list(cfg.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-Id",
            "X-Session-Credential",
            "X-Trust-Score",
            "X-Risk-Score",
            "X-Decision-Id",
            "X-PoW-Challenge",
            "X-PoW-Difficulty",
            "X-ATG-Config-Hash",
        ],
    )
    app.add_middleware(RequestLogMiddleware)

    # -----------------------------------------------------------------------
    # Health / ready / version / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        s = settings.get()
        return {
            "ok": True,
            "config_hash": s.config_hash(),
            "http_version": cfg.api_version,
            "domain_id": s.local_domain_id,
        }

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {
            "ready": True,
            "ledger": rt.ledger.stats(),
            "trusted_remotes": len(rt.sync.list_trusted_remotes()),
        }

    @app.get("/version")
    def version() -> Dict[str, Any]:
        s = settings.get()
        return {
            "version": cfg.api_version,
            "build": s.version,
            "config_version": s.config_version,
            "config_hash": s.config_hash(),
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(rt.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------------

    @app.post("/v1/access")
    async def access(
        request: Request,
        x_subject: Optional[str] = Header(default=None, alias="X-Subject"),
        x_session: Optional[str] = Header(default=None, alias="X-Session-Credential"),
        x_pow_challenge: Optional[str] = Header(default=None, alias="X-PoW-Challenge"),
        x_pow_nonce: Optional[str] = Header(default=None, alias="X-PoW-Nonce"),
        x_payment: Optional[str] = Header(default=None, alias="X-Payment"),
        resource: str = Query(default="/v1/access", max_length=512),
    ) -> JSONResponse:
        body = await request.body()
        req = AccessRequest(
            identifier=x_subject,
            path=resource,
            session_credential=x_session,
            pow_challenge=x_pow_challenge,
            pow_nonce=x_pow_nonce,
            payment_evidence=x_payment,
            payload_size=len(body),
        )
        decision = await run_in_threadpool(gateway.evaluate, req)
        return JSONResponse(
            _decision_body(decision),
            status_code=status_for_decision(decision),
            headers=_decision_headers(decision),
        )

    # -----------------------------------------------------------------------
    # Subjects
    # -----------------------------------------------------------------------

    @app.get("/v1/subjects/{subject}/reputation", response_model=ReputationOut)
    def reputation(subject: str) -> ReputationOut:
        key = normalize_identifier(subject)
        agg = rt.ledger.get_aggregate(key)
        if agg is None and not rt.registry.is_registered(key):
            raise UnknownSubject(key)
        score = rt.ledger.get_score(key)
        return ReputationOut(
            subject=key,
            score=score,
            tier=tier_for(score),
            feedback_count=rt.ledger.get_feedback_count(key),
            aggregate=agg.to_dict() if agg is not None else None,
        )

    @app.post(
        "/v1/subjects/{subject}/feedback",
        response_model=FeedbackOut,
        dependencies=[Depends(require_service_token)],
    )
    def feedback(subject: str, body: FeedbackIn) -> FeedbackOut:
        if (body.score is None) == (body.success is None):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="exactly one of score or success is required",
            )
        try:
            if body.success is not None:
                record = gateway.record_outcome(
                    subject,
                    body.success,
                    weight=body.weight,
                    evidence=body.evidence,
                    submitter=body.submitter,
                )
            else:
                record = rt.ledger.submit_feedback(
                    subject,
                    body.score,
                    body.weight,
                    body.evidence,
                    submitter=body.submitter,
                )
        except UnknownSubject:
            rt.metrics.record_feedback("unknown_subject")
            raise
        except GatewayError:
            rt.metrics.record_feedback("invalid")
            raise
        return FeedbackOut(
            subject=record.subject,
            seq=record.seq,
            score=rt.ledger.get_score(record.subject),
            feedback_count=rt.ledger.get_feedback_count(record.subject),
        )

    @app.get("/v1/subjects/{subject}/crossdomain")
    def crossdomain(
        subject: str,
        domains: str = Query(default="", max_length=2048),
        min_score: Optional[int] = Query(default=None, ge=0, le=100),
    ) -> Dict[str, Any]:
        domain_ids = [d.strip() for d in domains.split(",") if d.strip()]
        if not domain_ids:
            domain_ids = list(settings.get().remote_domain_list())
        out = rt.sync.score_breakdown(subject, domain_ids)
        out["domains"] = domain_ids
        if min_score is not None:
            out["min_score"] = min_score
            out["meets_threshold"] = rt.sync.meets_threshold_across_domains(
                subject, min_score, domain_ids
            )
        return out

    @app.get("/v1/pricing")
    def pricing(subject: Optional[str] = Query(default=None, max_length=256)) -> Dict[str, Any]:
        return gateway.quote(subject)

    # -----------------------------------------------------------------------
    # Cross-domain inbound
    # -----------------------------------------------------------------------

    @app.post("/v1/sync/inbound")
    async def sync_inbound(
        request: Request,
        x_origin_domain: str = Header(default="", alias="X-Origin-Domain"),
        x_origin_authority: str = Header(default="", alias="X-Origin-Authority"),
    ) -> Dict[str, Any]:
        payload = await request.body()
        entry = rt.sync.receive_message(x_origin_domain, x_origin_authority, payload)
        if entry is None:
            return {"accepted": False}
        logger.debug(
            "sync message applied",
            extra={"domain_id": x_origin_domain, "subject": entry.subject},
        )
        return {"accepted": True, "entry": entry.to_dict()}

    return app


__all__ = [
    "ServiceHttpConfig",
    "load_http_config",
    "ServiceTokenAuth",
    "status_for_error",
    "status_for_decision",
    "install_error_handlers",
    "create_app",
]
