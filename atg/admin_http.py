# FILE: atg/admin_http.py
from __future__ import annotations

"""
Admin-only HTTP surface for the trust gateway control plane:

- trusted remote domains (set / list) and manual reputation publish;
- session revocation;
- abuse flags;
- settings inspection, tighten-only overrides and reload.

Every route sits under /admin and is guarded by a shared admin token.
The acting principal (X-ATG-Admin-Principal) is what CrossDomainSync checks
for trust-set changes, so a valid token alone cannot add a remote.
"""

import hmac
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.routing import APIRouter
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .logging import log_security_event
from .runtime import GatewayRuntime
from .service_http import install_error_handlers

__all__ = [
    "AdminAppConfig",
    "load_admin_config",
    "create_admin_app",
    "TrustedRemoteIn",
    "PublishIn",
    "FlagIn",
    "OverrideIn",
]

logger = logging.getLogger("atg.admin")


@dataclass
class AdminAppConfig:
    api_version: str = "0.1.0"
    enable_docs: bool = False
    max_body_bytes: int = 64 * 1024
    allow_no_auth: bool = False
    token_env_var: str = "ATG_ADMIN_TOKEN"


def load_admin_config() -> AdminAppConfig:
    return AdminAppConfig(
        api_version=os.getenv("ATG_ADMIN_API_VERSION", "0.1.0"),
        enable_docs=os.getenv("ATG_ADMIN_ENABLE_DOCS", "0") == "1",
        max_body_bytes=int(os.getenv("ATG_ADMIN_MAX_BODY_BYTES", str(64 * 1024))),
        allow_no_auth=os.getenv("ATG_ADMIN_ALLOW_NO_AUTH", "0") == "1",
        token_env_var=os.getenv("ATG_ADMIN_TOKEN_ENV_VAR", "ATG_ADMIN_TOKEN"),
    )


# -----------------------------------------------------------------------------
# I/O models
# -----------------------------------------------------------------------------


class TrustedRemoteIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    authority_key: str = Field(..., min_length=1, max_length=512)


class PublishIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str = Field(..., min_length=1, max_length=256)
    domains: List[str] = Field(default_factory=list, max_length=64)

    @field_validator("domains")
    @classmethod
    def _strip_domains(cls, v: List[str]) -> List[str]:
        return [d.strip() for d in v if d and d.strip()]


class FlagIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(..., min_length=1, max_length=256)


class OverrideIn(BaseModel):
    """
    In-memory settings overrides. Tighten-only and immutable-field rules are
    applied by ReloadableSettings; ignored keys are reported back.
    """

    model_config = ConfigDict(extra="forbid")

    changes: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


def create_admin_app(
    runtime: GatewayRuntime,
    *,
    admin_token: Optional[str] = None,
    config: Optional[AdminAppConfig] = None,
) -> FastAPI:
    """
    Build the admin FastAPI app over an existing runtime (usually the one the
    public plane serves).
    """
    cfg = config or load_admin_config()
    want = (
        admin_token
        if admin_token is not None
        else (os.environ.get(cfg.token_env_var) or "").strip()
    )
    lock = threading.Lock()

    def _require_admin(
        token: Optional[str] = Header(default=None, alias="X-ATG-Admin-Token"),
    ) -> None:
        """
        Header token auth. With no token configured, requests are refused
        unless allow_no_auth is set (local development only).
        """
        if not want:
            if cfg.allow_no_auth:
                return
            raise HTTPException(status_code=401, detail="admin token required")

        if not token or len(token) != len(want):
            raise HTTPException(status_code=403, detail="forbidden")

        if not hmac.compare_digest(token, want):
            raise HTTPException(status_code=403, detail="forbidden")

    def _principal(request: Request) -> str:
        return (request.headers.get("X-ATG-Admin-Principal") or "").strip()

    app = FastAPI(
        title="atg-admin",
        version=cfg.api_version,
        openapi_url="/openapi.json" if cfg.enable_docs else None,
        docs_url="/docs" if cfg.enable_docs else None,
        redoc_url="/redoc" if cfg.enable_docs else None,
    )
    app.state.runtime = runtime
    install_error_handlers(app)

    @app.middleware("http")
    async def _size_guard_mw(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl is not None:
            try:
                too_big = int(cl) > cfg.max_body_bytes
            except ValueError:
                return Response(status_code=400, content="invalid content-length")
            if too_big:
                return Response(status_code=413, content="payload too large")
        resp = await call_next(request)
        resp.headers["X-ATG-Admin-Version"] = cfg.api_version
        return resp

    router = APIRouter(prefix="/admin", dependencies=[Depends(_require_admin)])
    rt = runtime

    # Remote domains ----------------------------------------------------------

    @router.put("/remotes/{domain_id}")
    def put_remote(domain_id: str, body: TrustedRemoteIn, request: Request) -> Dict[str, Any]:
        actor = _principal(request)
        rt.sync.set_trusted_remote(domain_id, body.authority_key, actor=actor)
        remotes = rt.sync.list_trusted_remotes()
        rt.metrics.set_trusted_remotes(len(remotes))
        return {"ok": True, "domain_id": domain_id.strip(), "trusted_remotes": remotes}

    @router.get("/remotes")
    def list_remotes() -> Dict[str, Any]:
        return {"trusted_remotes": rt.sync.list_trusted_remotes()}

    @router.post("/sync/publish")
    def publish(body: PublishIn) -> Dict[str, Any]:
        domains = body.domains or list(rt.settings.get().remote_domain_list())
        if not domains:
            raise HTTPException(status_code=400, detail="no target domains")
        results: Dict[str, Any] = {}
        for domain_id in domains:
            try:
                results[domain_id] = {"ok": True, "handle": rt.sync.publish_reputation(body.subject, domain_id)}
            except ConnectionError as e:
                logger.warning("publish to %s failed: %s", domain_id, e)
                results[domain_id] = {"ok": False, "error": "transport_unavailable"}
        return {"subject": body.subject, "results": results}

    # Sessions / abuse --------------------------------------------------------

    @router.post("/sessions/{session_id}/revoke")
    def revoke_session(session_id: str, request: Request) -> Dict[str, Any]:
        rt.gateway.revoke_session(session_id)
        log_security_event(
            logger,
            threat_label="admin_session_revoke",
            actor=_principal(request) or None,
            extra={"session_id": session_id},
        )
        return {"ok": True, "session_id": session_id}

    @router.post("/subjects/{subject}/flags")
    def flag_subject(subject: str, body: FlagIn, request: Request) -> Dict[str, Any]:
        n = rt.gateway.flag_abuse(subject, body.reason, actor=_principal(request))
        return {"ok": True, "subject": subject.strip().lower(), "flags": n}

    # Settings ----------------------------------------------------------------

    @router.get("/config")
    def config_get() -> Dict[str, Any]:
        s = rt.settings.get()
        return {"config_hash": s.config_hash(), "settings": s.model_dump(mode="json")}

    @router.post("/config/override")
    def config_override(body: OverrideIn, request: Request) -> Dict[str, Any]:
        with lock:
            before = rt.settings.get()
            after = rt.settings.set(**body.changes)
        applied = {
            k: getattr(after, k)
            for k in body.changes
            if hasattr(after, k) and getattr(after, k) != getattr(before, k)
        }
        ignored = sorted(k for k in body.changes if k not in applied)
        logger.info(
            "settings override",
            extra={"actor": _principal(request), "applied": sorted(applied), "ignored": ignored},
        )
        return {"config_hash": after.config_hash(), "applied": sorted(applied), "ignored": ignored}

    @router.post("/config/reload")
    def config_reload(request: Request) -> Dict[str, Any]:
        started = time.perf_counter()
        with lock:
            s = rt.settings.refresh()
        logger.info(
            "settings reloaded",
            extra={
                "actor": _principal(request),
                "config_hash": s.config_hash(),
                "elapsed_ms": round((time.perf_counter() - started) * 1000.0, 3),
            },
        )
        return {"ok": True, "config_hash": s.config_hash()}

    app.include_router(router)
    return app
