# FILE: atg/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Callable, Dict, Optional, Set, Tuple

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("ATG_LOG_SCHEMA", "atg.log.v1")
_LOG_SERVICE = os.environ.get("ATG_SERVICE", "atg")
_LOG_VERSION = os.environ.get(
    "ATG_BUILD_VERSION", os.environ.get("ATG_VERSION", "0.0.0")
)
_LOG_ENV = os.environ.get("ATG_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "ATG_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Simple per-key rate limit (msgs/sec); 0 = disabled
try:
    _RATE_LIMIT = float(os.environ.get("ATG_LOG_RATE_LIMIT", "0"))
except ValueError:
    _RATE_LIMIT = 0.0

# Max chars per string field
try:
    _MAX_FIELD = max(512, int(os.environ.get("ATG_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("ATG_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive): headers and obvious secrets
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-payment",
    "x-session-credential",
    "x-origin-authority",
    "x-atg-admin-token",
    "x-atg-service-token",
    "authority_key",
    "origin_authority",
    "payment_evidence",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("ATG_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

_ALLOWED_OUTCOMES = {
    "admitted",
    "challenge-required",
    "payment-required",
    "denied",
    "error",
}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "atg_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _finite_float(x: Any) -> Optional[float]:
    try:
        xf = float(x)
    except (TypeError, ValueError):
        return None
    if xf != xf or xf in (float("inf"), float("-inf")):
        return None
    return xf


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(str(k)):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect non-standard LogRecord attributes (from `extra=`) into a scrubbed meta dict.
    """
    raw: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        raw[k] = _truncate(v)
    if not raw:
        return None
    return scrub_dict(raw)


# ---------- Very small rate limiter ----------
_rate_state: Dict[str, Tuple[int, int]] = {}  # key -> (count_in_sec, sec_epoch)


def _rate_ok(key: str) -> bool:
    if _RATE_LIMIT <= 0:
        return True
    now = int(time.time())
    cnt, sec = _rate_state.get(key, (0, now))
    if sec != now:
        cnt, sec = 0, now
    if cnt >= _RATE_LIMIT:
        return False
    _rate_state[key] = (cnt + 1, sec)
    return True


# ---------- JSON formatter ----------
def _merge_optional(dst: Dict[str, Any], **kvs: Any) -> None:
    for k, v in kvs.items():
        if v is None:
            continue
        if isinstance(v, float):
            vv = _finite_float(v)
            if vv is None:
                continue
            dst[k] = vv
        else:
            dst[k] = _truncate(v)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, msg, logger, req_id
      - gateway: subject, outcome, reason, reputation, risk, price,
        stake, decision_id, session_id, domain_id
      - http: path, method, status, latency_ms, bytes_in, bytes_out
      - security: threat_label, severity, actor
    """

    def __init__(
        self,
        *,
        include_stack: bool = True,
        rate_key_fn: Optional[Callable[[logging.LogRecord], str]] = None,
    ):
        super().__init__()
        self.include_stack = include_stack
        self.rate_key_fn = rate_key_fn

    @staticmethod
    def _normalize_envelope(evt: Dict[str, Any]) -> None:
        """
        Drop out-of-vocabulary outcomes; clamp scores into [0, 100].
        """
        outcome = evt.get("outcome")
        if isinstance(outcome, str) and outcome not in _ALLOWED_OUTCOMES:
            evt.pop("outcome", None)

        for fld in ("reputation", "risk"):
            if fld not in evt:
                continue
            v = _finite_float(evt.get(fld))
            if v is None:
                evt.pop(fld, None)
                continue
            evt[fld] = max(0.0, min(100.0, v))

        sev = evt.get("severity")
        if sev is not None:
            v = _finite_float(sev)
            if v is None:
                evt.pop("severity", None)
            else:
                evt["severity"] = max(0.0, min(1.0, v))

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        key = self.rate_key_fn(record) if self.rate_key_fn else record.name
        if not _rate_ok(key):
            return ""

        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # prefer record attribute (explicit extra) over bound ctx
        def _pick(name: str) -> Optional[Any]:
            v = getattr(record, name, None)
            if v is not None:
                return v
            return ctx.get(name)

        envelope_keys = (
            "req_id",
            "subject",
            "outcome",
            "reason",
            "reputation",
            "risk",
            "price",
            "stake",
            "decision_id",
            "session_id",
            "domain_id",
            "path",
            "method",
            "status",
            "latency_ms",
            "bytes_in",
            "bytes_out",
            "threat_label",
            "severity",
            "actor",
        )
        _merge_optional(evt, **{k: _pick(k) for k in envelope_keys})

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        self._normalize_envelope(evt)

        meta = _meta_from_record(record, set(evt.keys()) | set(envelope_keys))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
    rate_key_fn: Optional[Callable[[logging.LogRecord], str]] = None,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    fmt = JSONFormatter(include_stack=include_stack, rate_key_fn=rate_key_fn)
    h = logging.StreamHandler(stream=stream)
    h.setFormatter(fmt)
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """
    Get or create a request id and bind it into the logging context.
    """
    rid = None
    if headers:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        rid = lowered.get("x-request-id")
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_decision(
    logger: logging.Logger,
    *,
    outcome: str,
    reason: str = "",
    subject: Optional[str] = None,
    reputation: Optional[float] = None,
    risk: Optional[float] = None,
    price: Optional[float] = None,
    decision_id: Optional[str] = None,
    message: str = "decision",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log one gateway decision: numeric signals and short tags only.
    """
    extra_dict: Dict[str, Any] = {
        "outcome": outcome,
        "reason": reason or None,
        "subject": subject,
        "reputation": _finite_float(reputation) if reputation is not None else None,
        "risk": _finite_float(risk) if risk is not None else None,
        "price": _finite_float(price) if price is not None else None,
        "decision_id": decision_id,
    }
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            key = str(k)
            extra_dict[key] = "***" if _redact_key(key) else _truncate(v)
    logger.log(level, message, extra={k: v for k, v in extra_dict.items() if v is not None})


def log_security_event(
    logger: logging.Logger,
    *,
    threat_label: str,
    severity: Optional[float] = None,
    subject: Optional[str] = None,
    domain_id: Optional[str] = None,
    actor: Optional[str] = None,
    message: str = "security_event",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Security events: untrusted sync senders, abuse flags, revocations,
    unauthorized configuration attempts.
    """
    extra_dict: Dict[str, Any] = {
        "threat_label": threat_label,
        "severity": _finite_float(severity) if severity is not None else None,
        "subject": subject,
        "domain_id": domain_id,
        "actor": actor,
    }
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            key = str(k)
            extra_dict[key] = "***" if _redact_key(key) else _truncate(v)
    logger.log(level, message, extra={k: v for k, v in extra_dict.items() if v is not None})


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    ASGI middleware that emits a JSON finish line per request with
    req_id, method, path, status, latency_ms and bytes in/out.

    Bodies are never logged; headers only when `log_headers` is set, scrubbed.
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "atg.http",
        log_headers: bool = False,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        t0 = time.perf_counter()
        status_holder = {"code": None}
        bytes_out_holder = {"n": 0}
        bytes_in = 0

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            if message["type"] == "http.response.body":
                bytes_out_holder["n"] += len(message.get("body", b"") or b"")
            await send(message)

        async def _recv_wrapper():
            nonlocal bytes_in
            msg = await receive()
            if msg["type"] == "http.request":
                bytes_in += len(msg.get("body", b"") or b"")
            return msg

        try:
            await self.app(scope, _recv_wrapper, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "path": path,
                    "method": method,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                    "bytes_in": bytes_in,
                    "bytes_out": bytes_out_holder["n"],
                },
            )
            unbind("path", "method", "subject", "req_id")


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "atg") -> logging.Logger:
    """
    Return a logger; the first call configures root + uvicorn for JSON output.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("ATG_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "log_decision",
    "log_security_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
