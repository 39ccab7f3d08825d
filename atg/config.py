# atg/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from .kv import canonical_kv_hash


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(x.strip() for x in (raw or "").split(",") if x.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


def _break_glass_enabled() -> bool:
    """
    Break-glass mode: when set, runtime reloads may relax admission policy.
    """
    token = os.environ.get("ATG_BREAK_GLASS_TOKEN", "").strip()
    return bool(token)


# ---------------------------------------------------------------------------
# Security / governance metadata
# ---------------------------------------------------------------------------

# Bool knobs that may only go False -> True without break-glass.
_TIGHTEN_ONLY_BOOL_FIELDS: FrozenSet[str] = frozenset(
    {
        "require_registration",
        "require_stake",
    }
)

# Numeric knobs where larger is stricter: new >= old always allowed,
# new < old only under break-glass.
_TIGHTEN_ONLY_FLOOR_FIELDS: FrozenSet[str] = frozenset(
    {
        "min_score",
        "min_stake",
        "pow_difficulty",
    }
)


# ---------------------------------------------------------------------------
# Settings model (single canonical policy snapshot)
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "Agent Trust Gateway"
    config_origin: str = "defaults"
    config_version: str = "v0.1"

    # --- HTTP rate limiting (token bucket, per client IP) -------------------

    http_rate_capacity: float = 60.0
    http_rate_refill_per_s: float = 30.0

    # --- Ledger ---------------------------------------------------------------

    # "memory://" or "sqlite:///path/to/file.db"
    ledger_dsn: str = "memory://"

    # --- Admission policy -----------------------------------------------------

    base_price: float = 0.01
    min_stake: float = 0.0
    min_score: int = 0
    require_registration: bool = True
    require_stake: bool = False
    stake_ceiling: float = 2e18

    # --- Risk -----------------------------------------------------------------

    risk_block_threshold: int = 80
    risk_block_flags: int = 3
    payload_risk_bytes: int = 100_000
    off_hours_penalty: int = 0

    # --- Proof of work --------------------------------------------------------

    pow_difficulty: int = 0
    pow_ttl_s: float = 30.0

    # --- Sessions -------------------------------------------------------------

    session_ttl_s: float = 300.0
    session_max_requests: int = 100
    session_max_cost: float = 1.0

    # --- Cross-domain sync ----------------------------------------------------

    local_domain_id: str = "local"
    # comma-separated domain ids consulted for the aggregated score
    remote_domains: str = ""
    # "arrival" (last write wins by arrival) or "claimed_timestamp"
    sync_policy: str = "arrival"
    # comma-separated principals allowed to configure trusted remotes
    admin_principals: str = "admin"

    # --- Payment terms --------------------------------------------------------

    pay_to: str = ""
    asset: str = "USDC"
    network: str = "base-sepolia"
    payment_timeout_s: int = 60

    # --- Config / override safety ---------------------------------------------

    allow_runtime_override: bool = True
    immutable_fields: FrozenSet[str] = frozenset({"config_version", "ledger_dsn"})

    @field_validator("sync_policy")
    @classmethod
    def _sync_policy_ok(cls, v: str) -> str:
        if v not in ("arrival", "claimed_timestamp"):
            raise ValueError("sync_policy must be 'arrival' or 'claimed_timestamp'")
        return v

    @field_validator("pow_difficulty")
    @classmethod
    def _pow_bounds(cls, v: int) -> int:
        if v < 0 or v > 256:
            raise ValueError("pow_difficulty must be in [0, 256]")
        return v

    @field_validator("min_score")
    @classmethod
    def _score_bounds(cls, v: int) -> int:
        if v < 0 or v > 100:
            raise ValueError("min_score must be in [0, 100]")
        return v

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def remote_domain_list(self) -> Tuple[str, ...]:
        return _split_csv(self.remote_domains)

    def admin_principal_set(self) -> FrozenSet[str]:
        return frozenset(_split_csv(self.admin_principals))

    def config_hash(self) -> str:
        """
        Stable hash of the current settings; safe to put in headers and logs.
        Secrets are never stored in Settings.
        """
        payload = self.model_dump(mode="json")
        payload["immutable_fields"] = sorted(self.immutable_fields)
        return canonical_kv_hash(
            payload,
            ctx="atg:settings",
            label="settings",
        )


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by ATG_CONFIG_PATH.
      3. Environment variables (ATG_*), with bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("ATG_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    # 2) Environment overrides
    env_locked_fields: FrozenSet[str] = frozenset({"config_version"})

    def _env_override(name: str, key: str, parser, bounds=None) -> None:
        if key in env_locked_fields:
            return
        old = merged.get(key)
        new = parser(name, old)
        if bounds is not None and isinstance(new, (int, float)):
            lo, hi = bounds
            if new < lo or new > hi:
                _log.warning("ignoring out-of-range %s=%r", name, new)
                return
        merged[key] = new

    _env_override("ATG_DEBUG", "debug", _env_bool)
    _env_override("ATG_VERSION", "version", _env_str)

    _env_override("ATG_HTTP_RATE_CAP", "http_rate_capacity", _env_float, (0.0, 1e9))
    _env_override("ATG_HTTP_RATE_REFILL", "http_rate_refill_per_s", _env_float, (0.0, 1e9))

    _env_override("ATG_LEDGER_DSN", "ledger_dsn", _env_str)

    _env_override("ATG_BASE_PRICE", "base_price", _env_float, (0.0, 1e12))
    _env_override("ATG_MIN_STAKE", "min_stake", _env_float, (0.0, 1e30))
    _env_override("ATG_MIN_SCORE", "min_score", _env_int, (0, 100))
    _env_override("ATG_REQUIRE_REGISTRATION", "require_registration", _env_bool)
    _env_override("ATG_REQUIRE_STAKE", "require_stake", _env_bool)
    _env_override("ATG_STAKE_CEILING", "stake_ceiling", _env_float, (1.0, 1e30))

    _env_override("ATG_RISK_BLOCK_THRESHOLD", "risk_block_threshold", _env_int, (0, 100))
    _env_override("ATG_RISK_BLOCK_FLAGS", "risk_block_flags", _env_int, (1, 1000))
    _env_override("ATG_PAYLOAD_RISK_BYTES", "payload_risk_bytes", _env_int, (0, 1 << 31))
    _env_override("ATG_OFF_HOURS_PENALTY", "off_hours_penalty", _env_int, (0, 100))

    _env_override("ATG_POW_DIFFICULTY", "pow_difficulty", _env_int, (0, 256))
    _env_override("ATG_POW_TTL_S", "pow_ttl_s", _env_float, (1.0, 3600.0))

    _env_override("ATG_SESSION_TTL_S", "session_ttl_s", _env_float, (1.0, 86_400.0))
    _env_override("ATG_SESSION_MAX_REQUESTS", "session_max_requests", _env_int, (1, 1_000_000))
    _env_override("ATG_SESSION_MAX_COST", "session_max_cost", _env_float, (0.0, 1e12))

    _env_override("ATG_LOCAL_DOMAIN_ID", "local_domain_id", _env_str)
    _env_override("ATG_REMOTE_DOMAINS", "remote_domains", _env_str)
    _env_override("ATG_SYNC_POLICY", "sync_policy", _env_str)
    _env_override("ATG_ADMIN_PRINCIPALS", "admin_principals", _env_str)

    _env_override("ATG_PAY_TO", "pay_to", _env_str)
    _env_override("ATG_ASSET", "asset", _env_str)
    _env_override("ATG_NETWORK", "network", _env_str)
    _env_override("ATG_PAYMENT_TIMEOUT_S", "payment_timeout_s", _env_int, (1, 3600))

    _env_override("ATG_ALLOW_RUNTIME_OVERRIDE", "allow_runtime_override", _env_bool)

    merged["config_origin"] = origin
    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings with controlled refresh/override.

    Properties:
      - get(): returns an immutable Settings snapshot.
      - refresh(): reloads, applies tighten-only constraints,
                   preserves immutable_fields unless break-glass.
      - set(): bounded in-memory overrides with the same constraints.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    # ---- internal helpers ---------------------------------------------- #

    @staticmethod
    def _apply_tighten_only(
        field: str,
        old_value: Any,
        new_value: Any,
        *,
        break_glass: bool,
    ) -> Any:
        """
        Directional constraints for admission-policy knobs.

        - Bool fields in _TIGHTEN_ONLY_BOOL_FIELDS: True -> False blocked.
        - Numeric fields in _TIGHTEN_ONLY_FLOOR_FIELDS: lowering blocked.
        Break-glass lifts both.
        """
        if break_glass:
            return new_value

        if field in _TIGHTEN_ONLY_BOOL_FIELDS and isinstance(old_value, bool):
            if old_value and not bool(new_value):
                _log.warning("blocked relaxation of %s", field)
                return old_value
            return new_value

        if field in _TIGHTEN_ONLY_FLOOR_FIELDS and isinstance(old_value, (int, float)):
            try:
                lowered = float(new_value) < float(old_value)
            except (TypeError, ValueError):
                return old_value
            if lowered:
                _log.warning("blocked relaxation of %s", field)
                return old_value
            return new_value

        return new_value

    def _merge(self, old: Settings, changes: Dict[str, Any]) -> Settings:
        data = old.model_dump()
        immutables = set(old.immutable_fields)
        break_glass = _break_glass_enabled()

        for key, value in changes.items():
            if key not in data:
                continue
            if not break_glass and (key in immutables or key == "immutable_fields"):
                continue
            data[key] = self._apply_tighten_only(
                key,
                data[key],
                value,
                break_glass=break_glass,
            )
        return Settings(**data)

    # ---- public API ----------------------------------------------------- #

    def refresh(self) -> Settings:
        """
        Reload configuration from file and environment.
        """
        with self._lock:
            fresh = _load_settings().model_dump()
            updated = self._merge(self._settings, fresh)
            self._settings = updated
            _log.info("settings refreshed", extra={"config_hash": updated.config_hash()})
            return updated

    def set(self, **overrides: Any) -> Settings:
        """
        Apply restricted in-memory overrides.

        No-op when allow_runtime_override is False (unless break-glass).
        """
        with self._lock:
            current = self._settings
            if not current.allow_runtime_override and not _break_glass_enabled():
                return current
            updated = self._merge(current, overrides)
            self._settings = updated
            return updated


def make_reloadable_settings(initial: Optional[Settings] = None) -> ReloadableSettings:
    return ReloadableSettings(initial)


__all__ = [
    "Settings",
    "ReloadableSettings",
    "make_reloadable_settings",
]
