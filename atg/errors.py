# FILE: atg/errors.py
from __future__ import annotations

"""
Error taxonomy for the trust gateway.

Every error carries a stable machine-readable `code` so the HTTP planes can
map it to a status without string matching. Policy rejections additionally
carry the margin the caller is missing, so they can self-remediate.

Challenge-required and payment-required are decision states, not errors;
see `atg.gateway.GatewayDecision`.
"""

from typing import Any, Dict, Optional


class GatewayError(RuntimeError):
    """Base class for all gateway errors."""

    code: str = "gateway_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.details: Dict[str, Any] = dict(details)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.details:
            out["details"] = dict(self.details)
        return out


# ---------- Input / precondition ----------


class InvalidInput(GatewayError):
    """Malformed score, weight or message; retry with corrected input."""

    code = "invalid_input"


class InvalidScore(InvalidInput):
    code = "invalid_score"


class UnknownSubject(GatewayError):
    code = "unknown_subject"

    def __init__(self, subject: str) -> None:
        super().__init__(f"subject not registered: {subject}", subject=subject)
        self.subject = subject


class UnknownRemoteDomain(GatewayError):
    code = "unknown_remote_domain"

    def __init__(self, domain_id: str, message: str = "") -> None:
        super().__init__(message or f"unknown remote domain: {domain_id}", domain_id=domain_id)
        self.domain_id = domain_id


class RemoteNotTrusted(UnknownRemoteDomain):
    """Publishing to a domain with no configured authority."""

    code = "remote_not_trusted"

    def __init__(self, domain_id: str) -> None:
        super().__init__(domain_id, f"no trusted authority for domain: {domain_id}")


# ---------- Security ----------


class UntrustedSender(GatewayError):
    """Inbound sync message whose (domain, authority) pair is not trusted."""

    code = "untrusted_sender"

    def __init__(self, domain_id: str) -> None:
        # Never echo the presented authority back.
        super().__init__(f"untrusted sender for domain: {domain_id}", domain_id=domain_id)
        self.domain_id = domain_id


class Unauthorized(GatewayError):
    code = "unauthorized"


# ---------- Policy rejections ----------


class PolicyRejection(GatewayError):
    """
    Policy rejection carrying required / current values and the missing margin.
    """

    code = "policy_rejection"

    def __init__(self, message: str, *, required: float, current: float) -> None:
        missing = max(0.0, float(required) - float(current))
        super().__init__(message, required=required, current=current, missing=missing)
        self.required = required
        self.current = current
        self.missing = missing


class InsufficientStake(PolicyRejection):
    code = "insufficient_stake"

    def __init__(self, *, required: float, current: float) -> None:
        super().__init__("insufficient stake", required=required, current=current)


class InsufficientReputation(PolicyRejection):
    code = "insufficient_reputation"

    def __init__(self, *, required: float, current: float) -> None:
        super().__init__("insufficient reputation", required=required, current=current)


class ExcessiveRisk(PolicyRejection):
    code = "excessive_risk"

    def __init__(self, *, risk: int, limit: int, flags: int) -> None:
        # For risk the "missing margin" is how far the caller is over the limit.
        super().__init__("risk too high", required=limit, current=risk)
        self.missing = max(0, risk - limit)
        self.details["missing"] = self.missing
        self.details["flags"] = flags
        self.flags = flags


# ---------- Session ----------


class SessionInvalid(GatewayError):
    """
    Expired, revoked, exhausted or tampered credential. Never fatal: the
    gateway falls back to the full pipeline.
    """

    code = "session_invalid"

    def __init__(self, reason: str, session_id: Optional[str] = None) -> None:
        super().__init__(f"session invalid: {reason}", reason=reason)
        self.reason = reason
        self.session_id = session_id


__all__ = [
    "GatewayError",
    "InvalidInput",
    "InvalidScore",
    "UnknownSubject",
    "UnknownRemoteDomain",
    "RemoteNotTrusted",
    "UntrustedSender",
    "Unauthorized",
    "PolicyRejection",
    "InsufficientStake",
    "InsufficientReputation",
    "ExcessiveRisk",
    "SessionInvalid",
]
