"""
auth/audit.py -- Append-only security audit log.

record() is fire-and-forget from the caller's point of view: it never raises.
A failed insert must not turn a successful login into an error, so storage
exceptions are caught here and logged as warnings.

What is stored:
  - event type and outcome (both non-blank, enforced by CHECK constraints)
  - normalized actor / target emails
  - HMAC-SHA256 digests of the client ip and subnet keys; "unknown" -> NULL
  - metadata, coerced to JSON-safe values with bounded depth and size

What is logged: one line per event with redacted emails and only
"has ip hash" booleans. Raw addresses never leave the request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.emails import normalize_email, redact_email
from auth.models import SecurityAuditEvent
from auth.store import AuthStore
from auth.tokens import keyed_hash
from core.clock import Clock, utcnow
from core.network import UNKNOWN_KEY, NetworkFingerprint

logger = logging.getLogger("accessgate.audit")

# Event types
OTP_REQUEST = "auth.otp.request"
OTP_DELIVERY = "auth.otp.delivery"
OTP_VERIFY = "auth.otp.verify"
INVITE_CREATE = "auth.invite.create"
INVITE_ACTIVATE = "auth.invite.activate"
USER_UPDATE_ROLE = "admin.user.update_role"
USER_DELETE = "admin.user.delete"
USER_UPSERT = "admin.user.upsert"

_MAX_DEPTH = 2
_MAX_LIST_ITEMS = 20
_MAX_KEYS = 30


def json_safe(value: Any, depth: int = 0) -> Any:
    """Coerce arbitrary metadata into bounded, JSON-serializable values."""
    if depth > _MAX_DEPTH:
        return "[depth-limited]"
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(item, depth + 1) for item in list(value)[:_MAX_LIST_ITEMS]]
    if isinstance(value, dict):
        items = list(value.items())[:_MAX_KEYS]
        return {str(k): json_safe(v, depth + 1) for k, v in items}
    return str(value)


class SecurityAuditLog:
    """Record security-relevant events to the log and, when available, the database.

    Usage:
        audit = SecurityAuditLog(secret, store)
        await audit.record("auth.otp.verify", "ok", actor_email=email, network=fp)
    """

    def __init__(self, secret: str, store: AuthStore | None = None, clock: Clock = utcnow) -> None:
        self._secret = secret
        self._store = store
        self._clock = clock

    def _hash_network_key(self, value: str | None) -> str | None:
        if not value or value == UNKNOWN_KEY:
            return None
        return keyed_hash(self._secret, value)

    async def record(
        self,
        event_type: str,
        outcome: str,
        actor_email: str | None = None,
        target_email: str | None = None,
        network: NetworkFingerprint | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        event = SecurityAuditEvent(
            event_type=event_type.strip() or "unknown",
            outcome=outcome.strip() or "unknown",
            actor_email=normalize_email(actor_email) or None,
            target_email=normalize_email(target_email) or None,
            ip_key_hash=self._hash_network_key(network.ip_key if network else None),
            subnet_key_hash=self._hash_network_key(network.subnet_key if network else None),
            metadata=json_safe(metadata or {}),
            created_at=self._clock(),
        )

        logger.info(
            "%s outcome=%s actor=%s target=%s has_ip_hash=%s has_subnet_hash=%s",
            event.event_type,
            event.outcome,
            redact_email(event.actor_email),
            redact_email(event.target_email),
            event.ip_key_hash is not None,
            event.subnet_key_hash is not None,
        )

        if self._store is None:
            return
        try:
            await self._store.insert_audit_event(event)
        except Exception:
            logger.warning("Failed to persist security audit event %s", event.event_type, exc_info=True)
