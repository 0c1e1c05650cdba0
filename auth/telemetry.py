"""
auth/telemetry.py -- Security telemetry snapshot for the admin console.

Aggregates the audit log and rate-limit buckets into windowed outcome counts
and threshold alerts. Read-only; every number comes from existing rows.

Windows:
  otp_request_15m, otp_verify_15m, otp_verify_1h   -- outcome -> count
  otp_delivery_1h                                  -- outcome -> count (background sends)
  admin_user_actions_1h                            -- "event:outcome" -> count
  rate_limit_scope_hits_24h                        -- top scopes by total hits

Alert thresholds are module constants; when none fires the snapshot carries a
single "no_active_alerts" info entry so the console always has something to
render.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from auth import audit as audit_events
from auth.emails import redact_email
from auth.store import AuthStore
from core.clock import Clock, utcnow

VERIFY_FAILURE_OUTCOMES = (
    "invalid_code",
    "invalid_link",
    "not_found",
    "too_many_attempts",
    "not_allowed",
    "rate_limited",
)
ADMIN_USER_EVENTS = [
    audit_events.USER_UPDATE_ROLE,
    audit_events.USER_DELETE,
    audit_events.USER_UPSERT,
    audit_events.INVITE_CREATE,
]

OTP_VERIFY_FAILURE_THRESHOLD = 25
OTP_REQUEST_RATE_LIMITED_THRESHOLD = 20
OTP_DELIVERY_FAILURE_THRESHOLD = 5
ADMIN_USER_ACTION_THRESHOLD = 20
RATE_LIMIT_SCOPE_HITS_THRESHOLD = 1000
RECENT_EVENTS_LIMIT = 30


@dataclass(frozen=True)
class SecurityAlert:
    code: str
    severity: str  # "info" | "warning" | "critical"
    message: str
    current_value: int
    threshold: int


@dataclass
class TelemetrySnapshot:
    generated_at: datetime
    otp_request_15m: dict[str, int] = field(default_factory=dict)
    otp_verify_15m: dict[str, int] = field(default_factory=dict)
    otp_verify_1h: dict[str, int] = field(default_factory=dict)
    otp_delivery_1h: dict[str, int] = field(default_factory=dict)
    admin_user_actions_1h: dict[str, int] = field(default_factory=dict)
    rate_limit_scope_hits_24h: list[tuple[str, int]] = field(default_factory=list)
    recent_events: list[dict] = field(default_factory=list)
    alerts: list[SecurityAlert] = field(default_factory=list)


def _by_outcome(counts: dict[tuple[str, str], int], event_type: str) -> dict[str, int]:
    return {outcome: total for (etype, outcome), total in counts.items() if etype == event_type}


def build_alerts(snapshot: TelemetrySnapshot) -> list[SecurityAlert]:
    alerts: list[SecurityAlert] = []

    verify_failures = sum(snapshot.otp_verify_15m.get(o, 0) for o in VERIFY_FAILURE_OUTCOMES)
    if verify_failures >= OTP_VERIFY_FAILURE_THRESHOLD:
        alerts.append(
            SecurityAlert(
                code="otp_verify_failures_burst",
                severity="critical",
                message="High burst of OTP verify failures in the last 15 minutes.",
                current_value=verify_failures,
                threshold=OTP_VERIFY_FAILURE_THRESHOLD,
            )
        )

    request_limited = snapshot.otp_request_15m.get("rate_limited", 0)
    if request_limited >= OTP_REQUEST_RATE_LIMITED_THRESHOLD:
        alerts.append(
            SecurityAlert(
                code="otp_request_rate_limited_spike",
                severity="warning",
                message="OTP request rate-limited responses are elevated in the last 15 minutes.",
                current_value=request_limited,
                threshold=OTP_REQUEST_RATE_LIMITED_THRESHOLD,
            )
        )

    delivery_failures = sum(total for outcome, total in snapshot.otp_delivery_1h.items() if outcome != "ok")
    if delivery_failures >= OTP_DELIVERY_FAILURE_THRESHOLD:
        alerts.append(
            SecurityAlert(
                code="otp_delivery_failures",
                severity="critical",
                message="OTP emails are failing to send; users cannot sign in.",
                current_value=delivery_failures,
                threshold=OTP_DELIVERY_FAILURE_THRESHOLD,
            )
        )

    admin_actions = sum(snapshot.admin_user_actions_1h.values())
    if admin_actions >= ADMIN_USER_ACTION_THRESHOLD:
        alerts.append(
            SecurityAlert(
                code="admin_user_action_spike",
                severity="warning",
                message="Admin access-management actions are elevated in the last hour.",
                current_value=admin_actions,
                threshold=ADMIN_USER_ACTION_THRESHOLD,
            )
        )

    if snapshot.rate_limit_scope_hits_24h:
        scope, hits = snapshot.rate_limit_scope_hits_24h[0]
        if hits >= RATE_LIMIT_SCOPE_HITS_THRESHOLD:
            alerts.append(
                SecurityAlert(
                    code="rate_limit_scope_high_hits",
                    severity="warning",
                    message=f"Rate-limit scope '{scope}' has very high hit volume in 24h.",
                    current_value=hits,
                    threshold=RATE_LIMIT_SCOPE_HITS_THRESHOLD,
                )
            )

    if not alerts:
        alerts.append(
            SecurityAlert(
                code="no_active_alerts",
                severity="info",
                message="No active security alerts for current thresholds.",
                current_value=0,
                threshold=0,
            )
        )
    return alerts


class SecurityTelemetry:
    def __init__(self, store: AuthStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def snapshot(self) -> TelemetrySnapshot:
        """Build a snapshot. Raises SQLAlchemyError if the database is unreachable."""
        now = self._clock()
        otp_types = [audit_events.OTP_REQUEST, audit_events.OTP_VERIFY]
        last_15m = await self._store.count_audit_outcomes(otp_types, now - timedelta(minutes=15))
        last_1h = await self._store.count_audit_outcomes(
            otp_types + [audit_events.OTP_DELIVERY] + ADMIN_USER_EVENTS, now - timedelta(hours=1)
        )

        snapshot = TelemetrySnapshot(
            generated_at=now,
            otp_request_15m=_by_outcome(last_15m, audit_events.OTP_REQUEST),
            otp_verify_15m=_by_outcome(last_15m, audit_events.OTP_VERIFY),
            otp_verify_1h=_by_outcome(last_1h, audit_events.OTP_VERIFY),
            otp_delivery_1h=_by_outcome(last_1h, audit_events.OTP_DELIVERY),
            admin_user_actions_1h={
                f"{etype}:{outcome}": total
                for (etype, outcome), total in last_1h.items()
                if etype in ADMIN_USER_EVENTS
            },
            rate_limit_scope_hits_24h=await self._store.rate_limit_scope_hits(now - timedelta(hours=24), limit=20),
            recent_events=[
                {
                    "event_type": e.event_type,
                    "outcome": e.outcome,
                    "actor_email": redact_email(e.actor_email),
                    "target_email": redact_email(e.target_email),
                    "created_at": e.created_at,
                }
                for e in await self._store.recent_audit_events(RECENT_EVENTS_LIMIT)
            ],
        )
        snapshot.alerts = build_alerts(snapshot)
        return snapshot
