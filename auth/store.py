"""
auth/store.py -- SQLAlchemy Core persistence layer for access-control entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Concurrency:
  Every single-winner rule is a conditional write evaluated by the database,
  never read-then-write in Python:
    - rate-limit buckets:  INSERT ... ON CONFLICT DO UPDATE hits = hits + 1 RETURNING hits
    - OTP attempts:        UPDATE ... attempts = attempts + 1 WHERE attempts < max RETURNING
    - OTP consumption:     UPDATE ... consumed_at = now WHERE consumed_at IS NULL RETURNING
    - invite activation:   UPDATE ... status = 'activated' WHERE status = 'open' AND not expired RETURNING
    - one open invite:     partial UNIQUE index on email WHERE status = 'open'

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw rate-limit identities and client addresses never reach these tables;
  callers pass HMAC digests.

Timestamps are timezone-aware UTC on the way in. SQLite hands back naive
values, so every mapper re-attaches UTC.

Layer rule: no imports from api/. May import from core/.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from auth.models import (
    AuthMethod,
    DeletedUser,
    InviteStatus,
    InviteToken,
    OtpChallenge,
    Role,
    SecurityAuditEvent,
    User,
)
from core.config import Settings
from core.database import build_engine

logger = logging.getLogger("accessgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("role", String(20), nullable=False),
    Column("auth_method", String(20), nullable=False, server_default=AuthMethod.OTP.value),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("role IN ('whitelisted', 'admin')", name="ck_users_role"),
)

_deleted_users = Table(
    "deleted_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False),
    Column("role", String(20), nullable=False),
    Column("auth_method", String(20), nullable=False),
    Column("was_active", Boolean, nullable=False),
    Column("created_at", DateTime(timezone=True)),  # of the original roster row
    Column("deleted_at", DateTime(timezone=True), nullable=False),
    Column("deleted_by_email", String(320)),
)
Index("ix_deleted_users_deleted_at", _deleted_users.c.deleted_at)

_otps = Table(
    "auth_email_otps",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("attempts", Integer, nullable=False, server_default=text("0")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("consumed_at", DateTime(timezone=True)),
)
Index("ix_auth_email_otps_email_created", _otps.c.email, _otps.c.created_at)
Index("ix_auth_email_otps_expires_at", _otps.c.expires_at)

_rate_buckets = Table(
    "auth_rate_limit_buckets",
    _metadata,
    Column("scope", String(64), nullable=False),
    Column("bucket_key_hash", String(64), nullable=False),
    Column("window_seconds", Integer, nullable=False),
    Column("bucket_start", BigInteger, nullable=False),  # epoch seconds
    Column("hits", Integer, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("scope", "bucket_key_hash", "window_seconds", "bucket_start"),
    CheckConstraint("hits > 0", name="ck_rate_buckets_hits"),
)
Index("ix_auth_rate_limit_buckets_expires_at", _rate_buckets.c.expires_at)

_invites = Table(
    "auth_invites",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("email", String(320), nullable=False),
    Column("role", String(20), nullable=False),
    Column("status", String(20), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_by_email", String(320)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("activated_at", DateTime(timezone=True)),
    Column("replaced_at", DateTime(timezone=True)),
    CheckConstraint("status IN ('open', 'activated', 'replaced', 'expired')", name="ck_invites_status"),
)
Index(
    "uq_auth_invites_open_email",
    _invites.c.email,
    unique=True,
    sqlite_where=_invites.c.status == "open",
    postgresql_where=_invites.c.status == "open",
)
Index("ix_auth_invites_created_at", _invites.c.created_at)

_audit = Table(
    "security_audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(64), nullable=False),
    Column("actor_email", String(320)),
    Column("target_email", String(320)),
    Column("ip_key_hash", String(64)),
    Column("subnet_key_hash", String(64)),
    Column("outcome", String(64), nullable=False),
    Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("length(trim(event_type)) > 0", name="ck_audit_event_type"),
    CheckConstraint("length(trim(outcome)) > 0", name="ck_audit_outcome"),
)
Index("ix_security_audit_events_created_at", _audit.c.created_at)
Index("ix_security_audit_events_type_created", _audit.c.event_type, _audit.c.created_at)
Index("ix_security_audit_events_outcome_created", _audit.c.outcome, _audit.c.created_at)


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        email=m["email"],
        role=Role(m["role"]),
        auth_method=AuthMethod(m["auth_method"]),
        is_active=bool(m["is_active"]),
        created_at=_utc(m["created_at"]),
        updated_at=_utc(m["updated_at"]),
    )


def _row_to_deleted_user(row) -> DeletedUser:
    m = row._mapping
    return DeletedUser(
        id=m["id"],
        email=m["email"],
        role=Role(m["role"]),
        auth_method=AuthMethod(m["auth_method"]),
        was_active=bool(m["was_active"]),
        created_at=_utc(m["created_at"]),
        deleted_at=_utc(m["deleted_at"]),
        deleted_by_email=m["deleted_by_email"],
    )


def _row_to_challenge(row) -> OtpChallenge:
    m = row._mapping
    return OtpChallenge(
        id=m["id"],
        email=m["email"],
        code_hash=m["code_hash"],
        expires_at=_utc(m["expires_at"]),
        attempts=m["attempts"],
        created_at=_utc(m["created_at"]),
        consumed_at=_utc(m["consumed_at"]),
    )


def _row_to_invite(row) -> InviteToken:
    m = row._mapping
    return InviteToken(
        id=m["id"],
        token=m["token"],
        email=m["email"],
        role=Role(m["role"]),
        status=InviteStatus(m["status"]),
        expires_at=_utc(m["expires_at"]),
        created_by_email=m["created_by_email"],
        created_at=_utc(m["created_at"]),
        activated_at=_utc(m["activated_at"]),
        replaced_at=_utc(m["replaced_at"]),
    )


def _row_to_audit_event(row) -> SecurityAuditEvent:
    m = row._mapping
    return SecurityAuditEvent(
        id=m["id"],
        event_type=m["event_type"],
        outcome=m["outcome"],
        actor_email=m["actor_email"],
        target_email=m["target_email"],
        ip_key_hash=m["ip_key_hash"],
        subnet_key_hash=m["subnet_key_hash"],
        metadata=m["metadata"] or {},
        created_at=_utc(m["created_at"]),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for roster, challenge, bucket, invite and audit rows.

    The store owns no engine lifecycle policy of its own: whoever built the
    engine decides when close() runs. Use open_store() for scoped access.

    Usage:
        async with open_store("sqlite+aiosqlite://") as store:
            await store.upsert_users(["a@example.com"], Role.WHITELISTED, now)
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _insert(self, table: Table):
        """Dialect-specific INSERT so ON CONFLICT is available."""
        if self.dialect == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    async def initialize(self) -> None:
        """Create any missing tables and indexes. Idempotent."""
        async with self.engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def get_user(self, email: str) -> User | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(_users).where(_users.c.email == email))).first()
        return _row_to_user(row) if row else None

    async def _upsert_user(self, conn: AsyncConnection, email: str, role: Role, now: datetime) -> None:
        stmt = self._insert(_users).values(
            email=email,
            role=role.value,
            auth_method=AuthMethod.OTP.value,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_users.c.email],
            set_={"role": stmt.excluded.role, "is_active": True, "updated_at": now},
        )
        await conn.execute(stmt)

    async def upsert_users(self, emails: list[str], role: Role, now: datetime) -> None:
        """Insert or reactivate every email with the given role in one transaction."""
        async with self.engine.begin() as conn:
            for email in emails:
                await self._upsert_user(conn, email, role, now)

    async def update_user_role(self, email: str, role: Role, now: datetime) -> User | None:
        async with self.engine.begin() as conn:
            row = (
                await conn.execute(
                    update(_users)
                    .where(_users.c.email == email)
                    .values(role=role.value, updated_at=now)
                    .returning(*_users.c)
                )
            ).first()
        return _row_to_user(row) if row else None

    async def delete_user(self, email: str, deleted_by_email: str | None, now: datetime) -> DeletedUser | None:
        """Move a roster row into the deleted ledger. Returns None if absent."""
        async with self.engine.begin() as conn:
            row = (await conn.execute(delete(_users).where(_users.c.email == email).returning(*_users.c))).first()
            if row is None:
                return None
            removed = _row_to_user(row)
            result = await conn.execute(
                _deleted_users.insert()
                .values(
                    email=removed.email,
                    role=removed.role.value,
                    auth_method=removed.auth_method.value,
                    was_active=removed.is_active,
                    created_at=removed.created_at,
                    deleted_at=now,
                    deleted_by_email=deleted_by_email,
                )
                .returning(_deleted_users.c.id)
            )
            ledger_id = result.scalar_one()
        return DeletedUser(
            id=ledger_id,
            email=removed.email,
            role=removed.role,
            auth_method=removed.auth_method,
            was_active=removed.is_active,
            created_at=removed.created_at,
            deleted_at=now,
            deleted_by_email=deleted_by_email,
        )

    async def list_users(self, limit: int) -> list[User]:
        stmt = select(_users).order_by(_users.c.updated_at.desc(), _users.c.email).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).fetchall()
        return [_row_to_user(r) for r in rows]

    async def list_deleted_users(self, limit: int) -> list[DeletedUser]:
        stmt = select(_deleted_users).order_by(_deleted_users.c.deleted_at.desc(), _deleted_users.c.id.desc())
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt.limit(limit))).fetchall()
        return [_row_to_deleted_user(r) for r in rows]

    async def count_active_admins(self) -> int:
        stmt = select(func.count()).select_from(_users).where(
            _users.c.role == Role.ADMIN.value, _users.c.is_active.is_(True)
        )
        async with self.engine.connect() as conn:
            return int((await conn.execute(stmt)).scalar() or 0)

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    async def replace_challenge(self, email: str, code_hash: str, expires_at: datetime, now: datetime) -> OtpChallenge:
        """Store a new challenge and drop every earlier one for the same email."""
        async with self.engine.begin() as conn:
            await conn.execute(delete(_otps).where(_otps.c.email == email))
            row = (
                await conn.execute(
                    _otps.insert()
                    .values(email=email, code_hash=code_hash, expires_at=expires_at, attempts=0, created_at=now)
                    .returning(*_otps.c)
                )
            ).first()
        return _row_to_challenge(row)

    async def delete_challenge(self, challenge_id: int) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(delete(_otps).where(_otps.c.id == challenge_id))

    async def discard_challenges(self, email: str) -> int:
        """Drop every challenge for the email. Returns the number removed."""
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(_otps).where(_otps.c.email == email))
        return result.rowcount or 0

    async def get_challenge(self, challenge_id: int) -> OtpChallenge | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(_otps).where(_otps.c.id == challenge_id))).first()
        return _row_to_challenge(row) if row else None

    async def latest_active_challenge(self, email: str, now: datetime) -> OtpChallenge | None:
        """Most recent unconsumed, unexpired challenge for the email."""
        stmt = (
            select(_otps)
            .where(_otps.c.email == email, _otps.c.consumed_at.is_(None), _otps.c.expires_at > now)
            .order_by(_otps.c.created_at.desc(), _otps.c.id.desc())
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return _row_to_challenge(row) if row else None

    async def reserve_attempt(self, challenge_id: int, max_attempts: int, now: datetime) -> int | None:
        """Atomically count one verification attempt.

        Returns the new attempt count, or None once the challenge is locked,
        consumed or expired.
        """
        stmt = (
            update(_otps)
            .where(
                _otps.c.id == challenge_id,
                _otps.c.attempts < max_attempts,
                _otps.c.consumed_at.is_(None),
                _otps.c.expires_at > now,
            )
            .values(attempts=_otps.c.attempts + 1)
            .returning(_otps.c.attempts)
        )
        async with self.engine.begin() as conn:
            row = (await conn.execute(stmt)).first()
        return row[0] if row else None

    async def consume_challenge(self, challenge_id: int, now: datetime) -> bool:
        """Mark a challenge used. Only the first caller gets True."""
        stmt = (
            update(_otps)
            .where(_otps.c.id == challenge_id, _otps.c.consumed_at.is_(None))
            .values(consumed_at=now)
            .returning(_otps.c.id)
        )
        async with self.engine.begin() as conn:
            row = (await conn.execute(stmt)).first()
        return row is not None

    async def purge_expired_challenges(self, now: datetime) -> int:
        stmt = delete(_otps).where((_otps.c.expires_at <= now) | _otps.c.consumed_at.is_not(None))
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Rate-limit buckets
    # ------------------------------------------------------------------

    async def hit_bucket(
        self,
        scope: str,
        key_hash: str,
        window_seconds: int,
        bucket_start: int,
        expires_at: datetime,
        now: datetime,
    ) -> int:
        """Count one hit against a fixed-window bucket and return the new total."""
        stmt = self._insert(_rate_buckets).values(
            scope=scope,
            bucket_key_hash=key_hash,
            window_seconds=window_seconds,
            bucket_start=bucket_start,
            hits=1,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                _rate_buckets.c.scope,
                _rate_buckets.c.bucket_key_hash,
                _rate_buckets.c.window_seconds,
                _rate_buckets.c.bucket_start,
            ],
            set_={"hits": _rate_buckets.c.hits + 1, "updated_at": now},
        ).returning(_rate_buckets.c.hits)
        async with self.engine.begin() as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def purge_expired_buckets(self, now: datetime) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(_rate_buckets).where(_rate_buckets.c.expires_at <= now))
        return result.rowcount or 0

    async def rate_limit_scope_hits(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        """Total hits per scope across buckets touched since the given time."""
        total = func.sum(_rate_buckets.c.hits).label("hits")
        stmt = (
            select(_rate_buckets.c.scope, total)
            .where(_rate_buckets.c.updated_at >= since)
            .group_by(_rate_buckets.c.scope)
            .order_by(total.desc(), _rate_buckets.c.scope)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).fetchall()
        return [(r[0], int(r[1] or 0)) for r in rows]

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    async def create_invite(
        self,
        token: str,
        email: str,
        role: Role,
        expires_at: datetime,
        created_by_email: str | None,
        now: datetime,
    ) -> tuple[InviteToken, int]:
        """Replace any open invite for the email and insert a new one.

        Returns (invite, replaced_count). Raises IntegrityError if a concurrent
        create for the same email committed first.
        """
        async with self.engine.begin() as conn:
            replaced = await conn.execute(
                update(_invites)
                .where(_invites.c.email == email, _invites.c.status == InviteStatus.OPEN.value)
                .values(status=InviteStatus.REPLACED.value, replaced_at=now)
            )
            row = (
                await conn.execute(
                    _invites.insert()
                    .values(
                        token=token,
                        email=email,
                        role=role.value,
                        status=InviteStatus.OPEN.value,
                        expires_at=expires_at,
                        created_by_email=created_by_email,
                        created_at=now,
                    )
                    .returning(*_invites.c)
                )
            ).first()
        return _row_to_invite(row), replaced.rowcount or 0

    async def activate_invite(self, token: str, now: datetime) -> InviteToken | None:
        """Consume an open, unexpired invite and grant its role in one transaction."""
        async with self.engine.begin() as conn:
            row = (
                await conn.execute(
                    update(_invites)
                    .where(
                        _invites.c.token == token,
                        _invites.c.status == InviteStatus.OPEN.value,
                        _invites.c.expires_at > now,
                    )
                    .values(status=InviteStatus.ACTIVATED.value, activated_at=now)
                    .returning(*_invites.c)
                )
            ).first()
            if row is None:
                return None
            invite = _row_to_invite(row)
            await self._upsert_user(conn, invite.email, invite.role, now)
        return invite

    async def get_invite_by_token(self, token: str) -> InviteToken | None:
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(_invites).where(_invites.c.token == token))).first()
        return _row_to_invite(row) if row else None

    async def expire_stale_invites(self, now: datetime, token: str | None = None) -> int:
        """Move open invites past their expiry to 'expired'."""
        stmt = update(_invites).where(_invites.c.status == InviteStatus.OPEN.value, _invites.c.expires_at <= now)
        if token is not None:
            stmt = stmt.where(_invites.c.token == token)
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt.values(status=InviteStatus.EXPIRED.value))
        return result.rowcount or 0

    async def list_invites(self, limit: int) -> list[InviteToken]:
        stmt = select(_invites).order_by(_invites.c.created_at.desc(), _invites.c.id.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).fetchall()
        return [_row_to_invite(r) for r in rows]

    # ------------------------------------------------------------------
    # Security audit
    # ------------------------------------------------------------------

    async def insert_audit_event(self, event: SecurityAuditEvent) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                _audit.insert()
                .values(
                    event_type=event.event_type,
                    actor_email=event.actor_email,
                    target_email=event.target_email,
                    ip_key_hash=event.ip_key_hash,
                    subnet_key_hash=event.subnet_key_hash,
                    outcome=event.outcome,
                    metadata=event.metadata,
                    created_at=event.created_at,
                )
                .returning(_audit.c.id)
            )
            return int(result.scalar_one())

    async def count_audit_outcomes(self, event_types: list[str], since: datetime) -> dict[tuple[str, str], int]:
        """Count events per (event_type, outcome) created since the given time."""
        stmt = (
            select(_audit.c.event_type, _audit.c.outcome, func.count().label("total"))
            .where(_audit.c.event_type.in_(event_types), _audit.c.created_at >= since)
            .group_by(_audit.c.event_type, _audit.c.outcome)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).fetchall()
        return {(r[0], r[1]): int(r[2]) for r in rows}

    async def recent_audit_events(self, limit: int) -> list[SecurityAuditEvent]:
        stmt = select(_audit).order_by(_audit.c.created_at.desc(), _audit.c.id.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).fetchall()
        return [_row_to_audit_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Scoped construction
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_store(url: str, settings: Settings | None = None) -> AsyncIterator[AuthStore]:
    """Build an engine, create the schema, yield the store, dispose on exit."""
    store = AuthStore(build_engine(url, settings))
    try:
        await store.initialize()
        yield store
    finally:
        await store.close()
