"""
auth/directory.py -- Roster administration.

Pure data access over the users table and the deleted ledger. Policy checks
that depend on who is acting (an admin may not modify their own account, the
last active admin may not be demoted or removed) belong to the caller; this
service exposes get() and count_active_admins() so callers can make them.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.emails import is_valid_email, normalize_email, parse_email_list, redact_email
from auth.invites import clamp, parse_role
from auth.models import DeletedUser, DirectoryResult, Role, UpsertResult, User
from auth.store import AuthStore
from core.clock import Clock, utcnow

logger = logging.getLogger("accessgate.directory")

UPSERT_BATCH_MAX = 500
LIST_LIMIT_DEFAULT = 500
LIST_LIMIT_MAX = 2000


class UserDirectoryService:
    def __init__(self, store: AuthStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def get(self, email: str) -> User | None:
        return await self._store.get_user(normalize_email(email))

    async def count_active_admins(self) -> int:
        return await self._store.count_active_admins()

    async def update_role(self, email: str, role: str | Role) -> DirectoryResult:
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return DirectoryResult(ok=False, reason="invalid_email")
        parsed = parse_role(role)
        if parsed is None:
            return DirectoryResult(ok=False, reason="invalid_role")
        try:
            user = await self._store.update_user_role(normalized, parsed, self._clock())
        except SQLAlchemyError:
            logger.exception("Role update failed for %s", redact_email(normalized))
            return DirectoryResult(ok=False, reason="db_unavailable")
        if user is None:
            return DirectoryResult(ok=False, reason="not_found")
        return DirectoryResult(ok=True, user=user)

    async def delete(self, email: str, deleted_by_email: str | None = None) -> DirectoryResult:
        """Move the user into the deleted ledger."""
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return DirectoryResult(ok=False, reason="invalid_email")
        try:
            removed = await self._store.delete_user(
                normalized, normalize_email(deleted_by_email) or None, self._clock()
            )
        except SQLAlchemyError:
            logger.exception("User delete failed for %s", redact_email(normalized))
            return DirectoryResult(ok=False, reason="db_unavailable")
        if removed is None:
            return DirectoryResult(ok=False, reason="not_found")
        return DirectoryResult(
            ok=True,
            user=User(email=removed.email, role=removed.role, is_active=False, created_at=removed.created_at),
        )

    async def upsert(self, emails: str | list[str], role: str | Role = Role.WHITELISTED) -> UpsertResult:
        """Idempotently add or reactivate users with the given role.

        Input may be a list or a comma / newline / semicolon separated string.
        Invalid addresses are reported back and skipped; valid ones are
        written in one transaction.
        """
        parsed = parse_role(role)
        if parsed is None:
            return UpsertResult(ok=False, reason="invalid_role")
        candidates = parse_email_list(emails)
        if not candidates:
            return UpsertResult(ok=False, reason="invalid_email")
        if len(candidates) > UPSERT_BATCH_MAX:
            return UpsertResult(ok=False, reason="batch_too_large")

        valid = [e for e in candidates if is_valid_email(e)]
        invalid = [e for e in candidates if not is_valid_email(e)]
        if not valid:
            return UpsertResult(ok=False, reason="invalid_email", invalid=invalid)
        try:
            await self._store.upsert_users(valid, parsed, self._clock())
        except SQLAlchemyError:
            logger.exception("Bulk upsert of %d user(s) failed", len(valid))
            return UpsertResult(ok=False, reason="db_unavailable", invalid=invalid)
        return UpsertResult(ok=True, upserted=valid, invalid=invalid)

    async def list(self, limit: int | None = None) -> list[User]:
        return await self._store.list_users(clamp(limit, LIST_LIMIT_DEFAULT, 1, LIST_LIMIT_MAX))

    async def list_deleted(self, limit: int | None = None) -> list[DeletedUser]:
        return await self._store.list_deleted_users(clamp(limit, LIST_LIMIT_DEFAULT, 1, LIST_LIMIT_MAX))
