"""Unit tests for auth/directory.py and the roster half of auth/store.py.

Covers:
- Bulk upsert: normalization, dedupe, invalid reporting, batch cap, idempotence
- Role updates and not-found handling
- Delete moves the row into the deleted ledger with who and when
- Re-adding a deleted user creates a fresh active row
- Listing order and limits
"""

import pytest

from auth.directory import UPSERT_BATCH_MAX
from auth.models import Role

pytestmark = pytest.mark.anyio

ADMIN = "admin@example.com"


class TestUpsert:
    async def test_mixed_input_is_parsed_and_reported(self, services) -> None:
        result = await services.directory.upsert("Alice@Example.com, bob@example.com;\nnot-an-email  alice@example.com")
        assert result.ok
        assert result.upserted == ["alice@example.com", "bob@example.com"]
        assert result.invalid == ["not-an-email"]
        assert (await services.directory.get("ALICE@example.com")).role is Role.WHITELISTED

    async def test_list_input(self, services) -> None:
        result = await services.directory.upsert(["carol@example.com", "dave@example.com"], "admin")
        assert result.upserted == ["carol@example.com", "dave@example.com"]
        assert await services.directory.count_active_admins() == 2

    async def test_upsert_is_idempotent_and_updates_role(self, services) -> None:
        await services.directory.upsert(["carol@example.com"], "whitelisted")
        await services.directory.upsert(["carol@example.com"], "admin")
        users = await services.directory.list()
        assert [(u.email, u.role) for u in users] == [("carol@example.com", Role.ADMIN)]

    async def test_only_invalid_emails(self, services) -> None:
        result = await services.directory.upsert("nope, also nope")
        assert not result.ok
        assert result.reason == "invalid_email"
        assert result.invalid == ["nope", "also"]

    async def test_empty_input(self, services) -> None:
        assert (await services.directory.upsert("  ")).reason == "invalid_email"

    async def test_visitor_role_refused(self, services) -> None:
        assert (await services.directory.upsert(["carol@example.com"], "visitor")).reason == "invalid_role"

    async def test_batch_cap(self, services) -> None:
        emails = [f"user{i}@example.com" for i in range(UPSERT_BATCH_MAX + 1)]
        result = await services.directory.upsert(emails)
        assert result.reason == "batch_too_large"
        assert await services.directory.list() == []


class TestRoleAndDelete:
    async def test_update_role(self, services) -> None:
        await services.directory.upsert(["carol@example.com"])
        result = await services.directory.update_role("carol@example.com", "admin")
        assert result.ok
        assert result.user.role is Role.ADMIN

    async def test_update_unknown_user(self, services) -> None:
        assert (await services.directory.update_role("ghost@example.com", "admin")).reason == "not_found"

    async def test_delete_moves_to_ledger(self, services) -> None:
        await services.directory.upsert(["carol@example.com"], "admin")
        services.clock.advance(minutes=5)
        result = await services.directory.delete("carol@example.com", ADMIN)
        assert result.ok
        assert await services.directory.get("carol@example.com") is None
        [ledger] = await services.directory.list_deleted()
        assert ledger.email == "carol@example.com"
        assert ledger.role is Role.ADMIN
        assert ledger.deleted_by_email == ADMIN
        assert ledger.deleted_at == services.clock()
        assert ledger.was_active

    async def test_delete_unknown_user(self, services) -> None:
        assert (await services.directory.delete("ghost@example.com", ADMIN)).reason == "not_found"

    async def test_readding_after_delete(self, services) -> None:
        await services.directory.upsert(["carol@example.com"])
        await services.directory.delete("carol@example.com", ADMIN)
        await services.directory.upsert(["carol@example.com"])
        assert (await services.directory.get("carol@example.com")).is_active
        assert len(await services.directory.list_deleted()) == 1

    async def test_count_active_admins(self, services) -> None:
        await services.directory.upsert(["a@example.com", "b@example.com"], "admin")
        await services.directory.upsert(["c@example.com"], "whitelisted")
        assert await services.directory.count_active_admins() == 2
        await services.directory.delete("a@example.com", ADMIN)
        assert await services.directory.count_active_admins() == 1


async def test_list_is_most_recent_first_and_limited(services) -> None:
    for name in ("a", "b", "c"):
        await services.directory.upsert([f"{name}@example.com"])
        services.clock.advance(seconds=1)
    users = await services.directory.list(limit=2)
    assert [u.email for u in users] == ["c@example.com", "b@example.com"]
