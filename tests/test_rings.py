"""
Tests for the ring registry.

Tests cover:
- Ring creation and founder defaults
- Validate-before-write on every mutation
- Founder pinning
- Compare-and-set conflicts
- Default, anonymous and legacy-import helpers
"""
import asyncio

import orjson
import pytest

from ringvault.exceptions import (
    ConflictError,
    NotFoundError,
    RingExistsError,
    StoreTimeoutError,
    ValidationError,
)
from ringvault.models import RoleScheme
from ringvault.rings import (
    ANONYMOUS_IDENTIFIER,
    DEFAULT_RING_ID,
    RingRegistry,
    is_anonymous_ring,
)
from ringvault.store import MemoryDocumentStore

BOOTSTRAP = "root@example.com"



class TestCreate:
    """Ring creation."""

    @pytest.mark.asyncio
    async def test_create_with_members(self, registry):
        """Initial members are stored with normalized identifiers."""
        ring = await registry.create(
            "team", {"Alice@Example.com ": "admin", "bob@example.com": "member"},
        )
        assert ring.version == 1
        assert ring.founding_identifier == "alice@example.com"
        assert set(ring.members) == {"alice@example.com", "bob@example.com"}
        stored = await registry.get("team")
        assert stored.membership() == ring.membership()

    @pytest.mark.asyncio
    async def test_founder_added_with_full_roles(self, registry):
        """An unlisted founder joins with every role of the scheme."""
        ring = await registry.create(
            "team", {"bob@example.com": "member"},
            founding_identifier="alice@example.com",
        )
        assert ring.members["alice@example.com"].roles == ["admin"]

    @pytest.mark.asyncio
    async def test_bootstrap_founder(self, registry):
        """Without members the bootstrap identifier founds the ring."""
        ring = await registry.create("team")
        assert ring.founding_identifier == BOOTSTRAP
        assert ring.members[BOOTSTRAP].role == "admin"

    @pytest.mark.asyncio
    async def test_no_founder_available(self, store):
        """A ring needs somebody to found it."""
        registry = RingRegistry(store)
        with pytest.raises(ValidationError):
            await registry.create("team")

    @pytest.mark.asyncio
    async def test_invalid_quorum_is_not_written(self, registry, store):
        """A ring failing its quorum is rejected before any write."""
        with pytest.raises(ValidationError) as exc:
            await registry.create(
                "team",
                {"alice": ["owner", "architect"], "bob": ["architect", "member"]},
                scheme="legacy",
            )
        assert "Invalid ring configuration" in exc.value.message
        assert await store.scan("rings/") == []

    @pytest.mark.asyncio
    async def test_duplicate_id(self, registry):
        """A ring id can only be taken once."""
        await registry.create("team", {"alice": "admin"})
        with pytest.raises(RingExistsError):
            await registry.create("team", {"bob": "admin"})

    @pytest.mark.asyncio
    async def test_generated_id(self, registry):
        """An id is generated when none is given."""
        ring = await registry.create(None, {"alice": "admin"})
        assert ring.id.startswith("ring-")

    @pytest.mark.asyncio
    async def test_invalid_ring_id(self, registry):
        """Ring ids cannot contain path separators."""
        with pytest.raises(ValidationError):
            await registry.create("a/b", {"alice": "admin"})

    @pytest.mark.asyncio
    async def test_unknown_scheme(self, registry):
        """Only known role schemes are accepted."""
        with pytest.raises(ValidationError):
            await registry.create("team", {"alice": "admin"}, scheme="flat")


class TestMembership:
    """Add, remove and update members."""

    @pytest.mark.asyncio
    async def test_add_member(self, registry):
        """Adding a member bumps the ring version."""
        await registry.create("team", {"alice": "admin"})
        ring = await registry.add_member("team", "bob", "member", entity_type="agent")
        assert ring.version == 2
        assert ring.members["bob"].entity_type.value == "agent"

    @pytest.mark.asyncio
    async def test_add_existing_member(self, registry):
        """Adding somebody twice is rejected."""
        await registry.create("team", {"alice": "admin"})
        with pytest.raises(ValidationError):
            await registry.add_member("team", "alice", "member")

    @pytest.mark.asyncio
    async def test_add_member_to_missing_ring(self, registry):
        """Mutations on an unknown ring raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await registry.add_member("nope", "bob")

    @pytest.mark.asyncio
    async def test_remove_member(self, registry):
        """Removing a plain member keeps the ring valid."""
        await registry.create("team", {"alice": "admin", "bob": "member"})
        ring = await registry.remove_member("team", "bob")
        assert "bob" not in ring.members

    @pytest.mark.asyncio
    async def test_founder_cannot_be_removed(self, registry):
        """The founding identifier is pinned."""
        await registry.create("team", {"alice": "admin", "bob": "admin"})
        with pytest.raises(ValidationError):
            await registry.remove_member("team", "alice")

    @pytest.mark.asyncio
    async def test_remove_last_admin_rejected(self, registry):
        """A removal that breaks the quorum is never committed."""
        await registry.create(
            "team", {"alice": "admin", "bob": "admin"},
            founding_identifier="alice",
        )
        await registry.update_roles("team", {"alice": "member", "bob": "admin"})
        with pytest.raises(ValidationError):
            await registry.remove_member("team", "bob")
        ring = await registry.get("team")
        assert "bob" in ring.members

    @pytest.mark.asyncio
    async def test_remove_unknown_member(self, registry):
        """Removing a non-member raises NotFoundError."""
        await registry.create("team", {"alice": "admin"})
        with pytest.raises(NotFoundError):
            await registry.remove_member("team", "zed")

    @pytest.mark.asyncio
    async def test_update_roles_keeps_founder(self, registry):
        """An update omitting the founder keeps them in the ring."""
        created = await registry.create("team", {"alice": "admin", "bob": "member"})
        ring = await registry.update_roles("team", {"bob": "admin"})
        assert ring.members["bob"].role == "admin"
        assert ring.members["alice"].added_at == created.members["alice"].added_at

    @pytest.mark.asyncio
    async def test_update_roles_rejects_invalid(self, registry):
        """An update leaving no admin is rejected."""
        await registry.create("team", {"alice": "admin", "bob": "member"})
        with pytest.raises(ValidationError):
            await registry.update_roles("team", {"alice": "member", "bob": "member"})
        ring = await registry.get("team")
        assert ring.members["alice"].role == "admin"
        assert ring.version == 1


class TestConcurrency:
    """Compare-and-set behaviour of ring writes."""

    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self, registry, store):
        """A write based on an outdated version raises ConflictError."""
        await registry.create("team", {"alice": "admin"})
        current = await registry.get("team")
        await registry.add_member("team", "bob")
        proposed = current.model_copy(deep=True)
        with pytest.raises(ConflictError) as exc:
            await registry._commit(current, proposed, "stale write")
        assert exc.value.retryable is True
        assert "bob" in (await registry.get("team")).members

    @pytest.mark.asyncio
    async def test_timeout_commits_nothing(self, config):
        """A store timeout surfaces as StoreTimeoutError."""

        class SlowStore(MemoryDocumentStore):
            async def compare_and_set(self, key, expected_version, data):
                await asyncio.sleep(5)
                return await super().compare_and_set(key, expected_version, data)

        store = SlowStore()
        registry = RingRegistry(store, config.model_copy(update={"store_timeout": 0.01}))
        with pytest.raises(StoreTimeoutError):
            await registry.create("team", {"alice": "admin"})
        assert await store.get("rings/team") is None


class TestLookups:
    """Read helpers."""

    @pytest.mark.asyncio
    async def test_rings_for(self, registry):
        """An identifier may belong to several rings."""
        await registry.create("b-team", {"alice": "admin"})
        await registry.create("a-team", {"alice": "admin"})
        await registry.create("c-team", {"bob": "admin"})
        assert await registry.rings_for("ALICE") == ["a-team", "b-team"]
        assert await registry.find_ring_for("alice") == "a-team"
        assert await registry.find_ring_for("nobody") is None

    @pytest.mark.asyncio
    async def test_member_roles(self, registry):
        """Roles of a non-member or unknown ring are empty."""
        await registry.create("team", {"alice": "admin"})
        assert await registry.member_roles("team", "alice") == ["admin"]
        assert await registry.member_roles("team", "bob") == []
        assert await registry.member_roles("nope", "alice") == []

    @pytest.mark.asyncio
    async def test_exists(self, registry):
        """exists() reports presence without raising."""
        await registry.create("team", {"alice": "admin"})
        assert await registry.exists("team") is True
        assert await registry.exists("other") is False


class TestHelpers:
    """Default ring, anonymous rings and legacy import."""

    @pytest.mark.asyncio
    async def test_initialize_default(self, registry):
        """The default ring is created once for the bootstrap identifier."""
        ring = await registry.initialize_default()
        assert ring.id == DEFAULT_RING_ID
        assert ring.founding_identifier == BOOTSTRAP
        again = await registry.initialize_default("someone@example.com")
        assert again.id == DEFAULT_RING_ID
        assert len(await registry.list()) == 1

    @pytest.mark.asyncio
    async def test_create_anonymous(self, registry):
        """Anonymous rings are isolated and administered by 'anonymous'."""
        ring = await registry.create_anonymous("s1")
        assert is_anonymous_ring(ring.id)
        assert ring.scheme == RoleScheme.SIMPLIFIED
        assert ring.members[ANONYMOUS_IDENTIFIER].role == "admin"
        assert not is_anonymous_ring(DEFAULT_RING_ID)

    @pytest.mark.asyncio
    async def test_import_legacy(self, registry):
        """A legacy blob is split into one document per ring."""
        blob = orjson.dumps({
            "r1": {
                "id": "r1",
                "firstEmail": "alice",
                "members": {"alice": ["owner", "architect", "member"]},
            },
            "r2": {
                "members": {
                    "bob": ["owner", "architect"],
                    "carol": ["architect", "member"],
                },
            },
        })
        stats = await registry.import_legacy(blob)
        assert stats == {"total": 2, "imported": 1, "skipped": 0, "invalid": 1}
        ring = await registry.get("r1")
        assert ring.scheme == RoleScheme.LEGACY
        assert ring.members["alice"].role == "admin"

        stats = await registry.import_legacy(blob)
        assert stats["skipped"] == 1
