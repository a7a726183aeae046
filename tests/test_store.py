"""
Tests for the document store adapters and call helpers.

Tests cover:
- Versioning and compare-and-set on the in-memory store
- Prefix scans
- Deadlines on store calls
- Versioning, compare-and-set and namespaced scans on the Redis adapter
- The opt-in conflict retry helper
"""
import asyncio

import pytest
from redis.exceptions import WatchError

from ringvault.exceptions import ConflictError, NotFoundError, StoreTimeoutError
from ringvault.store import RedisDocumentStore, bounded, retry_on_conflict


# ---------------------------------------------------------------------------
# In-process Redis client
# ---------------------------------------------------------------------------

def _b(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class FakePipeline:
    """WATCH/MULTI/EXEC semantics over a ``FakeRedis``."""

    def __init__(self, redis):
        self._redis = redis
        self._watched = {}
        self._queue = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._watched.clear()
        self._queue.clear()

    async def watch(self, name):
        self._watched[name] = self._redis.revision(name)

    async def unwatch(self):
        self._watched.clear()

    async def hget(self, name, field):
        return self._redis.hashes.get(name, {}).get(_b(field))

    def multi(self):
        pass

    def hincrby(self, name, field, amount=1):
        self._queue.append((self._redis.apply_hincrby, (name, field, amount)))

    def hset(self, name, key=None, value=None, mapping=None):
        fields = dict(mapping or {})
        if key is not None:
            fields[key] = value
        self._queue.append((self._redis.apply_hset, (name, fields)))

    async def execute(self):
        hook, self._redis.before_execute = self._redis.before_execute, None
        if hook is not None:
            await hook()
        changed = any(
            self._redis.revision(name) != seen for name, seen in self._watched.items()
        )
        queue, self._queue = self._queue, []
        self._watched.clear()
        if changed:
            raise WatchError("Watched variable changed.")
        return [command(*args) for command, args in queue]


class FakeRedis:
    """The subset of ``redis.asyncio.Redis`` the document store uses.

    ``before_execute`` runs once, right before the next transaction commits,
    to stand in for a concurrent client.
    """

    def __init__(self):
        self.hashes = {}
        self.revisions = {}
        self.before_execute = None

    def revision(self, name):
        return self.revisions.get(name, 0)

    def _touch(self, name):
        self.revisions[name] = self.revision(name) + 1

    def apply_hincrby(self, name, field, amount):
        fields = self.hashes.setdefault(name, {})
        value = int(fields.get(_b(field), b"0")) + amount
        fields[_b(field)] = _b(value)
        self._touch(name)
        return value

    def apply_hset(self, name, mapping):
        fields = self.hashes.setdefault(name, {})
        added = sum(1 for key in mapping if _b(key) not in fields)
        fields.update({_b(k): _b(v) for k, v in mapping.items()})
        self._touch(name)
        return added

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def delete(self, *names):
        removed = 0
        for name in names:
            if self.hashes.pop(name, None) is not None:
                removed += 1
            self._touch(name)
        return removed

    async def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        for name in list(self.hashes):
            if name.startswith(prefix):
                yield name.encode("utf-8")


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def redis_store(redis_client):
    return RedisDocumentStore(redis_client, namespace="vault")


class TestMemoryStore:
    """Versioned documents in memory."""

    @pytest.mark.asyncio
    async def test_versions_start_at_one(self, store):
        """The first write creates version 1, later writes increment."""
        assert await store.set("a", b"1") == 1
        assert await store.set("a", b"2") == 2
        doc = await store.get("a")
        assert doc.data == b"2"
        assert doc.version == 2

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        """Reading an absent key returns None."""
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_create_if_absent(self, store):
        """CAS with expected None only succeeds once."""
        assert await store.compare_and_set("a", None, b"first") is True
        assert await store.compare_and_set("a", None, b"second") is False
        assert (await store.get("a")).data == b"first"

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, store):
        """A writer holding an old version loses."""
        await store.set("a", b"1")
        assert await store.compare_and_set("a", 1, b"2") is True
        assert await store.compare_and_set("a", 1, b"3") is False
        doc = await store.get("a")
        assert (doc.data, doc.version) == (b"2", 2)

    @pytest.mark.asyncio
    async def test_concurrent_cas_single_winner(self, store):
        """Of many concurrent writers on one version exactly one wins."""
        await store.set("a", b"0")
        results = await asyncio.gather(
            *(store.compare_and_set("a", 1, str(i).encode()) for i in range(10))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_scan_and_delete(self, store):
        """Scans are prefix-filtered and sorted."""
        for key in ("rings/b", "rings/a", "keys/x"):
            await store.set(key, b"{}")
        assert await store.scan("rings/") == ["rings/a", "rings/b"]
        await store.delete("rings/a")
        await store.delete("rings/a")
        assert await store.scan("rings/") == ["rings/b"]


class TestRedisStore:
    """Versioned documents on Redis hashes."""

    @pytest.mark.asyncio
    async def test_set_increments_version(self, redis_store, redis_client):
        """Plain writes bump the version stored next to the data."""
        assert await redis_store.set("a", b"1") == 1
        assert await redis_store.set("a", b"2") == 2
        doc = await redis_store.get("a")
        assert (doc.data, doc.version) == (b"2", 2)
        assert redis_client.hashes["vault:a"][b"version"] == b"2"

    @pytest.mark.asyncio
    async def test_missing_document(self, redis_store):
        """Reading an absent key returns None."""
        assert await redis_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_create_if_absent(self, redis_store):
        """CAS with expected None only succeeds once."""
        assert await redis_store.compare_and_set("a", None, b"first") is True
        assert await redis_store.compare_and_set("a", None, b"second") is False
        doc = await redis_store.get("a")
        assert (doc.data, doc.version) == (b"first", 1)

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, redis_store):
        """A writer holding an old version loses without writing."""
        await redis_store.set("a", b"1")
        assert await redis_store.compare_and_set("a", 1, b"2") is True
        assert await redis_store.compare_and_set("a", 1, b"3") is False
        doc = await redis_store.get("a")
        assert (doc.data, doc.version) == (b"2", 2)

    @pytest.mark.asyncio
    async def test_lost_race_returns_false(self, redis_store, redis_client):
        """A write landing between WATCH and EXEC aborts the CAS."""
        await redis_store.set("a", b"1")

        async def concurrent_write():
            await redis_store.set("a", b"other")

        redis_client.before_execute = concurrent_write
        assert await redis_store.compare_and_set("a", 1, b"mine") is False
        doc = await redis_store.get("a")
        assert (doc.data, doc.version) == (b"other", 2)

    @pytest.mark.asyncio
    async def test_lost_race_on_create(self, redis_store, redis_client):
        """Two creators racing on an absent key produce one document."""

        async def concurrent_create():
            assert await redis_store.compare_and_set("a", None, b"theirs") is True

        redis_client.before_execute = concurrent_create
        assert await redis_store.compare_and_set("a", None, b"mine") is False
        assert (await redis_store.get("a")).data == b"theirs"

    @pytest.mark.asyncio
    async def test_scan_strips_namespace(self, redis_store, redis_client):
        """Scans return store keys without the namespace, sorted."""
        other = RedisDocumentStore(redis_client, namespace="other")
        for key in ("rings/b", "rings/a", "keys/x"):
            await redis_store.set(key, b"{}")
        await other.set("rings/z", b"{}")
        assert await redis_store.scan("rings/") == ["rings/a", "rings/b"]
        assert await other.scan("rings/") == ["rings/z"]

    @pytest.mark.asyncio
    async def test_delete(self, redis_store):
        """Deleted documents disappear and can be created again."""
        await redis_store.set("a", b"1")
        await redis_store.delete("a")
        assert await redis_store.get("a") is None
        assert await redis_store.scan("") == []
        assert await redis_store.compare_and_set("a", None, b"again") is True


class TestBounded:
    """Deadlines on store calls."""

    @pytest.mark.asyncio
    async def test_returns_result(self, store):
        """A fast call returns its value."""
        assert await bounded(store.set("a", b"1"), 1.0, "set") == 1

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        """A slow call raises a retryable StoreTimeoutError."""
        with pytest.raises(StoreTimeoutError) as exc:
            await bounded(asyncio.sleep(1), 0.01, "get")
        assert exc.value.retryable is True
        assert exc.value.details["operation"] == "get"


class TestRetryOnConflict:
    """Caller-side retries."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        """Conflicts are retried up to the attempt budget."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConflictError("lost race")
            return "ok"

        assert await retry_on_conflict(flaky, attempts=3, backoff=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """The last conflict propagates once attempts run out."""

        async def always():
            raise ConflictError("lost race")

        with pytest.raises(ConflictError):
            await retry_on_conflict(always, attempts=2, backoff=0)

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self):
        """Errors that are not retryable are raised immediately."""
        calls = []

        async def missing():
            calls.append(1)
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            await retry_on_conflict(missing, attempts=5, backoff=0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_attempts(self):
        """At least one attempt is required."""

        async def noop():
            return None

        with pytest.raises(ValueError):
            await retry_on_conflict(noop, attempts=0)

