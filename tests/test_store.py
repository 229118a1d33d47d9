"""Tests for document stores."""

import asyncio
import json
from urllib.parse import unquote

import httpx
import pytest

from did_registry.common.exceptions import ConflictError, NotFoundError, StoreUnavailableError
from did_registry.store.backend import BoundedStore, InMemoryDocumentStore
from did_registry.store.couchdb import CouchDocumentStore


class FakeCouch:
    """Just enough of CouchDB's document API for httpx.MockTransport."""

    def __init__(self, database: str = "did_db") -> None:
        self.database = database
        self.docs: dict[str, dict] = {}
        self.failures = 0
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.failures:
            self.failures -= 1
            return httpx.Response(503, json={"error": "unavailable"})

        path = request.url.raw_path.decode().split("?", 1)[0]
        parts = path.strip("/").split("/", 1)
        if parts[0] != self.database:
            return httpx.Response(404, json={"error": "not_found"})
        if len(parts) == 1:
            return httpx.Response(200, json={"db_name": self.database})
        key = unquote(parts[1])

        if key == "_all_docs":
            descending = request.url.params.get("descending") == "true"
            first = request.url.params.get("startkey")
            last = request.url.params.get("endkey")
            if descending:
                first, last = last, first
            start = json.loads(first) if first else ""
            end = json.loads(last) if last else "\ufff0"
            rows = [
                {"id": k, "key": k, "doc": doc}
                for k, doc in sorted(self.docs.items(), reverse=descending)
                if start <= k <= end
            ]
            if "limit" in request.url.params:
                rows = rows[:int(request.url.params["limit"])]
            return httpx.Response(200, json={"rows": rows})

        current = self.docs.get(key)
        if request.method == "GET":
            if current is None:
                return httpx.Response(404, json={"error": "not_found"})
            return httpx.Response(200, json=current)

        if request.method == "PUT":
            body = json.loads(request.content)
            if (current and body.get("_rev") != current["_rev"]) or (not current and "_rev" in body):
                return httpx.Response(409, json={"error": "conflict"})
            generation = int(current["_rev"].split("-")[0]) + 1 if current else 1
            rev = f"{generation}-abc"
            self.docs[key] = {**body, "_id": key, "_rev": rev}
            return httpx.Response(201, json={"ok": True, "id": key, "rev": rev})

        if request.method == "DELETE":
            if current is None:
                return httpx.Response(404, json={"error": "not_found"})
            if request.url.params.get("rev") != current["_rev"]:
                return httpx.Response(409, json={"error": "conflict"})
            del self.docs[key]
            return httpx.Response(200, json={"ok": True})

        return httpx.Response(405)


def couch_store(fake: FakeCouch, retry_attempts: int = 3) -> CouchDocumentStore:
    client = httpx.AsyncClient(base_url="http://couch.test", transport=httpx.MockTransport(fake))
    return CouchDocumentStore(
        base_url="http://couch.test",
        database=fake.database,
        client=client,
        retry_attempts=retry_attempts,
    )


@pytest.mark.asyncio
class TestInMemoryStore:
    """Test the in-memory store contract."""

    async def test_put_get(self):
        """Test a stored body comes back with its revision."""
        store = InMemoryDocumentStore()

        revision = await store.put("did:example:1", {"a": 1})
        doc = await store.get("did:example:1")

        assert doc.revision == revision
        assert doc.body == {"a": 1}

    async def test_stale_revision_conflicts(self):
        """Test writes with an outdated revision fail with ConflictError."""
        store = InMemoryDocumentStore()
        first = await store.put("k", {"v": 1})
        await store.put("k", {"v": 2}, revision=first)

        with pytest.raises(ConflictError) as exc_info:
            await store.put("k", {"v": 3}, revision=first)
        assert exc_info.value.retryable

        with pytest.raises(ConflictError):
            await store.put("k", {"v": 3})

    async def test_remove(self):
        """Test remove needs the current revision and the key to exist."""
        store = InMemoryDocumentStore()
        revision = await store.put("k", {"v": 1})

        with pytest.raises(ConflictError):
            await store.remove("k", "0-stale")
        await store.remove("k", revision)

        with pytest.raises(NotFoundError):
            await store.get("k")
        with pytest.raises(NotFoundError):
            await store.remove("k", revision)

    async def test_returned_bodies_are_copies(self):
        """Test mutating a returned body never changes the stored one."""
        store = InMemoryDocumentStore()
        await store.put("k", {"nested": {"v": 1}})

        doc = await store.get("k")
        doc.body["nested"]["v"] = 99

        assert (await store.get("k")).body == {"nested": {"v": 1}}

    async def test_list_by_prefix(self):
        """Test list_all filters by prefix and orders by key."""
        store = InMemoryDocumentStore()
        for key in ["did:b", "request:1", "did:a"]:
            await store.put(key, {"key": key})

        keys = [doc.key for doc in await store.list_all("did:")]

        assert keys == ["did:a", "did:b"]
        assert len(await store.list_all()) == 3

    async def test_last_by_prefix(self):
        """Test last returns the greatest key under the prefix."""
        store = InMemoryDocumentStore()
        for key in ["access:000000000002", "access:000000000010", "request:9"]:
            await store.put(key, {"key": key})

        assert (await store.last("access:")).key == "access:000000000010"
        assert await store.last("missing:") is None


class SlowStore(InMemoryDocumentStore):
    async def get(self, key):
        await asyncio.sleep(1)
        return await super().get(key)


@pytest.mark.asyncio
class TestBoundedStore:
    """Test the timeout wrapper."""

    async def test_timeout_becomes_store_unavailable(self):
        """Test a store call past the timeout raises StoreUnavailableError."""
        store = BoundedStore(SlowStore("slow"), timeout_seconds=0.05)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.get("k")

        assert exc_info.value.retryable
        assert exc_info.value.http_status == 500

    async def test_errors_pass_through(self):
        """Test inner-store errors are not rewritten."""
        store = BoundedStore(InMemoryDocumentStore(), timeout_seconds=1)

        with pytest.raises(NotFoundError):
            await store.get("missing")
        await store.put("k", {"v": 1})
        assert (await store.get("k")).body == {"v": 1}


@pytest.mark.asyncio
class TestCouchDocumentStore:
    """Test the CouchDB adapter against a mocked server."""

    async def test_round_trip_strips_metadata(self):
        """Test bodies come back without CouchDB's underscore fields."""
        fake = FakeCouch()
        store = couch_store(fake)

        revision = await store.put("did:example:abc", {"did": "did:example:abc"})
        doc = await store.get("did:example:abc")

        assert revision == "1-abc"
        assert doc.revision == revision
        assert doc.body == {"did": "did:example:abc"}
        assert "did:example:abc" in fake.docs

    async def test_conflict_and_not_found(self):
        """Test 409 and 404 map to the store contract's errors."""
        store = couch_store(FakeCouch())
        await store.put("k", {"v": 1})

        with pytest.raises(ConflictError):
            await store.put("k", {"v": 2})
        with pytest.raises(NotFoundError):
            await store.get("missing")
        with pytest.raises(NotFoundError):
            await store.remove("missing", "1-abc")

    async def test_update_and_remove(self):
        """Test revisions thread through updates and deletes."""
        store = couch_store(FakeCouch())
        first = await store.put("k", {"v": 1})
        second = await store.put("k", {"v": 2}, revision=first)

        with pytest.raises(ConflictError):
            await store.remove("k", first)
        await store.remove("k", second)

        with pytest.raises(NotFoundError):
            await store.get("k")

    async def test_list_by_prefix(self):
        """Test _all_docs listing with a key range."""
        store = couch_store(FakeCouch())
        for key in ["did:b", "did:a", "request:1"]:
            await store.put(key, {"key": key})

        docs = await store.list_all("did:")

        assert [d.key for d in docs] == ["did:a", "did:b"]
        assert docs[0].body == {"key": "did:a"}

    async def test_last_reads_one_row(self):
        """Test last asks CouchDB for a single descending row within the prefix."""
        fake = FakeCouch()
        store = couch_store(fake)
        for key in ["access:000000000001", "access:000000000002", "request:1"]:
            await store.put(key, {"key": key})

        doc = await store.last("access:")

        assert doc.key == "access:000000000002"
        assert doc.body == {"key": "access:000000000002"}
        assert await store.last("grant:") is None

    async def test_transient_failure_retried(self):
        """Test 5xx answers are retried before succeeding."""
        fake = FakeCouch()
        store = couch_store(fake, retry_attempts=3)
        fake.failures = 1

        await store.put("k", {"v": 1})

        assert fake.calls == 2
        assert (await store.get("k")).body == {"v": 1}

    async def test_persistent_failure_surfaces(self):
        """Test exhausted retries raise StoreUnavailableError."""
        fake = FakeCouch()
        store = couch_store(fake, retry_attempts=2)
        fake.failures = 5

        with pytest.raises(StoreUnavailableError):
            await store.get("k")

        assert fake.calls == 2

    async def test_ping_missing_database(self):
        """Test ping fails when the database does not exist."""
        store = couch_store(FakeCouch("did_db"))
        store.database = "other_db"

        with pytest.raises(StoreUnavailableError):
            await store.ping()

    async def test_ping(self):
        """Test ping succeeds against an existing database."""
        await couch_store(FakeCouch()).ping()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
