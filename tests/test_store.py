"""Tests for codegrant_store.py."""
import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from codegrant_store import (
    AuthorizationCodeStore,
    ClientRegistry,
    ConsentRequestStore,
    DuplicateClientError,
    StorageError,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ClientRegistry(clock=clock)


@pytest.fixture
def codes(clock):
    return AuthorizationCodeStore(ttl=300, clock=clock)


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

class TestClientRegistry:
    @pytest.mark.asyncio
    async def test_create_generates_id(self, registry):
        client = await registry.create(name="Demo", redirect_uri="https://app.test/cb")
        assert client.client_id
        assert await registry.lookup(client.client_id) is client

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self, registry):
        a = await registry.create(name="A", redirect_uri="https://a.test/cb")
        b = await registry.create(name="B", redirect_uri="https://b.test/cb")
        assert a.client_id != b.client_id

    @pytest.mark.asyncio
    async def test_explicit_id(self, registry):
        client = await registry.create(name="Demo", redirect_uri="https://app.test/cb",
                                       client_id="C1")
        assert client.client_id == "C1"

    @pytest.mark.asyncio
    async def test_lookup_unknown_and_empty(self, registry):
        assert await registry.lookup("nope") is None
        assert await registry.lookup("") is None

    @pytest.mark.asyncio
    async def test_duplicate_redirect_uri_rejected(self, registry):
        await registry.create(name="A", redirect_uri="https://app.test/cb")
        with pytest.raises(DuplicateClientError, match="redirect_uri"):
            await registry.create(name="B", redirect_uri="https://app.test/cb")

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, registry):
        await registry.create(name="A", redirect_uri="https://a.test/cb")
        with pytest.raises(DuplicateClientError, match="name"):
            await registry.create(name="A", redirect_uri="https://b.test/cb")

    @pytest.mark.asyncio
    async def test_delete_tombstones(self, registry):
        client = await registry.create(name="A", redirect_uri="https://a.test/cb")
        assert await registry.delete(client.client_id) is True
        assert await registry.lookup(client.client_id) is None
        assert client.deleted
        assert len(registry) == 0
        # Tombstoned clients keep their redirect URI reserved
        with pytest.raises(DuplicateClientError):
            await registry.create(name="B", redirect_uri="https://a.test/cb")

    @pytest.mark.asyncio
    async def test_delete_twice(self, registry):
        client = await registry.create(name="A", redirect_uri="https://a.test/cb")
        await registry.delete(client.client_id)
        assert await registry.delete(client.client_id) is False
        assert await registry.delete("unknown") is False


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------

class TestAuthorizationCodeStore:
    @pytest.mark.asyncio
    async def test_issue_binds_client_and_time(self, codes, clock):
        code = await codes.issue("C1", "https://app.test/cb")
        assert code.client_id == "C1"
        assert code.redirect_uri == "https://app.test/cb"
        assert code.issued_at == clock.now
        assert len(code.code) >= 32

    @pytest.mark.asyncio
    async def test_codes_are_unique(self, codes):
        issued = {(await codes.issue("C1", "https://app.test/cb")).code for _ in range(50)}
        assert len(issued) == 50

    @pytest.mark.asyncio
    async def test_redeem_is_single_use(self, codes):
        code = await codes.issue("C1", "https://app.test/cb")
        assert await codes.redeem(code.code, "C1") is not None
        assert await codes.redeem(code.code, "C1") is None
        assert len(codes) == 0

    @pytest.mark.asyncio
    async def test_foreign_client_cannot_redeem(self, codes):
        code = await codes.issue("C1", "https://app.test/cb")
        assert await codes.redeem(code.code, "C2") is None
        # Still there for its owner
        assert await codes.redeem(code.code, "C1") is not None

    @pytest.mark.asyncio
    async def test_unknown_code(self, codes):
        assert await codes.redeem("guessed", "C1") is None

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, codes):
        code = await codes.issue("C1", "https://app.test/cb")
        assert await codes.peek(code.code, "C1") is not None
        assert await codes.peek(code.code, "C2") is None
        assert await codes.redeem(code.code, "C1") is not None

    @pytest.mark.asyncio
    async def test_expired_code_treated_as_absent(self, codes, clock):
        code = await codes.issue("C1", "https://app.test/cb")
        clock.advance(301)
        assert await codes.redeem(code.code, "C1") is None
        assert len(codes) == 0

    @pytest.mark.asyncio
    async def test_code_valid_until_ttl(self, codes, clock):
        code = await codes.issue("C1", "https://app.test/cb")
        clock.advance(300)
        assert await codes.redeem(code.code, "C1") is not None

    @pytest.mark.asyncio
    async def test_purge_expired(self, codes, clock):
        await codes.issue("C1", "https://app.test/cb")
        await codes.issue("C1", "https://app.test/cb")
        clock.advance(200)
        fresh = await codes.issue("C1", "https://app.test/cb")
        clock.advance(150)
        assert await codes.purge_expired() == 2
        assert len(codes) == 1
        assert await codes.peek(fresh.code, "C1") is not None

    @pytest.mark.asyncio
    async def test_full_store_raises_storage_error(self, clock):
        store = AuthorizationCodeStore(ttl=300, max_codes=2, clock=clock)
        await store.issue("C1", "https://app.test/cb")
        await store.issue("C1", "https://app.test/cb")
        with pytest.raises(StorageError, match="full"):
            await store.issue("C1", "https://app.test/cb")

    @pytest.mark.asyncio
    async def test_full_store_purges_before_failing(self, clock):
        store = AuthorizationCodeStore(ttl=300, max_codes=1, clock=clock)
        await store.issue("C1", "https://app.test/cb")
        clock.advance(301)
        await store.issue("C1", "https://app.test/cb")
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redeem_single_winner(self, codes):
        code = await codes.issue("C1", "https://app.test/cb")
        results = await asyncio.gather(*[codes.redeem(code.code, "C1") for _ in range(20)])
        assert sum(1 for r in results if r is not None) == 1


# ---------------------------------------------------------------------------
# Pending consent
# ---------------------------------------------------------------------------

class TestConsentRequestStore:
    @pytest.mark.asyncio
    async def test_pop_is_single_use(self, clock):
        store = ConsentRequestStore(ttl=300, clock=clock)
        pending = await store.create("C1", "https://app.test/cb", state="S1", scope="read")
        popped = await store.pop(pending.request_id)
        assert popped is not None
        assert (popped.client_id, popped.redirect_uri, popped.state, popped.scope) == \
            ("C1", "https://app.test/cb", "S1", "read")
        assert await store.pop(pending.request_id) is None

    @pytest.mark.asyncio
    async def test_expired_request(self, clock):
        store = ConsentRequestStore(ttl=300, clock=clock)
        pending = await store.create("C1", "https://app.test/cb")
        clock.advance(301)
        assert await store.pop(pending.request_id) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self, clock):
        store = ConsentRequestStore(ttl=300, clock=clock)
        await store.create("C1", "https://app.test/cb")
        clock.advance(301)
        await store.create("C1", "https://app.test/cb")
        assert await store.purge_expired() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_full_store_raises_storage_error(self, clock):
        store = ConsentRequestStore(ttl=300, max_pending=2, clock=clock)
        await store.create("C1", "https://app.test/cb")
        await store.create("C1", "https://app.test/cb")
        with pytest.raises(StorageError, match="full"):
            await store.create("C1", "https://app.test/cb")
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_full_store_purges_before_failing(self, clock):
        store = ConsentRequestStore(ttl=300, max_pending=1, clock=clock)
        await store.create("C1", "https://app.test/cb")
        clock.advance(301)
        pending = await store.create("C1", "https://app.test/cb", state="S2")
        assert len(store) == 1
        assert (await store.pop(pending.request_id)).state == "S2"
