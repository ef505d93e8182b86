"""
codegrant_store.py — in-memory state for the authorization code grant.

Three stores, each the sole owner of its records:
  - ClientRegistry         registered clients (soft-deletable, never purged)
  - AuthorizationCodeStore outstanding codes (single-use, TTL-bounded)
  - ConsentRequestStore    authorization requests awaiting the owner's decision

All mutations go through an asyncio.Lock. Redemption is one critical section
so two concurrent exchanges of the same code see at most one success.
"""

import asyncio
import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger("codegrant-store")

Clock = Callable[[], float]


class StorageError(Exception):
    """A store could not complete a write."""


class DuplicateClientError(StorageError):
    """Name or redirect URI already belongs to another client."""


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class Client:
    client_id: str
    name: str
    redirect_uri: str
    website: str = ""
    logo: str = ""
    created_at: float = 0.0
    deleted_at: float | None = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    issued_at: float

    def expired(self, now: float, ttl: float) -> bool:
        return now - self.issued_at > ttl


@dataclass
class ConsentRequest:
    request_id: str
    client_id: str
    redirect_uri: str
    state: str = ""
    scope: str = ""
    created_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

class ClientRegistry:
    """Registered clients, keyed by client_id.

    Deleted clients are tombstoned: they stay in the table (so their
    name and redirect URI remain reserved) but lookup() no longer sees them.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._clients: dict[str, Client] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return sum(1 for c in self._clients.values() if not c.deleted)

    async def lookup(self, client_id: str) -> Client | None:
        if not client_id:
            return None
        client = self._clients.get(client_id)
        if client is None or client.deleted:
            return None
        return client

    async def create(
        self,
        name: str,
        redirect_uri: str,
        website: str = "",
        logo: str = "",
        client_id: str | None = None,
    ) -> Client:
        async with self._lock:
            for existing in self._clients.values():
                if existing.redirect_uri == redirect_uri:
                    raise DuplicateClientError(f"redirect_uri already registered: {redirect_uri}")
                if existing.name == name:
                    raise DuplicateClientError(f"client name already registered: {name}")
            if client_id is None:
                client_id = secrets.token_hex(12)
            elif client_id in self._clients:
                raise DuplicateClientError(f"client_id already registered: {client_id}")

            client = Client(
                client_id=client_id,
                name=name,
                redirect_uri=redirect_uri,
                website=website,
                logo=logo,
                created_at=self._clock(),
            )
            self._clients[client_id] = client
        logger.info("client_created: %s (%s)", client_id, name)
        return client

    async def delete(self, client_id: str) -> bool:
        async with self._lock:
            client = self._clients.get(client_id)
            if client is None or client.deleted:
                return False
            client.deleted_at = self._clock()
        logger.info("client_deleted: %s", client_id)
        return True


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------

class AuthorizationCodeStore:
    """Outstanding authorization codes.

    A code is visible iff it has been issued, not yet redeemed, and is
    younger than ``ttl`` seconds. Expired codes are dropped when read and by
    purge_expired(), which the server runs periodically.
    """

    def __init__(self, ttl: float = 300, max_codes: int = 10000,
                 clock: Clock = time.time):
        self.ttl = ttl
        self.max_codes = max_codes
        self._clock = clock
        self._codes: dict[str, AuthorizationCode] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._codes)

    async def issue(self, client_id: str, redirect_uri: str) -> AuthorizationCode:
        async with self._lock:
            if len(self._codes) >= self.max_codes:
                self._purge_locked()
                if len(self._codes) >= self.max_codes:
                    raise StorageError(f"code store full ({self.max_codes} outstanding codes)")
            code = AuthorizationCode(
                code=secrets.token_urlsafe(32),
                client_id=client_id,
                redirect_uri=redirect_uri,
                issued_at=self._clock(),
            )
            self._codes[code.code] = code
        return code

    async def peek(self, code: str, client_id: str) -> AuthorizationCode | None:
        """Return the live code bound to client_id without consuming it."""
        async with self._lock:
            return self._live_locked(code, client_id)

    async def redeem(self, code: str, client_id: str) -> AuthorizationCode | None:
        """Atomically remove and return the live code bound to client_id.

        Returns None for unknown, expired, already-redeemed, or foreign codes.
        A foreign code is left in place for its rightful client.
        """
        async with self._lock:
            auth_code = self._live_locked(code, client_id)
            if auth_code is not None:
                del self._codes[code]
            return auth_code

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_locked()

    def _live_locked(self, code: str, client_id: str) -> AuthorizationCode | None:
        auth_code = self._codes.get(code)
        if auth_code is None:
            return None
        if auth_code.expired(self._clock(), self.ttl):
            del self._codes[code]
            return None
        if not hmac.compare_digest(auth_code.client_id.encode(), client_id.encode()):
            return None
        return auth_code

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [c for c, ac in self._codes.items() if ac.expired(now, self.ttl)]
        for c in expired:
            del self._codes[c]
        return len(expired)


# ---------------------------------------------------------------------------
# Pending consent
# ---------------------------------------------------------------------------

class ConsentRequestStore:
    """Authorization requests shown to the owner, keyed by request_id."""

    def __init__(self, ttl: float = 300, max_pending: int = 10000,
                 clock: Clock = time.time):
        self.ttl = ttl
        self.max_pending = max_pending
        self._clock = clock
        self._pending: dict[str, ConsentRequest] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    async def create(self, client_id: str, redirect_uri: str,
                     state: str = "", scope: str = "") -> ConsentRequest:
        request = ConsentRequest(
            request_id=secrets.token_urlsafe(24),
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state,
            scope=scope,
            created_at=self._clock(),
        )
        async with self._lock:
            if len(self._pending) >= self.max_pending:
                self._purge_locked()
                if len(self._pending) >= self.max_pending:
                    raise StorageError(f"consent store full ({self.max_pending} pending requests)")
            self._pending[request.request_id] = request
        return request

    async def pop(self, request_id: str) -> ConsentRequest | None:
        async with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None or self._clock() - request.created_at > self.ttl:
            return None
        return request

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [r for r, cr in self._pending.items() if now - cr.created_at > self.ttl]
        for r in expired:
            del self._pending[r]
        return len(expired)
