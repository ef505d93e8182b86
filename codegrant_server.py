#!/usr/bin/env python3
"""
codegrant — OAuth 2.0 Authorization Code Grant server.

Serves the authorize → consent → token flow over HTTP (Starlette on
uvicorn). Clients either register at /register (HTML form or JSON) or are
pre-seeded from clients.yaml; access tokens are HS256 JWTs signed with
CODEGRANT_SIGNING_KEY.

All state (clients, codes, pending consent) is in-memory.
"""

import argparse
import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from codegrant_config import Settings, load_settings
from codegrant_oauth import AuthorizationCodeGrant, OAuthError, oauth_error_handler
from codegrant_store import (
    AuthorizationCodeStore,
    ClientRegistry,
    ConsentRequestStore,
    DuplicateClientError,
)
from codegrant_tokens import TokenIssuer

logger = logging.getLogger("codegrant")


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

class RequestLogMiddleware:
    """Log one line per HTTP request, without query strings (they carry codes)."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status = 0

        async def _send(message: dict) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        hdrs = dict(scope.get("headers", []))
        ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
        try:
            await self.app(scope, receive, _send)
        finally:
            logger.info("%s %s -> %d ua=%s", scope.get("method", "?"),
                        scope.get("path", "?"), status, ua[:60])


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

async def _periodic_sweep(grant: AuthorizationCodeGrant, interval: float) -> None:
    """Background loop that drops expired codes and consent requests."""
    while True:
        await asyncio.sleep(interval)
        try:
            codes, consents = await grant.purge_expired()
            if codes or consents:
                logger.info("sweep: expired %d codes, %d consent requests", codes, consents)
        except Exception:
            logger.exception("sweep: periodic purge failed")


async def seed_clients(registry: ClientRegistry, settings: Settings) -> None:
    for seed in settings.clients:
        try:
            await registry.create(
                name=seed.name,
                redirect_uri=seed.redirect_uri,
                website=seed.website,
                logo=seed.logo,
                client_id=seed.client_id,
            )
        except DuplicateClientError as e:
            raise SystemExit(f"Invalid clients file: {e}")
    if settings.clients:
        logger.info("codegrant: seeded %d clients", len(settings.clients))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(settings: Settings) -> Starlette:
    registry = ClientRegistry()
    grant = AuthorizationCodeGrant(
        registry=registry,
        codes=AuthorizationCodeStore(ttl=settings.code_ttl,
                                     max_codes=settings.max_pending_codes),
        consents=ConsentRequestStore(ttl=settings.code_ttl,
                                     max_pending=settings.max_pending_codes),
        tokens=TokenIssuer(settings.signing_key, issuer=settings.issuer,
                           expires_in=settings.token_ttl),
        issuer_url=settings.issuer,
        registration_secret=settings.registration_secret,
        require_consent_reference=settings.require_consent_reference,
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await seed_clients(registry, settings)
        sweep = asyncio.create_task(_periodic_sweep(grant, settings.sweep_interval))
        try:
            yield
        finally:
            sweep.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep
            logger.info("codegrant: shutting down")

    async def healthz(request: Request) -> Response:
        return JSONResponse({"status": "ok", "clients": len(registry),
                             "pending_codes": len(grant.codes)})

    app = Starlette(
        routes=[
            Route("/oauth2/authorize", grant.handle_authorize, methods=["GET"]),
            Route("/oauth2/consent", grant.handle_consent, methods=["GET"]),
            Route("/oauth2/token", grant.handle_token, methods=["POST"]),
            Route("/", grant.handle_register_form, methods=["GET"]),
            Route("/register", grant.handle_register_form, methods=["GET"]),
            Route("/register", grant.handle_register, methods=["POST"]),
            Route("/.well-known/oauth-authorization-server", grant.handle_metadata,
                  methods=["GET"]),
            Route("/healthz", healthz, methods=["GET"]),
        ],
        middleware=[Middleware(RequestLogMiddleware)],
        exception_handlers={OAuthError: oauth_error_handler},
        lifespan=lifespan,
    )
    app.state.grant = grant
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="codegrant OAuth 2.0 authorization server")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--clients-file", type=Path, default=None)
    parser.add_argument("--audit-log", type=Path,
                        default=Path.home() / ".codegrant" / "audit.log")
    args = parser.parse_args()

    # Audit logger — JSON-lines file, not mixed into the console log
    args.audit_log.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(args.audit_log)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("codegrant-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False

    settings = load_settings(clients_file=args.clients_file)
    app = create_app(settings)

    import uvicorn

    logger.info("codegrant: starting HTTP server on %s:%d (issuer %s)",
                args.host, args.port, settings.issuer)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True)


if __name__ == "__main__":
    main()
