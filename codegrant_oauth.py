"""
codegrant_oauth.py — OAuth 2.0 Authorization Code Grant endpoints.

Implements:
  /oauth2/authorize                        — validate request, render consent page
  /oauth2/consent                          — owner's approve/deny → redirect with code or error
  /oauth2/token                            — code → signed JWT access token
  /register                                — client registration form and API (optionally gated)
  /.well-known/oauth-authorization-server  — RFC 8414 metadata

Security properties:
  - redirect_uri must equal the registered URI exactly.
  - Codes are single-use, client-bound, redirect-bound and expire after code_ttl.
  - The consent page carries an opaque single-use request_id so the decision
    is bound to the request that was actually validated.
  - Unknown, expired, consumed and foreign codes all answer invalid_grant.
  - The token is signed before the code is consumed, so a signing failure
    never burns a grant.
"""

import hmac
import html as html_mod
import json
import logging
import time
from typing import Any
from urllib.parse import urlencode, urlparse, urlunparse

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from codegrant_store import (
    AuthorizationCodeStore,
    Client,
    ClientRegistry,
    ConsentRequestStore,
    DuplicateClientError,
    StorageError,
)
from codegrant_tokens import TokenIssuer, TokenSigningError

logger = logging.getLogger("codegrant-oauth")
audit_logger = logging.getLogger("codegrant-audit")

RESPONSE_TYPE_CODE = "code"
GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """Protocol error rendered as {"error": ..., "error_description": ...}."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str = ""):
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidRedirectURI(OAuthError):
    error = "invalid_redirect_uri"
    status_code = 401


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class Unauthorized(OAuthError):
    error = "unauthorized"
    status_code = 401


class ClientExists(OAuthError):
    error = "client_exists"
    status_code = 409


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


async def oauth_error_handler(request: Request, exc: OAuthError) -> Response:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=NO_STORE)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

class TokenRequest(BaseModel):
    grant_type: str = ""
    code: str = ""
    redirect_uri: str = ""
    client_id: str = ""


class RegistrationRequest(BaseModel):
    name: str
    redirect_uri: str
    website: str = ""
    logo: str = ""


async def _read_params(request: Request) -> dict[str, Any]:
    """Read a JSON or form-encoded body into a flat dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequest("Malformed JSON body.")
        if not isinstance(data, dict):
            raise InvalidRequest("JSON body must be an object.")
        return data
    if not content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        raise InvalidRequest("Body must be JSON or form-encoded.")
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def construct_redirect_uri(base: str, **params: str | None) -> str:
    """Append params to base, keeping any query the registered URI already has."""
    parsed = urlparse(base)
    extra = urlencode([(k, v) for k, v in params.items() if v])
    if not extra:
        return base
    query = f"{parsed.query}&{extra}" if parsed.query else extra
    return urlunparse(parsed._replace(query=query))


def _valid_redirect_scheme(uri: str) -> bool:
    parsed = urlparse(uri)
    if not parsed.netloc or parsed.fragment:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1")


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class AuthorizationCodeGrant:
    """Authorization server for the authorization code grant.

    Authorize → consent page (request_id) → approve/deny redirect → token.
    Holds no per-request state outside the three stores.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        codes: AuthorizationCodeStore,
        consents: ConsentRequestStore,
        tokens: TokenIssuer,
        issuer_url: str,
        registration_secret: str | None = None,
        require_consent_reference: bool = False,
    ):
        self.registry = registry
        self.codes = codes
        self.consents = consents
        self.tokens = tokens
        self.issuer_url = issuer_url.rstrip("/")
        self.registration_secret = registration_secret
        self.require_consent_reference = require_consent_reference

    # --- /oauth2/authorize ---

    async def handle_authorize(self, request: Request) -> Response:
        params = request.query_params
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state", "")
        scope = params.get("scope", "")

        if params.get("response_type", "") != RESPONSE_TYPE_CODE:
            raise UnsupportedResponseType("Only response_type=code is supported.")

        client = await self._validated_client(client_id, redirect_uri)
        try:
            pending = await self.consents.create(
                client_id=client.client_id,
                redirect_uri=redirect_uri,
                state=state,
                scope=scope,
            )
        except StorageError:
            logger.exception("authorize: failed to store consent request for %s", client.client_id)
            raise ServerError("Failed to store authorization request.")
        _audit("authorize_pending", client_id=client.client_id)
        return HTMLResponse(_consent_page(
            client_name=client.name,
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            state=state,
            scope=scope,
            request_id=pending.request_id,
        ))

    # --- /oauth2/consent ---

    async def handle_consent(self, request: Request) -> Response:
        params = request.query_params
        approved = params.get("approved", "") == "true"
        request_id = params.get("request_id", "")
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state", "")

        if request_id:
            pending = await self.consents.pop(request_id)
            if pending is None:
                raise InvalidRequest("Unknown or expired consent request.")
            if (client_id and client_id != pending.client_id) or \
                    (redirect_uri and redirect_uri != pending.redirect_uri):
                _audit("consent_mismatch", client_id=client_id, expected=pending.client_id)
                raise InvalidRequest("Consent request does not match client.")
            client_id = pending.client_id
            redirect_uri = pending.redirect_uri
            state = pending.state
        elif self.require_consent_reference:
            raise InvalidRequest("Missing request_id.")

        # The client may have been deleted, or the query forged, since /authorize.
        client = await self._validated_client(client_id, redirect_uri)

        if not approved:
            _audit("authorize_denied", client_id=client.client_id)
            return RedirectResponse(
                construct_redirect_uri(redirect_uri, error="access_denied", state=state),
                status_code=302,
            )

        try:
            auth_code = await self.codes.issue(client.client_id, redirect_uri)
        except StorageError:
            logger.exception("consent: failed to store authorization code for %s", client.client_id)
            raise ServerError("Failed to store authorization code.")

        _audit("authorize_approved", client_id=client.client_id)
        return RedirectResponse(
            construct_redirect_uri(redirect_uri, code=auth_code.code, state=state),
            status_code=302,
        )

    # --- /oauth2/token ---

    async def handle_token(self, request: Request) -> Response:
        try:
            token_request = TokenRequest.model_validate(await _read_params(request))
        except ValidationError:
            raise InvalidRequest("Malformed token request.")

        if token_request.grant_type != GRANT_TYPE_AUTHORIZATION_CODE:
            raise UnsupportedGrantType("Only grant_type=authorization_code is supported.")
        if not token_request.code or not token_request.client_id:
            raise InvalidRequest("code and client_id are required.")

        code, client_id = token_request.code, token_request.client_id
        auth_code = await self.codes.peek(code, client_id)
        if auth_code is None or (
            token_request.redirect_uri and token_request.redirect_uri != auth_code.redirect_uri
        ):
            _audit("token_rejected", client_id=client_id, reason="invalid_grant")
            raise InvalidGrant("Invalid authorization code.")

        try:
            issued = self.tokens.issue(client_id)
        except TokenSigningError:
            logger.exception("token: signing failed for %s", client_id)
            raise ServerError("Failed to issue access token.")

        # Only the request that actually removes the code gets to keep its token.
        if await self.codes.redeem(code, client_id) is None:
            _audit("token_rejected", client_id=client_id, reason="code_already_redeemed")
            raise InvalidGrant("Invalid authorization code.")

        _audit("token_issued", client_id=client_id, jti=issued.jti, expires_in=issued.expires_in)
        return JSONResponse(issued.as_response(), headers=NO_STORE)

    # --- /register ---

    async def handle_register_form(self, request: Request) -> Response:
        return HTMLResponse(_register_page(gated=bool(self.registration_secret)))

    async def handle_register(self, request: Request) -> Response:
        """Register a client from JSON (API) or a submitted HTML form (browser)."""
        from_form = not request.headers.get("content-type", "").startswith("application/json")
        params = await _read_params(request)
        if self.registration_secret and not self._registration_authorized(request, params):
            _audit("register_rejected", reason="bad_secret")
            raise Unauthorized("Valid registration secret required.")

        try:
            registration = RegistrationRequest.model_validate(params)
        except ValidationError:
            raise InvalidRequest("name and redirect_uri are required.")
        if not registration.name.strip():
            raise InvalidRequest("name must not be empty.")
        if not _valid_redirect_scheme(registration.redirect_uri):
            raise InvalidRequest(f"Invalid redirect_uri: {registration.redirect_uri}")

        try:
            client = await self.registry.create(
                name=registration.name,
                redirect_uri=registration.redirect_uri,
                website=registration.website,
                logo=registration.logo,
            )
        except DuplicateClientError as e:
            raise ClientExists(str(e))
        except StorageError:
            logger.exception("register: failed to store client %s", registration.name)
            raise ServerError("Failed to register client.")

        _audit("client_registered", client_id=client.client_id, client_name=client.name)
        if from_form:
            return HTMLResponse(_registered_page(client), status_code=201)
        return JSONResponse({
            "client_id": client.client_id,
            "name": client.name,
            "redirect_uri": client.redirect_uri,
            "website": client.website,
            "logo": client.logo,
        }, status_code=201)

    def _registration_authorized(self, request: Request, params: dict[str, Any]) -> bool:
        # API callers send a Bearer header, the HTML form a registration_secret field.
        expected = self.registration_secret.encode()
        auth = request.headers.get("authorization", "")
        if auth.startswith("Bearer ") and hmac.compare_digest(auth[len("Bearer "):].encode(), expected):
            return True
        supplied = params.get("registration_secret")
        return isinstance(supplied, str) and hmac.compare_digest(supplied.encode(), expected)

    # --- /.well-known/oauth-authorization-server ---

    async def handle_metadata(self, request: Request) -> Response:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        return JSONResponse({
            "issuer": self.issuer_url,
            "authorization_endpoint": f"{self.issuer_url}/oauth2/authorize",
            "token_endpoint": f"{self.issuer_url}/oauth2/token",
            "registration_endpoint": f"{self.issuer_url}/register",
            "response_types_supported": [RESPONSE_TYPE_CODE],
            "grant_types_supported": [GRANT_TYPE_AUTHORIZATION_CODE],
            "token_endpoint_auth_methods_supported": ["none"],
        })

    # --- Internal ---

    async def _validated_client(self, client_id: str, redirect_uri: str) -> Client:
        client = await self.registry.lookup(client_id)
        if client is None:
            _audit("authorize_rejected", reason="unknown_client", client_id=client_id)
            raise InvalidClient("Client not found.")
        if redirect_uri != client.redirect_uri:
            _audit("authorize_rejected", reason="redirect_mismatch", client_id=client_id)
            raise InvalidRedirectURI("Invalid redirect URI.")
        return client

    async def purge_expired(self) -> tuple[int, int]:
        codes = await self.codes.purge_expired()
        consents = await self.consents.purge_expired()
        if codes or consents:
            _audit("codes_expired", codes=codes, consent_requests=consents)
        return codes, consents


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_PAGE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #f4f5f7; color: #1f2328;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #fff; border: 1px solid #d0d7de; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%; }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; }
        .client { font-weight: 600; }
        .redirect { font-family: monospace; font-size: 0.85rem; color: #57606a;
            word-break: break-all; }
        label { display: block; margin-top: 0.75rem; font-size: 0.9rem; font-weight: 600; }
        input { width: 100%; box-sizing: border-box; padding: 0.5rem; margin-top: 0.25rem;
            border: 1px solid #d0d7de; border-radius: 6px; font-size: 0.95rem; }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        button { flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }
        .approve { background: #1f883d; color: #fff; }
        .deny { background: #eaeef2; color: #1f2328; }
"""


def _html_page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html_mod.escape(title)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_PAGE_STYLE}    </style>
</head>
<body>
    <div class="card">
{body}
    </div>
</body>
</html>"""


def _consent_page(client_name: str, client_id: str, redirect_uri: str,
                  state: str, scope: str, request_id: str) -> str:
    safe_name = html_mod.escape(client_name)
    safe_scope = html_mod.escape(scope) if scope else "basic access"
    hidden = "\n".join(
        f'            <input type="hidden" name="{name}" value="{html_mod.escape(value, quote=True)}">'
        for name, value in (
            ("client_id", client_id),
            ("redirect_uri", redirect_uri),
            ("state", state),
            ("request_id", request_id),
        )
    )
    return _html_page(f"Authorize {client_name}", f"""        <h1>Authorize access</h1>
        <p><span class="client">{safe_name}</span> is requesting {safe_scope}.</p>
        <p class="redirect">You will be returned to {html_mod.escape(redirect_uri)}</p>
        <form method="GET" action="/oauth2/consent">
{hidden}
            <div class="buttons">
                <button type="submit" name="approved" value="false" class="deny">Deny</button>
                <button type="submit" name="approved" value="true" class="approve">Approve</button>
            </div>
        </form>""")


def _register_page(gated: bool) -> str:
    fields = [
        ("name", "Application name", "text", True),
        ("redirect_uri", "Redirect URI", "url", True),
        ("website", "Website", "url", False),
        ("logo", "Logo URL", "url", False),
    ]
    if gated:
        fields.append(("registration_secret", "Registration secret", "password", True))
    inputs = "\n".join(
        f'            <label for="{name}">{label}</label>\n'
        f'            <input id="{name}" name="{name}" type="{kind}"{" required" if required else ""}>'
        for name, label, kind, required in fields
    )
    return _html_page("Register an application", f"""        <h1>Register an application</h1>
        <p>Redirect URIs must use https, or http on localhost.</p>
        <form method="POST" action="/register">
{inputs}
            <div class="buttons">
                <button type="submit" class="approve">Register</button>
            </div>
        </form>""")


def _registered_page(client: Client) -> str:
    return _html_page("Application registered", f"""        <h1>Application registered</h1>
        <p><span class="client">{html_mod.escape(client.name)}</span> can now request authorization.</p>
        <p>Client ID</p>
        <p class="redirect" id="client_id">{html_mod.escape(client.client_id)}</p>
        <p>Redirect URI</p>
        <p class="redirect">{html_mod.escape(client.redirect_uri)}</p>""")
