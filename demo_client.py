#!/usr/bin/env python3
"""
demo_client.py — relying-party app that walks through the code grant.

  /          login link
  /login     → auth server /oauth2/authorize with a fresh state
  /callback  ← code (or error) from the auth server; exchanges the code
               at /oauth2/token and shows the token response

Register the client first (the form at /register on the auth server, or a
JSON POST to it) and export DEMO_CLIENT_ID.
"""

import argparse
import html as html_mod
import logging
import os
import secrets
import time
from urllib.parse import urlencode

import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response
from starlette.routing import Route

logger = logging.getLogger("codegrant-demo")

STATE_TTL = 600  # 10 minutes


class DemoClient:
    def __init__(self, client_id: str, redirect_uri: str, auth_server: str,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.auth_server = auth_server.rstrip("/")
        self.transport = transport
        self.states: dict[str, float] = {}

    async def home(self, request: Request) -> Response:
        if not self.client_id:
            register = html_mod.escape(f"{self.auth_server}/register", quote=True)
            return HTMLResponse(_page(
                "Not configured",
                f'Register this app at <a href="{register}">{register}</a> '
                "and set DEMO_CLIENT_ID.",
            ))
        return HTMLResponse(_page("Demo client", '<a href="/login">Log in with codegrant</a>'))

    async def login(self, request: Request) -> Response:
        now = time.time()
        self.states = {s: ts for s, ts in self.states.items() if now - ts < STATE_TTL}
        state = secrets.token_urlsafe(16)
        self.states[state] = now
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
        })
        return RedirectResponse(f"{self.auth_server}/oauth2/authorize?{query}", status_code=302)

    async def callback(self, request: Request) -> Response:
        params = request.query_params
        issued = self.states.pop(params.get("state", ""), None)
        if issued is None or time.time() - issued > STATE_TTL:
            return HTMLResponse(_page("Error", "Unknown or expired state."), status_code=400)

        if params.get("error"):
            return HTMLResponse(
                _page("Access denied", f"Authorization failed: {html_mod.escape(params['error'])}"),
                status_code=403,
            )

        code = params.get("code")
        if not code:
            return HTMLResponse(_page("Error", "No code provided."), status_code=400)

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=10.0) as http:
                resp = await http.post(f"{self.auth_server}/oauth2/token", json={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                    "client_id": self.client_id,
                })
        except httpx.HTTPError as e:
            logger.error("token exchange failed: %s", e)
            return HTMLResponse(_page("Error", "Error exchanging code for token."), status_code=502)

        if resp.status_code != 200:
            logger.error("token endpoint returned %d: %s", resp.status_code, resp.text[:200])
            return HTMLResponse(_page("Error", "Error response from token endpoint."), status_code=502)

        try:
            token = resp.json()
        except ValueError:
            return HTMLResponse(_page("Error", "Error parsing token response."), status_code=502)

        return HTMLResponse(_page("Access token", (
            f"<p>Token type: {html_mod.escape(str(token.get('token_type', '')))}</p>"
            f"<p>Expires in: {html_mod.escape(str(token.get('expires_in', '')))} seconds</p>"
            f"<pre>{html_mod.escape(str(token.get('access_token', '')))}</pre>"
        )))


def create_demo_app(client: DemoClient) -> Starlette:
    return Starlette(routes=[
        Route("/", client.home),
        Route("/login", client.login),
        Route("/callback", client.callback),
    ])


def _page(title: str, body: str) -> str:
    safe_title = html_mod.escape(title)
    return f"""<!DOCTYPE html>
<html>
<head><title>Demo client — {safe_title}</title></head>
<body style="font-family: sans-serif; max-width: 640px; margin: 3rem auto;">
    <h1>{safe_title}</h1>
    {body}
</body>
</html>"""


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="codegrant demo client")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    demo = DemoClient(
        client_id=os.environ.get("DEMO_CLIENT_ID", ""),
        redirect_uri=os.environ.get("DEMO_REDIRECT_URI", f"http://localhost:{args.port}/callback"),
        auth_server=os.environ.get("DEMO_AUTH_SERVER", "http://localhost:3000"),
    )
    logger.info("demo client: starting on %s:%d", args.host, args.port)
    uvicorn.run(create_demo_app(demo), host=args.host, port=args.port, log_level="info")
