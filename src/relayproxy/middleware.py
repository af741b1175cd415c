"""ASGI middleware - request-target normalisation and the credential gate.

Both are raw ASGI rather than BaseHTTPMiddleware so response bodies keep
streaming untouched.
"""

import logging
from urllib.parse import parse_qsl

import logfire
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from . import auth
from .config import Settings
from .errors import AuthFailure

logger = logging.getLogger(__name__)


class AbsoluteFormMiddleware:
    """Make forward-proxy request targets routable.

    A forward-proxy client sends ``GET http://example.com/x HTTP/1.1``, which
    reaches us as the path ``http://example.com/x``. Routing needs a leading
    slash, so we add one; the resolver strips it again.

    A CONNECT that made it this far arrived on a connection the front door
    had already handed over to the app, so it is refused here.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope.get("method") == "CONNECT":
            response = JSONResponse(
                {"error": "CONNECT must be the first request on a connection"},
                status_code=405,
            )
            await response(scope, receive, send)
            return

        path = scope.get("path", "")
        if not path.startswith("/"):
            scope = dict(scope)
            scope["path"] = "/" + path
            raw_path = scope.get("raw_path")
            if raw_path is not None:
                scope["raw_path"] = b"/" + raw_path
            logger.debug(f"Absolute-form request target: {path}")

        await self.app(scope, receive, send)


class AuthGate:
    """Shared-secret check in front of everything except ``GET /`` and ``GET /health``."""

    def __init__(self, app: ASGIApp, settings: Settings):
        self.app = app
        self.settings = settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if (
            scope["type"] != "http"
            or not self.settings.auth_enabled
            or (scope.get("path") in auth.EXEMPT_PATHS and scope.get("method") in auth.EXEMPT_METHODS)
        ):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        query = parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True)
        try:
            auth.check(self.settings.secret, auth.extract_credentials(headers, query))
        except AuthFailure as e:
            logfire.warning(
                "[AUTH] {method} {path} rejected: {error}",
                method=scope.get("method"),
                path=scope.get("path"),
                error=e.message,
            )
            response = JSONResponse(e.to_json(), status_code=e.status_code)
            if e.status_code == 401:
                response.headers["WWW-Authenticate"] = 'Basic realm="relay-proxy"'
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
