"""relay-proxy - FastAPI application.

Info and health endpoints, plus one catch-all route that resolves a target
and forwards to it.
"""

import time
from contextlib import asynccontextmanager

import httpx
import logfire
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings
from .errors import ProxyError
from .middleware import AbsoluteFormMiddleware, AuthGate
from .proxy import Forwarder
from .request import InboundRequest
from .resolver import TargetResolver

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

CORS_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "X-Target-URL",
    "X-API-Key",
    "X-Proxy-Password",
]

router = APIRouter()


@router.api_route("/health", methods=["GET", "HEAD"])
async def health(request: Request):
    """Health check endpoint."""
    return {"status": "ok", "uptime": time.monotonic() - request.app.state.started}


@router.api_route("/", methods=["GET", "HEAD"])
async def info(request: Request):
    """What this proxy is and how to drive it."""
    settings: Settings = request.app.state.settings
    prefix = settings.relay_prefix
    return {
        "service": "relay-proxy",
        "version": __version__,
        "usage": {
            "method1_header": {
                "description": "Pass target URL via X-Target-URL header",
                "example": f'curl -H "X-Target-URL: https://api.example.com/data" http://PROXY{prefix}',
            },
            "method2_query": {
                "description": "Pass target URL via ?url= query parameter",
                "example": f'curl "http://PROXY{prefix}?url=https://api.example.com/data"',
            },
            "method3_path": {
                "description": f"Pass target URL as path after {prefix}/",
                "example": f'curl "http://PROXY{prefix}/https://api.example.com/data"',
            },
            "method4_forward_proxy": {
                "description": "Use as a regular HTTP proxy (absolute-form request lines)",
                "example": 'curl -x http://PROXY http://api.example.com/data',
            },
            "method5_connect": {
                "description": "HTTPS through CONNECT tunnelling",
                "example": 'curl -x http://PROXY https://api.example.com/data',
            },
            "providers": {
                "description": "Swap a provider's base URL for ours",
                "routes": settings.providers.as_dict(),
            },
        },
        "health": "/health",
        "auth": "required" if settings.auth_enabled else "open",
    }


@router.api_route("/{path:path}", methods=FORWARDED_METHODS)
async def relay(request: Request, path: str):
    """Resolve the target and forward the request to it."""
    resolver: TargetResolver = request.app.state.resolver
    forwarder: Forwarder = request.app.state.forwarder
    target = resolver.resolve(InboundRequest.from_request(request))
    return await forwarder.forward(request, target)


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code < 500:
        logfire.warning(
            "{method} {path} rejected: {error}",
            method=request.method,
            path=request.url.path,
            error=exc.message,
        )
    return JSONResponse(exc.to_json(), status_code=exc.status_code)


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Runtime configuration, read from the environment if omitted
        transport: Outbound httpx transport override (tests use MockTransport)
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logfire.info("relay-proxy is starting up...")
        app.state.forwarder = Forwarder(settings, transport)
        yield
        logfire.info("relay-proxy is shutting down...")
        await app.state.forwarder.close()

    app = FastAPI(
        title="relay-proxy",
        description="HTTP relay, forward proxy and API provider gateway.",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.resolver = TargetResolver.from_settings(settings)
    app.state.started = time.monotonic()

    # Instrument FastAPI
    logfire.instrument_fastapi(app)

    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.include_router(router)

    # Added innermost first: CORS sees everything, the gate sees normalised paths
    app.add_middleware(AuthGate, settings=settings)
    app.add_middleware(AbsoluteFormMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in settings.allowed_origins else list(settings.allowed_origins),
        allow_methods=FORWARDED_METHODS,
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=["Content-Length", "Content-Type"],
    )

    return app
