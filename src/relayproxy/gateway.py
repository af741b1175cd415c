"""The front door - one public port for both CONNECT and plain HTTP.

ASGI servers cannot hand a raw socket to the application, so CONNECT
has to be caught before HTTP parsing. The gateway reads the head of each
new connection: CONNECT goes to the `TunnelHandler`, everything else is
spliced unchanged to uvicorn running the FastAPI app on a loopback socket.
"""

import asyncio
import contextlib
import logging
import socket

import httpx
import uvicorn

from . import auth
from .config import Settings
from .errors import AuthFailure
from .tunnel import TunnelHandler, TunnelSession, close_writer, splice

logger = logging.getLogger(__name__)

MAX_HEAD_BYTES = 64 * 1024
HEAD_TIMEOUT = 30.0

HEAD_TOO_LARGE = b"HTTP/1.1 431 Request Header Fields Too Large\r\nConnection: close\r\n\r\n"
PROXY_AUTH_REQUIRED = (
    b"HTTP/1.1 407 Proxy Authentication Required\r\n"
    b'Proxy-Authenticate: Basic realm="relay-proxy"\r\n'
    b"Connection: close\r\n\r\n"
)
APP_UNAVAILABLE = b"HTTP/1.1 502 Bad Gateway\r\nConnection: close\r\n\r\n"


def parse_head(head: bytes) -> tuple[str, str, httpx.Headers]:
    """Request method, target and headers from a raw request head."""
    lines = head.decode("latin-1").split("\r\n")
    parts = lines[0].split()
    method = parts[0].upper() if parts else ""
    target = parts[1] if len(parts) > 1 else ""
    headers = []
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers.append((name.strip(), value.strip()))
    return method, target, httpx.Headers(headers)


def bind_loopback() -> socket.socket:
    """A listening socket on 127.0.0.1 with a kernel-assigned port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    sock.listen(socket.SOMAXCONN)
    sock.setblocking(False)
    return sock


class Gateway:
    """Public listener dispatching CONNECT to the tunnel and the rest to the app."""

    def __init__(self, settings: Settings, app):
        self.settings = settings
        self.app = app
        self.tunnels = TunnelHandler(settings)
        self.app_address: tuple[str, int] | None = None

    def connect_allowed(self, headers: httpx.Headers) -> bool:
        """CONNECT honours the same secret, offered as Proxy-Authorization too."""
        try:
            auth.check(
                self.settings.secret,
                auth.extract_credentials(
                    headers,
                    authorization_headers=("proxy-authorization", "authorization"),
                ),
            )
        except AuthFailure:
            return False
        return True

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=HEAD_TIMEOUT)
        except asyncio.LimitOverrunError:
            with contextlib.suppress(OSError):
                writer.write(HEAD_TOO_LARGE)
                await writer.drain()
            await close_writer(writer)
            return
        except (asyncio.IncompleteReadError, TimeoutError, OSError):
            await close_writer(writer)
            return

        method, target, headers = parse_head(head)
        if method == "CONNECT":
            if not self.connect_allowed(headers):
                logger.warning(f"CONNECT {target} rejected: bad or missing credentials")
                with contextlib.suppress(OSError):
                    writer.write(PROXY_AUTH_REQUIRED)
                    await writer.drain()
                await close_writer(writer)
                return
            # Anything the client sent past the head is still buffered in
            # `reader`, so the splice picks it up in order.
            await self.tunnels.handle(target, reader, writer)
            return

        await self.to_app(head, reader, writer)

    async def to_app(self, head: bytes, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Hand the whole connection, head first, to the ASGI server."""
        host, port = self.app_address
        try:
            app_reader, app_writer = await asyncio.open_connection(host, port)
        except OSError as e:
            logger.error(f"Internal app unreachable at {host}:{port}: {e}")
            with contextlib.suppress(OSError):
                writer.write(APP_UNAVAILABLE)
                await writer.drain()
            await close_writer(writer)
            return

        session = TunnelSession(authority=f"{host}:{port}", host=host, port=port)
        try:
            app_writer.write(head)
            await app_writer.drain()
        except OSError:
            await close_writer(app_writer)
            await close_writer(writer)
            return
        await splice(session, reader, writer, app_reader, app_writer)

    async def serve(self):
        """Run uvicorn and the front door until uvicorn is told to stop."""
        internal = bind_loopback()
        self.app_address = internal.getsockname()[:2]

        config = uvicorn.Config(
            self.app,
            http="h11",
            lifespan="on",
            proxy_headers=False,
            server_header=False,
            log_config=None,
        )
        server = uvicorn.Server(config)

        front = await asyncio.start_server(
            self.handle_connection,
            self.settings.host,
            self.settings.port,
            limit=MAX_HEAD_BYTES,
        )
        logger.info(f"Front door on {self.settings.host}:{self.settings.port}, app on {self.app_address[0]}:{self.app_address[1]}")
        try:
            await server.serve(sockets=[internal])
        finally:
            front.close()
