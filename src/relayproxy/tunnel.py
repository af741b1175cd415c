"""CONNECT tunnelling - raw TCP splicing below the HTTP layer.

The tunnel never looks at the bytes it carries. It connects, says
``200 Connection Established`` and copies in both directions until one
side goes away.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum

import logfire

from .config import Settings
from .errors import TunnelConnectError

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\nProxy-Agent: relay-proxy\r\n\r\n"
CHUNK_SIZE = 64 * 1024
DEFAULT_CONNECT_PORT = 443


class TunnelState(Enum):
    START = "start"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class TunnelSession:
    """One tunnel: where it goes, where it is in its life, what it carried."""

    authority: str
    host: str
    port: int
    state: TunnelState = TunnelState.START
    bytes_up: int = 0
    bytes_down: int = 0
    started: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    close_reason: str = ""

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started


def parse_authority(authority: str) -> tuple[str, int]:
    """Split ``host[:port]``; the port falls back to 443 if missing or junk.

    Bracketed IPv6 (``[::1]:8443``) is understood.
    """
    authority = authority.strip()
    if authority.startswith("["):
        host, _, rest = authority[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif authority.count(":") == 1:
        host, _, port_text = authority.partition(":")
    else:
        host, port_text = authority, ""

    port = DEFAULT_CONNECT_PORT
    if port_text.isdigit() and 0 < int(port_text) < 65536:
        port = int(port_text)
    return host, port


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


async def _read(reader: asyncio.StreamReader, session: TunnelSession, idle_timeout: float | None) -> bytes:
    if idle_timeout is None:
        return await reader.read(CHUNK_SIZE)
    while True:
        try:
            return await asyncio.wait_for(reader.read(CHUNK_SIZE), timeout=idle_timeout)
        except TimeoutError:
            # Traffic the other way counts as activity too
            if time.monotonic() - session.last_activity >= idle_timeout:
                raise


async def _pipe(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    session: TunnelSession,
    upstream: bool,
    idle_timeout: float | None = None,
) -> None:
    while True:
        data = await _read(reader, session, idle_timeout)
        if not data:
            return
        writer.write(data)
        # drain() is where backpressure from a slow peer stops us reading ahead
        await writer.drain()
        session.touch()
        if upstream:
            session.bytes_up += len(data)
        else:
            session.bytes_down += len(data)


async def splice(
    session: TunnelSession,
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    target_reader: asyncio.StreamReader,
    target_writer: asyncio.StreamWriter,
    idle_timeout: float | None = None,
) -> None:
    """Copy bytes both ways until either side closes, errors or idles out.

    Whatever ends one direction ends the other; both writers are closed on
    the way out. `idle_timeout` applies to reads from the target side.
    """
    up = asyncio.ensure_future(_pipe(client_reader, target_writer, session, upstream=True))
    down = asyncio.ensure_future(
        _pipe(target_reader, client_writer, session, upstream=False, idle_timeout=idle_timeout)
    )
    try:
        done, _ = await asyncio.wait({up, down}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if isinstance(error, TimeoutError):
                session.close_reason = "idle timeout"
            elif error is not None:
                session.close_reason = f"{type(error).__name__}: {error}"
            else:
                session.close_reason = "client closed" if task is up else "target closed"
    finally:
        for task in (up, down):
            task.cancel()
        await asyncio.gather(up, down, return_exceptions=True)
        await close_writer(target_writer)
        await close_writer(client_writer)
        session.state = TunnelState.TERMINATED


class TunnelHandler:
    """Handles CONNECT requests on an already-open client stream."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def _connect(self, session: TunnelSession) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if not session.host:
            raise TunnelConnectError(session.authority, "no host in CONNECT target")
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(session.host, session.port),
                timeout=self.settings.connect_timeout,
            )
        except TimeoutError:
            raise TunnelConnectError(session.authority, "connect timed out") from None
        except OSError as e:
            raise TunnelConnectError(session.authority, str(e) or type(e).__name__) from e

    async def handle(
        self,
        authority: str,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        head: bytes = b"",
    ) -> TunnelSession:
        """Run one tunnel to completion.

        Args:
            authority: The CONNECT target, ``host[:port]``
            client_reader: Caller's stream, positioned after the CONNECT head
            client_writer: Caller's stream; closed when the tunnel ends
            head: Bytes already read past the CONNECT head, sent first

        Returns:
            The finished session (FAILED or TERMINATED)
        """
        host, port = parse_authority(authority)
        session = TunnelSession(authority=authority, host=host, port=port)
        session.state = TunnelState.CONNECTING
        logfire.info("[CONNECT] {authority}", authority=authority)

        try:
            target_reader, target_writer = await self._connect(session)
        except TunnelConnectError as e:
            session.state = TunnelState.FAILED
            session.close_reason = e.message
            logfire.error("[CONNECT ERROR] {error}", error=e.message, authority=authority)
            with contextlib.suppress(OSError):
                client_writer.write(e.status_line())
                await client_writer.drain()
            await close_writer(client_writer)
            return session

        session.state = TunnelState.ESTABLISHED
        try:
            client_writer.write(CONNECTION_ESTABLISHED)
            await client_writer.drain()
            if head:
                target_writer.write(head)
                await target_writer.drain()
                session.bytes_up += len(head)
        except OSError as e:
            session.close_reason = f"{type(e).__name__}: {e}"
            await close_writer(target_writer)
            await close_writer(client_writer)
            session.state = TunnelState.TERMINATED
        else:
            await splice(
                session,
                client_reader,
                client_writer,
                target_reader,
                target_writer,
                idle_timeout=self.settings.tunnel_idle_timeout,
            )

        logfire.info(
            "[CONNECT] {authority} closed ({reason}) after {duration}s",
            authority=authority,
            reason=session.close_reason,
            duration=round(session.duration, 1),
            bytes_up=session.bytes_up,
            bytes_down=session.bytes_down,
        )
        return session
