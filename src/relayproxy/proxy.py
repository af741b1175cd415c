"""Request forwarding - the outbound leg of every relayed HTTP request."""

import asyncio
import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx
import logfire
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse

from .config import Settings
from .errors import PayloadTooLarge, UpstreamConnectError, UpstreamTimeout
from .headers import outbound_headers, response_headers
from .request import InboundRequest
from .resolver import ResolvedTarget

logger = logging.getLogger(__name__)

# nginx's "client closed request"; nobody is listening for it anyway
CLIENT_CLOSED_REQUEST = 499


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


async def _wait_for_disconnect(request: Request, body_done: asyncio.Event) -> None:
    # Only safe to call receive() once the body stream is finished with it
    await body_done.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class Forwarder:
    """Owns the outbound HTTP client and relays requests through it.

    One instance per application. The client is shared for connection
    pooling but keeps no cookies, so callers never see each other's state.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout, connect=settings.connect_timeout),
            follow_redirects=False,
            trust_env=False,
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=())),
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    def _check_declared_length(self, request: Request) -> None:
        declared = request.headers.get("content-length", "").strip()
        if declared.isdigit() and int(declared) > self.settings.max_body_bytes:
            raise PayloadTooLarge(self.settings.max_body_bytes)

    async def _body(self, request: Request, body_done: asyncio.Event):
        """Yield the inbound body as it arrives, enforcing the size ceiling."""
        limit = self.settings.max_body_bytes
        received = 0
        try:
            async for chunk in request.stream():
                received += len(chunk)
                if received > limit:
                    raise PayloadTooLarge(limit)
                if chunk:
                    yield chunk
        finally:
            body_done.set()

    async def _send(self, request: Request, outbound: httpx.Request, body_done: asyncio.Event) -> httpx.Response | None:
        """Send `outbound`, racing the deadline and the caller hanging up.

        Returns None if the caller disconnected first. The in-flight upstream
        call is cancelled on both timeout and disconnect.
        """
        sending = asyncio.ensure_future(self.client.send(outbound, stream=True))
        watching = asyncio.ensure_future(_wait_for_disconnect(request, body_done))
        try:
            async with asyncio.timeout(self.settings.timeout):
                await asyncio.wait({sending, watching}, return_when=asyncio.FIRST_COMPLETED)
        except TimeoutError:
            raise UpstreamTimeout() from None
        finally:
            watching.cancel()
            if not sending.done():
                sending.cancel()
                await asyncio.gather(sending, return_exceptions=True)
        if sending.cancelled():
            return None
        return sending.result()

    async def forward(self, request: Request, target: ResolvedTarget) -> Response:
        """Forward `request` to `target` and stream the answer back.

        Raises:
            PayloadTooLarge: the body is over ``max_body_bytes``
            UpstreamTimeout: no response headers within the deadline
            UpstreamConnectError: DNS, connect, TLS or protocol failure
        """
        self._check_declared_length(request)
        inbound = InboundRequest.from_request(request)
        headers = outbound_headers(inbound.headers, target, self.settings.secret)

        body_done = asyncio.Event()
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        content = self._body(request, body_done) if has_body else None
        if content is None:
            body_done.set()

        outbound = httpx.Request(request.method, target.url, headers=headers, content=content)

        logfire.info("[PROXY] {method} -> {target}", method=request.method, target=str(target.url))

        try:
            upstream = await self._send(request, outbound, body_done)
        except httpx.TimeoutException:
            raise UpstreamTimeout() from None
        except httpx.HTTPError as e:
            logfire.error("[PROXY ERROR] {error}", error=_describe(e), target=str(target.url))
            raise UpstreamConnectError(_describe(e)) from e
        except ClientDisconnect:
            upstream = None

        if upstream is None:
            logger.info(f"Caller went away before {target} answered")
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        response = StreamingResponse(
            self._relay(upstream, target),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        raw_headers = response_headers(upstream.headers.raw)
        if upstream.is_stream_consumed:
            # The transport already read and decoded the body
            raw_headers = [
                (name, value) for name, value in raw_headers
                if name.lower() not in (b"content-encoding", b"content-length")
            ]
        response.raw_headers = raw_headers
        return response

    async def _relay(self, upstream: httpx.Response, target: ResolvedTarget):
        """Yield upstream bytes as they arrive, undecoded.

        Headers are already on the wire by now, so a failure here can only be
        logged; re-raising makes the server drop the connection.
        """
        try:
            if upstream.is_stream_consumed:
                yield upstream.content
                return
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logfire.error("[PROXY ERROR] {error} after response started", error=_describe(e), target=str(target.url))
            raise
        finally:
            await upstream.aclose()
