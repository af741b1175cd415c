"""Header filtering for both legs of a forwarded request."""

import base64
import binascii

import httpx

from .resolver import ResolvedTarget

# Meaningful for one transport leg only (RFC 9110 section 7.6.1)
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "upgrade",
    "transfer-encoding",
})

# Headers that steer this proxy and never travel upstream
CONTROL_HEADERS = frozenset({"x-target-url", "x-api-key", "x-proxy-password"})

SKIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | CONTROL_HEADERS | {"host"}


def authorization_secret(value: str | None) -> str | None:
    """The secret carried by an ``Authorization`` header, if any.

    Bearer gives the token, Basic gives the password field.
    """
    if not value:
        return None
    scheme, _, credentials = value.strip().partition(" ")
    credentials = credentials.strip()
    if scheme.lower() == "bearer":
        return credentials or None
    if scheme.lower() == "basic":
        try:
            decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        _, sep, password = decoded.partition(":")
        return password if sep else None
    return None


def outbound_headers(headers: httpx.Headers, target: ResolvedTarget, secret: str = "") -> httpx.Headers:
    """Filter inbound headers for the upstream leg and point ``Host`` at the target.

    ``Authorization`` is only dropped when it carries our own secret, so a
    provider API key sent through the gateway still reaches the provider.
    """
    listed = {
        token.strip().lower()
        for value in headers.get_list("connection")
        for token in value.split(",")
        if token.strip()
    }
    skip = SKIP_REQUEST_HEADERS | listed

    kept = []
    for name, value in headers.multi_items():
        lower = name.lower()
        if lower in skip:
            continue
        if lower == "authorization" and secret and authorization_secret(value) == secret:
            continue
        kept.append((name, value))
    result = httpx.Headers(kept)
    result["host"] = target.host_header
    return result


def response_headers(raw: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Upstream response headers, verbatim except ``Transfer-Encoding``.

    The downstream leg negotiates its own chunking.
    """
    return [(name, value) for name, value in raw if name.lower() != b"transfer-encoding"]
