"""The inbound request as seen by the resolver and the forwarder."""

from dataclasses import dataclass, field
from typing import Mapping
from urllib.parse import parse_qsl, quote, unquote

import httpx
from starlette.requests import Request

# Query keys that steer the proxy itself and must never reach an upstream
TARGET_QUERY_KEY = "url"
CREDENTIAL_QUERY_KEYS = frozenset({"apikey", "password"})
CONTROL_QUERY_KEYS = frozenset({TARGET_QUERY_KEY}) | CREDENTIAL_QUERY_KEYS


@dataclass(frozen=True)
class InboundRequest:
    """Method, path, query and headers of one inbound request.

    `path` is percent-decoded. `raw_path` and `raw_query` are kept as they
    arrived so rewrite rules can pass them upstream byte-for-byte; an
    encoded `%2F` or `%23` must not turn into a real `/` or `#`.
    """

    method: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    raw_query: str = ""
    raw_path: str = ""
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    authority: str | None = None

    @classmethod
    def build(
        cls,
        method: str,
        target: str,
        headers: Mapping[str, str] | list[tuple[str, str]] | None = None,
    ) -> "InboundRequest":
        """Build from a request-target such as ``/proxy?url=...``."""
        method = method.upper()
        if method == "CONNECT":
            return cls(method=method, path="", headers=httpx.Headers(headers or {}), authority=target)
        raw_path, _, raw_query = target.partition("?")
        return cls(
            method=method,
            path=unquote(raw_path),
            query=tuple(parse_qsl(raw_query, keep_blank_values=True)),
            raw_query=raw_query,
            raw_path=raw_path,
            headers=httpx.Headers(headers or {}),
        )

    @classmethod
    def from_request(cls, request: Request) -> "InboundRequest":
        return cls(
            method=request.method,
            path=request.scope["path"],
            query=tuple(request.query_params.multi_items()),
            raw_query=request.scope.get("query_string", b"").decode("latin-1"),
            raw_path=(request.scope.get("raw_path") or b"").decode("latin-1").partition("?")[0],
            headers=httpx.Headers(request.headers.raw),
        )

    @property
    def encoded_path(self) -> str:
        """The path as the caller encoded it."""
        return self.raw_path or quote(self.path, safe="/:@!$&'()*+,;=")

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        return value.strip() if value and value.strip() else None

    def first_param(self, key: str) -> str | None:
        for k, v in self.query:
            if k == key and v.strip():
                return v.strip()
        return None

    def query_without(self, keys: frozenset[str]) -> str:
        """The raw query string with `keys` removed, other pairs untouched."""
        kept = [
            pair for pair in self.raw_query.split("&")
            if pair and unquote(pair.partition("=")[0].replace("+", " ")) not in keys
        ]
        return "&".join(kept)
