"""Built-in resolution rules, in the order the resolver tries them."""

import re

from .providers import ProviderTable
from .request import CREDENTIAL_QUERY_KEYS, TARGET_QUERY_KEY, InboundRequest

TARGET_HEADER = "x-target-url"

ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
# Some clients and routers squash "//" in paths: /proxy/https:/example.com
COLLAPSED_SCHEME = re.compile(r"^(https?):/+", re.IGNORECASE)


def _with_query(target: str, query: str) -> str:
    return f"{target}?{query}" if query else target


class RelayRule:
    """Base for the rules that only apply on the relay prefix (``/proxy``)."""

    merge_query = True

    def __init__(self, relay_prefix: str = "/proxy"):
        self.relay_prefix = relay_prefix

    def on_relay_path(self, request: InboundRequest) -> bool:
        return request.path == self.relay_prefix or request.path.startswith(self.relay_prefix + "/")


class HeaderRule(RelayRule):
    """``X-Target-URL: https://...`` on the relay prefix. Beats everything."""

    name = "header"

    def candidate(self, request: InboundRequest) -> str | None:
        if not self.on_relay_path(request):
            return None
        return request.header(TARGET_HEADER)


class QueryRule(RelayRule):
    """``/proxy?url=https://...``"""

    name = "query"

    def candidate(self, request: InboundRequest) -> str | None:
        if not self.on_relay_path(request):
            return None
        return request.first_param(TARGET_QUERY_KEY)


class PathRule(RelayRule):
    """``/proxy/https://example.com/path`` - the URL is the rest of the path."""

    name = "path"

    def candidate(self, request: InboundRequest) -> str | None:
        prefix = self.relay_prefix + "/"
        if not request.path.startswith(prefix):
            return None
        embedded = request.path[len(prefix):].strip()
        if not embedded:
            return None
        return COLLAPSED_SCHEME.sub(lambda m: m.group(1) + "://", embedded, count=1)


class AbsoluteFormRule:
    """Forward-proxy request lines: ``GET http://example.com/x HTTP/1.1``.

    Any path that looks like an absolute URL once its leading slashes are
    dropped counts, so a relative ``/http://...`` path is forwarded too.
    The path is used as the caller encoded it.
    """

    name = "absolute"
    merge_query = False

    def candidate(self, request: InboundRequest) -> str | None:
        target = request.encoded_path.lstrip("/")
        if not ABSOLUTE_URL.match(target):
            return None
        return _with_query(target, request.query_without(CREDENTIAL_QUERY_KEYS))


class ProviderRule:
    """``/openai/v1/models`` -> ``https://api.openai.com/v1/models``."""

    name = "provider"
    merge_query = False

    def __init__(self, providers: ProviderTable):
        self.providers = providers

    def candidate(self, request: InboundRequest) -> str | None:
        match = self.providers.match(request.encoded_path)
        if match is None:
            return None
        route, remainder = match
        return _with_query(route.origin + remainder, request.query_without(CREDENTIAL_QUERY_KEYS))


class HeaderBaseRule:
    """``X-Target-URL`` off the relay prefix: header is a base, our path is appended."""

    name = "header-base"
    merge_query = False

    def candidate(self, request: InboundRequest) -> str | None:
        base = request.header(TARGET_HEADER)
        if base is None:
            return None
        return _with_query(base.rstrip("/") + request.encoded_path, request.query_without(CREDENTIAL_QUERY_KEYS))
