"""Target resolution - decides where each request goes.

Three deployment styles live side by side: explicit relay (header, query
or path under ``/proxy``), forward proxy (absolute-form request lines) and
provider gateway (``/openai/...``). They are one ordered list of rules;
the first rule with a candidate wins.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Iterable

import httpx

from .config import Settings
from .errors import InvalidTarget, MissingTarget
from .protocol import ResolutionRule
from .request import CONTROL_QUERY_KEYS, InboundRequest
from .rules import (
    ABSOLUTE_URL,
    AbsoluteFormRule,
    HeaderBaseRule,
    HeaderRule,
    PathRule,
    ProviderRule,
    QueryRule,
)

logger = logging.getLogger(__name__)

HOSTNAME = re.compile(r"^[a-z0-9_]([a-z0-9_-]*[a-z0-9_])?(\.[a-z0-9_]([a-z0-9_-]*[a-z0-9_])?)*\.?$", re.IGNORECASE)


@dataclass(frozen=True)
class ResolvedTarget:
    """An absolute http(s) URL, fixed for the lifetime of one request."""

    url: httpx.URL
    rule: str

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def port(self) -> int:
        return self.url.port or (443 if self.url.scheme == "https" else 80)

    @property
    def host_header(self) -> str:
        """``host[:port]`` as the upstream expects it in ``Host``."""
        return self.url.netloc.decode("ascii")

    def __str__(self) -> str:
        return str(self.url)


def _valid_host(url: httpx.URL) -> bool:
    host = url.raw_host.decode("ascii", errors="replace")
    if not host:
        return False
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return bool(HOSTNAME.match(host))


def parse_target(candidate: str) -> httpx.URL:
    """Coerce a scheme onto `candidate` and parse it.

    Raises:
        InvalidTarget: if the result is not a usable http(s) URL
    """
    target = candidate.strip()
    if not ABSOLUTE_URL.match(target):
        target = "https://" + target
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL:
        raise InvalidTarget(target) from None
    if url.scheme not in ("http", "https") or not _valid_host(url):
        raise InvalidTarget(target)
    return url


def merge_query(url: httpx.URL, query: Iterable[tuple[str, str]]) -> httpx.URL:
    """Merge the caller's query into `url`, minus the proxy's own keys.

    Caller values replace target params of the same name.
    """
    extra = [(k, v) for k, v in query if k not in CONTROL_QUERY_KEYS]
    if not extra:
        return url
    params = url.params
    for key in dict.fromkeys(k for k, _ in extra):
        params = params.remove(key)
    for key, value in extra:
        params = params.add(key, value)
    return url.copy_with(params=params)


class TargetResolver:
    """Chain of responsibility over `ResolutionRule`s."""

    def __init__(self, rules: Iterable[ResolutionRule]):
        self.rules = tuple(rules)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TargetResolver":
        prefix = settings.relay_prefix
        return cls(
            [
                HeaderRule(prefix),
                QueryRule(prefix),
                PathRule(prefix),
                AbsoluteFormRule(),
                ProviderRule(settings.providers),
                HeaderBaseRule(),
            ]
        )

    def resolve(self, request: InboundRequest) -> ResolvedTarget:
        """Find the target for `request`.

        Raises:
            MissingTarget: no rule produced a candidate
            InvalidTarget: the winning candidate is not a valid URL
        """
        for rule in self.rules:
            candidate = rule.candidate(request)
            if not candidate:
                continue
            logger.debug(f"Target selected via {rule.name}: {candidate}")
            url = parse_target(candidate)
            if rule.merge_query:
                url = merge_query(url, request.query)
            return ResolvedTarget(url=url, rule=rule.name)
        raise MissingTarget()
