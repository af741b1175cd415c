"""Provider route table - fixed path prefixes mapped to known API origins.

Lets a caller swap a vendor's base URL for ours: ``/openai/v1/models`` goes
to ``https://api.openai.com/v1/models``.
"""

from dataclasses import dataclass

from .errors import ConfigError


@dataclass(frozen=True)
class ProviderRoute:
    prefix: str
    origin: str

    def matches(self, path: str) -> bool:
        # Segment boundary: /openai and /openai/... but never /openaix
        return path == self.prefix or path.startswith(self.prefix + "/")


class ProviderTable:
    """Immutable, ordered set of provider routes."""

    def __init__(self, routes: tuple[ProviderRoute, ...] | list[ProviderRoute] = ()):
        by_prefix: dict[str, ProviderRoute] = {}
        for route in routes:
            by_prefix[route.prefix] = route
        self._routes = tuple(by_prefix.values())

    def __iter__(self):
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def __eq__(self, other) -> bool:
        return isinstance(other, ProviderTable) and self._routes == other._routes

    def __hash__(self) -> int:
        return hash(self._routes)

    def __repr__(self) -> str:
        return f"ProviderTable({list(self._routes)!r})"

    def match(self, path: str) -> tuple[ProviderRoute, str] | None:
        """Find the longest prefix matching `path`.

        Returns the route and the remainder of the path (``""`` or starting
        with ``/``), or None.
        """
        best = None
        for route in self._routes:
            if route.matches(path) and (best is None or len(route.prefix) > len(best.prefix)):
                best = route
        if best is None:
            return None
        return best, path[len(best.prefix):]

    def extended(self, other: "ProviderTable") -> "ProviderTable":
        """A new table with `other`'s routes added, overriding same prefixes."""
        return ProviderTable(list(self._routes) + list(other))

    def as_dict(self) -> dict[str, str]:
        return {route.prefix: route.origin for route in self._routes}

    @classmethod
    def parse(cls, raw: str) -> "ProviderTable":
        """Parse ``/prefix=https://origin,/other=https://...``."""
        routes = []
        for entry in raw.split(","):
            entry = entry.strip()
            if not entry:
                continue
            prefix, sep, origin = entry.partition("=")
            prefix = "/" + prefix.strip().strip("/")
            origin = origin.strip().rstrip("/")
            if not sep or prefix == "/" or not origin.lower().startswith(("http://", "https://")):
                raise ConfigError(f"Bad provider route {entry!r}, expected /prefix=https://origin")
            routes.append(ProviderRoute(prefix, origin))
        return cls(routes)


DEFAULT_PROVIDERS = ProviderTable(
    [
        ProviderRoute("/openai", "https://api.openai.com"),
        ProviderRoute("/openrouter", "https://openrouter.ai/api"),
        ProviderRoute("/perplexity", "https://api.perplexity.ai"),
        ProviderRoute("/anthropic", "https://api.anthropic.com"),
        ProviderRoute("/gemini", "https://generativelanguage.googleapis.com"),
    ]
)
