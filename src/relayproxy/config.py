"""Process-wide configuration, read once from the environment at startup."""

import os
from dataclasses import dataclass, field
from typing import Mapping

from .errors import ConfigError
from .providers import DEFAULT_PROVIDERS, ProviderTable

DEFAULT_PORT = 10000
DEFAULT_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_MAX_BODY_BYTES = 50 * 1024 * 1024
DEFAULT_TUNNEL_IDLE_TIMEOUT = 60.0


def _number(environ: Mapping[str, str], name: str, default, cast=float):
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _origins(raw: str) -> tuple[str, ...]:
    origins = tuple(o.strip() for o in raw.split(",") if o.strip())
    return origins or ("*",)


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration.

    Built once by `from_env` and handed to the app, the forwarder and the
    tunnel handler. Nothing in the package reads the environment after that.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    allowed_origins: tuple[str, ...] = ("*",)
    secret: str = ""
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    tunnel_idle_timeout: float = DEFAULT_TUNNEL_IDLE_TIMEOUT
    relay_prefix: str = "/proxy"
    providers: ProviderTable = field(default_factory=lambda: DEFAULT_PROVIDERS)
    send_to_logfire: str = "if-token-present"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.secret)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables (``os.environ`` by default)."""
        env = os.environ if environ is None else environ

        relay_prefix = "/" + env.get("RELAY_PREFIX", "/proxy").strip().strip("/")
        if relay_prefix == "/":
            raise ConfigError("RELAY_PREFIX must not be empty")

        providers = DEFAULT_PROVIDERS
        extra = env.get("PROVIDER_ROUTES", "").strip()
        if extra:
            providers = providers.extended(ProviderTable.parse(extra))

        send = env.get("LOGFIRE_SEND", "if-token-present").strip().lower()
        if send not in ("true", "false", "if-token-present"):
            raise ConfigError(f"LOGFIRE_SEND must be true, false or if-token-present, got {send!r}")

        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=_number(env, "PORT", DEFAULT_PORT, int),
            allowed_origins=_origins(env.get("ALLOWED_ORIGINS", "*")),
            # API_KEY came first; PROXY_PASSWORD is the gateway-era name for the same secret
            secret=env.get("API_KEY") or env.get("PROXY_PASSWORD") or "",
            timeout=_number(env, "PROXY_TIMEOUT", DEFAULT_TIMEOUT),
            connect_timeout=_number(env, "PROXY_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT),
            max_body_bytes=_number(env, "MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES, int),
            tunnel_idle_timeout=_number(env, "TUNNEL_IDLE_TIMEOUT", DEFAULT_TUNNEL_IDLE_TIMEOUT),
            relay_prefix=relay_prefix,
            providers=providers,
            send_to_logfire=send,
        )

    @property
    def logfire_send(self) -> bool | str:
        """Value for ``logfire.configure(send_to_logfire=...)``."""
        if self.send_to_logfire == "true":
            return True
        if self.send_to_logfire == "false":
            return False
        return "if-token-present"
