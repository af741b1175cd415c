"""Logging setup. Logfire carries both our own lines and stdlib logging."""

import logging

import logfire

from .config import Settings

# Suppress harmless OTel context warnings before they're configured
logging.getLogger("opentelemetry.context").setLevel(logging.CRITICAL)


def configure(settings: Settings, level: int = logging.INFO) -> None:
    """Configure logfire and route stdlib logging through it."""
    # Scrubbing disabled - it redacts "auth", "password", "key" from every line,
    # which is most of what a proxy logs about. Secrets are never logged as values.
    logfire.configure(
        service_name="relay-proxy",
        send_to_logfire=settings.logfire_send,
        scrubbing=False,
    )
    logfire.instrument_httpx()
    logging.basicConfig(level=level, handlers=[logfire.LogfireLoggingHandler()], force=True)
