"""relay-proxy - HTTP relay, forward proxy and API provider gateway."""

__version__ = "1.0.0"
