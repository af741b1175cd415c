"""Errors raised by the proxy.

Every `ProxyError` knows the status code it maps to. The app turns them
into ``{"error": ...}`` JSON bodies in one place; the tunnel writes a bare
status line instead since no HTTP response object exists there.
"""


class ConfigError(ValueError):
    """Bad environment configuration. Raised at startup only."""


class ProxyError(Exception):
    status_code = 500
    default_message = "Proxy error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_json(self) -> dict:
        return {"error": self.message}


class MissingTarget(ProxyError):
    status_code = 400
    default_message = (
        "Missing target URL. Use X-Target-URL header, ?url= query, "
        "or /proxy/https://..."
    )


class InvalidTarget(ProxyError):
    status_code = 400

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"Invalid target URL: {target}")


class PayloadTooLarge(ProxyError):
    status_code = 413

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Request body exceeds {limit} bytes")


class AuthFailure(ProxyError):
    status_code = 403
    default_message = "Forbidden: invalid API key"


class MissingCredentials(AuthFailure):
    status_code = 401
    default_message = "Unauthorized: credentials required"


class UpstreamConnectError(ProxyError):
    status_code = 502

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Proxy error: {detail}")


class UpstreamTimeout(ProxyError):
    status_code = 504
    default_message = "Proxy timeout"


class TunnelConnectError(ProxyError):
    status_code = 502

    def __init__(self, authority: str, detail: str):
        self.authority = authority
        super().__init__(f"CONNECT {authority} failed: {detail}")

    def status_line(self) -> bytes:
        return b"HTTP/1.1 502 Bad Gateway\r\n\r\n"
