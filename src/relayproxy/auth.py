"""The optional shared-secret gate.

Open when no secret is configured. When one is, a caller may present it as
``X-API-Key``, ``X-Proxy-Password``, ``?apikey=``, ``?password=``, the
password of HTTP Basic credentials, or a Bearer token.
"""

import secrets
from typing import Iterable, Iterator, Mapping

from .errors import AuthFailure, MissingCredentials
from .headers import authorization_secret

EXEMPT_PATHS = frozenset({"/", "/health"})
# Other methods on these paths reach the relay route
EXEMPT_METHODS = frozenset({"GET", "HEAD"})

CREDENTIAL_HEADERS = ("x-api-key", "x-proxy-password")
CREDENTIAL_PARAMS = ("apikey", "password")


def extract_credentials(
    headers: Mapping[str, str],
    query: Iterable[tuple[str, str]] = (),
    authorization_headers: Iterable[str] = ("authorization",),
) -> Iterator[str]:
    """Yield every secret the caller offered, in no particular trust order."""
    for name in CREDENTIAL_HEADERS:
        value = headers.get(name)
        if value:
            yield value.strip()
    for key, value in query:
        if key in CREDENTIAL_PARAMS and value:
            yield value
    for name in authorization_headers:
        secret = authorization_secret(headers.get(name))
        if secret:
            yield secret


def matches(offered: str, secret: str) -> bool:
    return secrets.compare_digest(offered.encode("utf-8"), secret.encode("utf-8"))


def check(secret: str, offered: Iterable[str]) -> None:
    """Raise `AuthFailure` unless one of `offered` is exactly `secret`.

    401 when nothing was offered, 403 when something wrong was.
    """
    if not secret:
        return
    offered = list(offered)
    if not offered:
        raise MissingCredentials()
    if not any(matches(candidate, secret) for candidate in offered):
        raise AuthFailure()
