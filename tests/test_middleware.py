import pytest

from relayproxy.middleware import AbsoluteFormMiddleware


class Recorder:
    def __init__(self):
        self.scopes = []

    async def __call__(self, scope, receive, send):
        self.scopes.append(scope)


async def receive():
    return {"type": "http.request", "body": b"", "more_body": False}


def http_scope(method, path):
    return {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": [],
    }


@pytest.mark.asyncio
async def test_absolute_form_target_gets_a_leading_slash():
    inner = Recorder()

    await AbsoluteFormMiddleware(inner)(http_scope("GET", "http://example.test/x"), receive, None)

    assert inner.scopes[0]["path"] == "/http://example.test/x"
    assert inner.scopes[0]["raw_path"] == b"/http://example.test/x"


@pytest.mark.asyncio
async def test_origin_form_is_untouched():
    inner = Recorder()
    scope = http_scope("GET", "/proxy")

    await AbsoluteFormMiddleware(inner)(scope, receive, None)

    assert inner.scopes[0] is scope


@pytest.mark.asyncio
async def test_connect_is_refused_with_405():
    inner = Recorder()
    sent = []

    async def send(message):
        sent.append(message)

    await AbsoluteFormMiddleware(inner)(http_scope("CONNECT", "example.test:443"), receive, send)

    assert inner.scopes == []
    assert sent[0]["type"] == "http.response.start"
    assert sent[0]["status"] == 405
    assert b"CONNECT" in sent[1]["body"]
