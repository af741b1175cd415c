"""End-to-end tests through the ASGI app with a mocked upstream."""

import asyncio
import base64
import gzip

import httpx
import pytest

from conftest import Upstream


class TestInfoAndHealth:
    def test_health(self, make_client, upstream):
        client = make_client(upstream)

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["uptime"] >= 0
        assert upstream.requests == []

    def test_info_lists_usage_modes(self, make_client, upstream):
        body = make_client(upstream).get("/").json()

        assert body["service"] == "relay-proxy"
        assert set(body["usage"]) >= {"method1_header", "method2_query", "method3_path"}
        assert body["usage"]["providers"]["routes"]["/openai"] == "https://api.openai.com"
        assert body["auth"] == "open"


class TestForwarding:
    def test_query_relay(self, make_client, upstream):
        response = make_client(upstream).get("/proxy?url=https://api.test/items")

        assert response.status_code == 200
        assert response.text == "upstream ok"
        assert str(upstream.last.url) == "https://api.test/items"
        assert upstream.last.method == "GET"

    def test_header_wins_over_query(self, make_client, upstream):
        make_client(upstream).get("/proxy?url=http://b.test", headers={"X-Target-URL": "http://a.test"})

        assert upstream.last.url.host == "a.test"

    def test_control_params_are_stripped(self, make_client, upstream):
        client = make_client(upstream, secret="secret")

        response = client.get("/proxy?url=https://api.test/x&apikey=secret&foo=bar")

        assert response.status_code == 200
        assert upstream.last.url.params["foo"] == "bar"
        assert "apikey" not in upstream.last.url.params
        assert "url" not in upstream.last.url.params

    def test_outbound_headers_are_sanitised(self, make_client, upstream):
        make_client(upstream).get(
            "/proxy",
            headers={"X-Target-URL": "https://api.test/x", "X-Proxy-Password": "pw", "X-Trace": "t-1"},
        )

        sent = upstream.last.headers
        assert sent["host"] == "api.test"
        assert sent["x-trace"] == "t-1"
        for name in ("connection", "transfer-encoding", "x-target-url", "x-api-key", "x-proxy-password"):
            assert name not in sent

    def test_provider_prefix(self, make_client, upstream):
        make_client(upstream).get("/openai/v1/models?limit=5", headers={"Authorization": "Bearer sk-test"})

        assert str(upstream.last.url) == "https://api.openai.com/v1/models?limit=5"
        assert upstream.last.headers["authorization"] == "Bearer sk-test"
        assert upstream.last.headers["host"] == "api.openai.com"

    def test_path_relay(self, make_client, upstream):
        make_client(upstream).get("/proxy/https://api.test/a/b?c=d")

        assert str(upstream.last.url) == "https://api.test/a/b?c=d"

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_method_and_body_pass_through(self, make_client, upstream, method):
        make_client(upstream).request(
            method,
            "/proxy?url=https://api.test/things",
            content=b'{"name": "widget"}',
            headers={"Content-Type": "application/json"},
        )

        assert upstream.last.method == method
        assert upstream.last.content == b'{"name": "widget"}'
        assert upstream.last.headers["content-type"] == "application/json"
        assert upstream.last.headers["content-length"] == "18"

    def test_get_without_body_sends_no_body(self, make_client, upstream):
        make_client(upstream).get("/proxy?url=https://api.test/x")

        assert upstream.last.content == b""
        assert "transfer-encoding" not in upstream.last.headers

    def test_status_and_headers_relayed(self, make_client):
        upstream = Upstream(
            lambda request: httpx.Response(
                418,
                headers=[
                    ("Content-Type", "text/plain"),
                    ("Set-Cookie", "a=1"),
                    ("Set-Cookie", "b=2"),
                    ("X-Upstream", "yes"),
                ],
                content=b"short and stout",
            )
        )

        response = make_client(upstream).get("/proxy?url=https://teapot.test")

        assert response.status_code == 418
        assert response.text == "short and stout"
        assert response.headers["x-upstream"] == "yes"
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]

    def test_streamed_body_arrives_intact_without_transfer_encoding(self, make_client):
        async def chunks():
            for part in (b"data: one\n\n", b"data: two\n\n", b"data: three\n\n"):
                yield part

        upstream = Upstream(
            lambda request: httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream", "Transfer-Encoding": "chunked"},
                content=chunks(),
            )
        )

        with make_client(upstream).stream("GET", "/proxy?url=https://stream.test/events") as response:
            body = b"".join(response.iter_bytes())

        assert body == b"data: one\n\ndata: two\n\ndata: three\n\n"
        assert "transfer-encoding" not in response.headers
        assert response.headers["content-type"] == "text/event-stream"

    def test_compressed_body_is_not_decoded(self, make_client):
        payload = gzip.compress(b"hello")
        upstream = Upstream(
            lambda request: httpx.Response(
                200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(payload)
            )
        )

        response = make_client(upstream).get("/proxy?url=https://api.test")

        # The test client decodes; the bytes on the wire were the upstream's
        assert response.headers["content-encoding"] == "gzip"
        assert response.text == "hello"

    def test_body_already_read_by_the_transport(self, make_client):
        payload = gzip.compress(b"decoded once")
        upstream = Upstream(
            lambda request: httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=payload)
        )

        response = make_client(upstream).get("/proxy?url=https://api.test")

        assert response.status_code == 200
        assert "content-encoding" not in response.headers
        assert response.content == b"decoded once"

    @pytest.mark.parametrize("encoded", ["a%23b", "a%3Fb", "a%2Fb"])
    def test_provider_path_keeps_its_encoding(self, make_client, upstream, encoded):
        make_client(upstream).get(f"/openai/v1/files/{encoded}?limit=5")

        assert upstream.last.url.raw_path == f"/v1/files/{encoded}?limit=5".encode()
        assert upstream.last.url.params["limit"] == "5"

    def test_absolute_form_path_keeps_its_encoding(self, make_client, upstream):
        make_client(upstream).get("/http://example.test/a%23b?c=1")

        assert str(upstream.last.url) == "http://example.test/a%23b?c=1"

    def test_header_base_path_keeps_its_encoding(self, make_client, upstream):
        make_client(upstream).get("/v1/items/a%2Fb", headers={"X-Target-URL": "https://api.test/"})

        assert upstream.last.url.raw_path == b"/v1/items/a%2Fb"


class TestErrors:
    def test_missing_target(self, make_client, upstream):
        response = make_client(upstream).get("/proxy")

        assert response.status_code == 400
        assert "error" in response.json()
        assert upstream.requests == []

    def test_invalid_target(self, make_client, upstream):
        response = make_client(upstream).get("/proxy?url=ht!tp://bad")

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid target URL: https://ht!tp://bad"

    def test_connect_error_is_502(self, make_client):
        def refuse(request):
            raise httpx.ConnectError("Name or service not known", request=request)

        response = make_client(Upstream(refuse)).get("/proxy?url=https://nowhere.test")

        assert response.status_code == 502
        assert response.json() == {"error": "Proxy error: Name or service not known"}

    def test_tls_or_protocol_error_is_502(self, make_client):
        def broken(request):
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)

        response = make_client(Upstream(broken)).get("/proxy?url=https://flaky.test")

        assert response.status_code == 502
        assert "Server disconnected" in response.json()["error"]

    def test_slow_upstream_is_504(self, make_client):
        async def never(request):
            await asyncio.sleep(30)
            return httpx.Response(200)

        upstream = Upstream(never)
        response = make_client(upstream, timeout=0.2).get("/proxy?url=https://slow.test")

        assert response.status_code == 504
        assert response.json() == {"error": "Proxy timeout"}

    def test_httpx_timeout_is_504(self, make_client):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        response = make_client(Upstream(timeout)).get("/proxy?url=https://slow.test")

        assert response.status_code == 504

    def test_declared_body_over_limit_is_413(self, make_client, upstream):
        response = make_client(upstream, max_body_bytes=10).post(
            "/proxy?url=https://api.test/upload", content=b"x" * 20
        )

        assert response.status_code == 413
        assert "error" in response.json()
        assert upstream.requests == []

    def test_chunked_body_over_limit_is_413(self, make_client, upstream):
        def body():
            for _ in range(4):
                yield b"x" * 8

        response = make_client(upstream, max_body_bytes=10).post("/proxy?url=https://api.test/upload", content=body())

        assert response.status_code == 413

    def test_connect_on_app_is_refused(self, make_client, upstream):
        response = make_client(upstream).request("CONNECT", "/example.test:443")

        assert response.status_code == 405
        assert "error" in response.json()


class TestAuthGate:
    SECRET = "s3cret"

    @pytest.fixture
    def client(self, make_client, upstream):
        return make_client(upstream, secret=self.SECRET)

    def test_health_and_info_are_exempt(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/").status_code == 200
        assert client.get("/").json()["auth"] == "required"

    @pytest.mark.parametrize("method, path", [("POST", "/"), ("PUT", "/"), ("DELETE", "/health"), ("PATCH", "/health")])
    def test_exempt_paths_do_not_relay_without_credentials(self, client, upstream, method, path):
        response = client.request(method, path, headers={"X-Target-URL": "https://victim.test"})

        assert response.status_code == 401
        assert upstream.requests == []

    def test_exempt_paths_relay_with_credentials(self, client, upstream):
        response = client.post("/", headers={"X-Target-URL": "https://api.test", "X-API-Key": self.SECRET})

        assert response.status_code == 200
        assert str(upstream.last.url) == "https://api.test/"

    def test_head_on_health_is_exempt(self, client, upstream):
        assert client.head("/health").status_code == 200
        assert upstream.requests == []

    def test_no_credentials_is_401(self, client, upstream):
        response = client.get("/proxy?url=https://api.test")

        assert response.status_code == 401
        assert "error" in response.json()
        assert upstream.requests == []

    def test_wrong_credentials_is_403(self, client):
        response = client.get("/proxy?url=https://api.test", headers={"X-API-Key": "wrong"})

        assert response.status_code == 403
        assert response.json() == {"error": "Forbidden: invalid API key"}

    @pytest.mark.parametrize(
        "target, headers",
        [
            ("/proxy?url=https://api.test", {"X-API-Key": SECRET}),
            ("/proxy?url=https://api.test", {"X-Proxy-Password": SECRET}),
            ("/proxy?url=https://api.test&apikey=" + SECRET, {}),
            ("/proxy?url=https://api.test&password=" + SECRET, {}),
            ("/proxy?url=https://api.test", {"Authorization": "Basic " + base64.b64encode(f"me:{SECRET}".encode()).decode()}),
            ("/proxy?url=https://api.test", {"Authorization": "Bearer " + SECRET}),
        ],
    )
    def test_every_credential_form_is_accepted(self, client, upstream, target, headers):
        response = client.get(target, headers=headers)

        assert response.status_code == 200
        assert "x-api-key" not in upstream.last.headers
        assert "authorization" not in upstream.last.headers
        assert "apikey" not in upstream.last.url.params
        assert "password" not in upstream.last.url.params

    def test_open_gate_ignores_credentials(self, make_client, upstream):
        client = make_client(upstream)

        assert client.get("/proxy?url=https://api.test").status_code == 200
        assert client.get("/proxy?url=https://api.test", headers={"X-API-Key": "whatever"}).status_code == 200

    def test_cors_preflight_is_answered_without_credentials(self, client):
        response = client.options(
            "/proxy",
            headers={"Origin": "https://app.test", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
