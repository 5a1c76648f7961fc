from cdn_proxy.app_proxy.headers import (
    IncomingHeaderRules,
    OutgoingHeaderRules,
    build_client_headers,
    build_upstream_headers,
    content_type_override,
    redact_headers,
    strip_hop_by_hop,
)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
JS_CONTENT_TYPE = "application/javascript; charset=utf-8"


def _names(headers):
    return [name.lower() for name, _ in headers]


def _value(headers, name):
    values = [v for n, v in headers if n.lower() == name.lower()]
    assert len(values) == 1, f"{name} appears {len(values)} times"
    return values[0]


class TestStripHopByHop:
    def test_standard_headers_removed(self):
        headers = [
            ("connection", "keep-alive"),
            ("keep-alive", "timeout=5"),
            ("transfer-encoding", "chunked"),
            ("upgrade", "websocket"),
            ("accept", "*/*"),
        ]

        assert strip_hop_by_hop(headers) == [("accept", "*/*")]

    def test_headers_named_by_connection_removed(self):
        headers = [("connection", "close, x-internal"), ("x-internal", "1"), ("accept", "*/*")]

        assert strip_hop_by_hop(headers) == [("accept", "*/*")]


class TestBuildUpstreamHeaders:
    """Test the outgoing header transformation."""

    def test_user_agent_overwritten(self):
        rules = OutgoingHeaderRules(set_headers=(("User-Agent", USER_AGENT),))
        headers = [("user-agent", "curl/8.0"), ("accept", "application/json")]

        result = build_upstream_headers(headers, rules)

        assert _value(result, "user-agent") == USER_AGENT
        assert _value(result, "accept") == "application/json"

    def test_user_agent_inserted(self):
        rules = OutgoingHeaderRules(set_headers=(("User-Agent", USER_AGENT),))

        result = build_upstream_headers([("accept", "*/*")], rules)

        assert _value(result, "user-agent") == USER_AGENT

    def test_host_and_hop_by_hop_dropped(self):
        headers = [
            ("host", "localhost:3001"),
            ("connection", "keep-alive"),
            ("origin", "http://localhost:4200"),
        ]

        result = build_upstream_headers(headers, OutgoingHeaderRules())

        assert _names(result) == ["origin"]

    def test_duplicate_headers_preserved(self):
        headers = [("accept-language", "en"), ("accept-language", "de")]

        result = build_upstream_headers(headers, OutgoingHeaderRules())

        assert result == headers

    def test_no_forwarded_headers_by_default(self):
        result = build_upstream_headers([("host", "proxy")], OutgoingHeaderRules(), client_host="10.0.0.1")

        assert not any(name.startswith("x-forwarded") for name in _names(result))

    def test_forwarded_headers_when_enabled(self):
        rules = OutgoingHeaderRules(forward_client_address=True)
        headers = [("host", "proxy.example.com"), ("x-forwarded-for", "10.0.0.1")]

        result = build_upstream_headers(
            headers, rules, client_host="192.168.1.100", scheme="https", prefix="/api/optimizely"
        )

        assert _value(result, "x-forwarded-for") == "10.0.0.1, 192.168.1.100"
        assert _value(result, "x-forwarded-host") == "proxy.example.com"
        assert _value(result, "x-forwarded-proto") == "https"
        assert _value(result, "x-forwarded-prefix") == "/api/optimizely"
        assert _value(result, "x-real-ip") == "192.168.1.100"

    def test_client_without_host(self):
        rules = OutgoingHeaderRules(forward_client_address=True)

        result = build_upstream_headers([], rules, client_host=None)

        assert _value(result, "x-forwarded-for") == "unknown"

    def test_inbound_headers_not_mutated(self):
        headers = [("user-agent", "curl/8.0")]
        rules = OutgoingHeaderRules(set_headers=(("User-Agent", USER_AGENT),))

        build_upstream_headers(headers, rules)

        assert headers == [("user-agent", "curl/8.0")]


class TestBuildClientHeaders:
    """Test the incoming header transformation."""

    def _rules(self):
        return IncomingHeaderRules(
            set_headers=(
                ("Access-Control-Allow-Origin", "*"),
                ("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE, OPTIONS"),
                ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
            ),
            content_type_overrides=((".js", JS_CONTENT_TYPE),),
        )

    def test_cors_headers_override_upstream(self):
        upstream = [("access-control-allow-origin", "https://cdn.example.com"), ("etag", "abc")]

        result = build_client_headers(upstream, "/datafiles/a.json", self._rules())

        assert _value(result, "access-control-allow-origin") == "*"
        assert _value(result, "access-control-allow-methods") == "GET, POST, PUT, DELETE, OPTIONS"
        assert _value(result, "access-control-allow-headers") == "Content-Type, Authorization"
        assert _value(result, "etag") == "abc"

    def test_js_content_type_override(self):
        upstream = [("content-type", "text/plain")]

        result = build_client_headers(upstream, "/js/123.js", self._rules())

        assert _value(result, "content-type") == JS_CONTENT_TYPE

    def test_js_override_without_upstream_content_type(self):
        result = build_client_headers([], "/js/123.js", self._rules())

        assert _value(result, "content-type") == JS_CONTENT_TYPE

    def test_json_content_type_preserved(self):
        upstream = [("content-type", "application/json")]

        result = build_client_headers(upstream, "/datafiles/abc.json", self._rules())

        assert _value(result, "content-type") == "application/json"

    def test_multiple_set_cookie_kept(self):
        upstream = [("set-cookie", "a=1"), ("set-cookie", "b=2")]

        result = build_client_headers(upstream, "/x", self._rules())

        assert [v for n, v in result if n == "set-cookie"] == ["a=1", "b=2"]

    def test_hop_by_hop_dropped(self):
        upstream = [("transfer-encoding", "chunked"), ("content-encoding", "gzip")]

        result = build_client_headers(upstream, "/x", self._rules())

        assert "transfer-encoding" not in _names(result)
        assert _value(result, "content-encoding") == "gzip"

    def test_idempotent(self):
        upstream = [("content-type", "text/plain"), ("etag", "abc")]

        first = build_client_headers(upstream, "/a.js", self._rules())
        second = build_client_headers(upstream, "/a.js", self._rules())

        assert first == second


def test_content_type_override_first_match_wins():
    rules = IncomingHeaderRules(
        content_type_overrides=((".min.js", "text/javascript"), (".js", JS_CONTENT_TYPE))
    )

    assert content_type_override("/a.min.js", rules) == "text/javascript"
    assert content_type_override("/a.js", rules) == JS_CONTENT_TYPE
    assert content_type_override("/a.json", rules) is None


def test_redact_headers():
    result = redact_headers([("Authorization", "Bearer secret"), ("Cookie", "s=1"), ("accept", "*/*")])

    assert result == {"Authorization": "****", "Cookie": "****", "accept": "*/*"}
