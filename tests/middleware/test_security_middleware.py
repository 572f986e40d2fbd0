"""
Tests for EdgeSecurityMiddleware

This test suite verifies that the middleware:
1. Blocks clients outside an enabled IP allow-list before session refresh
2. Rejects URLs matching attack patterns with a plain 403
3. Rate limits sensitive paths per (client IP, path) with 429 + Retry-After
4. Adds security headers to every forwarded response, idempotently
5. Falls back to default settings when the settings store fails
6. Fails open when the gate itself raises
7. Lets static assets skip the checks
"""

import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from civicgate.middleware.security_middleware import (
    IP_BLOCKED_BODY,
    SUSPICIOUS_BODY,
    EdgeSecurityMiddleware,
    is_static_asset,
)
from civicgate.security.audit import SecurityEventType
from civicgate.security.decisions import Allow, Deny, DenyReason, GateError
from civicgate.security.ip_policy import IPPolicy
from civicgate.security.rate_limiter import FixedWindowRateLimiter
from civicgate.services.security_settings_loader import SecuritySettingsLoader
from civicgate.services.session_refresher import SupabaseSessionRefresher


class RecordingRefresher:
    """Session refresher that forwards unchanged and counts invocations."""

    def __init__(self):
        self.calls = 0

    async def refresh(self, request, call_next):
        self.calls += 1
        return await call_next(request)


def allow_list(*ips, enabled=True):
    return {"access": {"ipWhitelistEnabled": enabled, "allowedIPs": list(ips)}}


def build_app(
    settings_document=None,
    audit=None,
    clock=None,
    refresher=None,
    settings_loader=None,
    ip_policy=None,
    max_requests=100,
):
    app = FastAPI()
    limiter = FixedWindowRateLimiter(
        window_seconds=900,
        max_requests=max_requests,
        clock=clock,
        audit=audit,
    )
    loader = settings_loader or SecuritySettingsLoader(
        fetch=lambda: settings_document, cache_ttl_seconds=0
    )
    app.add_middleware(
        EdgeSecurityMiddleware,
        settings_loader=loader,
        rate_limiter=limiter,
        session_refresher=refresher or RecordingRefresher(),
        audit=audit,
        ip_policy=ip_policy or IPPolicy(empty_list_denies_all=False),
        is_development=False,
    )

    @app.get("/dashboard")
    async def dashboard():
        return {"page": "dashboard"}

    @app.get("/login")
    async def login():
        return {"page": "login"}

    @app.get("/signup")
    async def signup():
        return {"page": "signup"}

    @app.get("/files")
    async def files(path: str = ""):
        return {"path": path}

    @app.get("/static/app.js")
    async def static_asset():
        return PlainTextResponse("console.log('app')")

    @app.get("/framed")
    async def framed():
        return PlainTextResponse("framed", headers={"X-Frame-Options": "SAMEORIGIN"})

    @app.get("/boom")
    async def boom():
        raise ValueError("application failure")

    app.state.rate_limiter = limiter
    return app


def event_types(audit):
    return [call.args[0] for call in audit.log_security_event.call_args_list]


class TestIPAllowList:
    """IP allow-list enforcement"""

    def test_denied_ip_gets_403_and_skips_session_refresh(self, audit, fake_clock):
        refresher = RecordingRefresher()
        client = TestClient(
            build_app(allow_list("10.0.0.1"), audit=audit, clock=fake_clock, refresher=refresher)
        )

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 403
        assert response.text == IP_BLOCKED_BODY
        assert response.headers["content-type"].startswith("text/plain")
        assert refresher.calls == 0
        assert "content-security-policy" not in response.headers
        assert event_types(audit) == [SecurityEventType.IP_BLOCKED]
        details = audit.log_security_event.call_args.args[1]
        assert details == {"clientIP": "203.0.113.9", "path": "/dashboard"}

    def test_listed_ip_is_allowed(self, audit, fake_clock):
        client = TestClient(build_app(allow_list(" 10.0.0.1 ", ""), audit=audit, clock=fake_clock))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "10.0.0.1, 70.41.3.18"})

        assert response.status_code == 200
        assert response.json() == {"page": "dashboard"}

    def test_real_ip_header_is_used_without_forwarded_for(self, audit, fake_clock):
        client = TestClient(build_app(allow_list("10.0.0.2"), audit=audit, clock=fake_clock))

        response = client.get("/dashboard", headers={"X-Real-IP": "10.0.0.2"})

        assert response.status_code == 200

    def test_enabled_but_empty_list_allows_requests(self, audit, fake_clock):
        client = TestClient(build_app(allow_list(), audit=audit, clock=fake_clock))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200
        assert audit.log_security_event.call_count == 0

    def test_empty_list_denies_all_when_configured(self, audit, fake_clock):
        client = TestClient(
            build_app(
                allow_list(),
                audit=audit,
                clock=fake_clock,
                ip_policy=IPPolicy(empty_list_denies_all=True),
            )
        )

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 403

    def test_disabled_list_is_ignored(self, audit, fake_clock):
        client = TestClient(
            build_app(allow_list("10.0.0.1", enabled=False), audit=audit, clock=fake_clock)
        )

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200


class TestSuspiciousRequests:
    """Attack-pattern filtering"""

    def test_path_traversal_in_query_is_denied(self, audit, fake_clock):
        refresher = RecordingRefresher()
        client = TestClient(build_app(audit=audit, clock=fake_clock, refresher=refresher))

        response = client.get("/files?path=../../../etc/passwd")

        assert response.status_code == 403
        assert response.text == SUSPICIOUS_BODY
        assert response.headers["content-type"].startswith("text/plain")
        assert "content-security-policy" not in response.headers
        assert refresher.calls == 0

        assert event_types(audit) == [SecurityEventType.SUSPICIOUS_REQUEST]
        details = audit.log_security_event.call_args.args[1]
        assert details["pattern"] == "path_traversal"
        assert details["path"] == "/files"
        assert details["query"] == "?path=../../../etc/passwd"
        assert details["fullUrl"] == "/files?path=../../../etc/passwd"

    def test_benign_query_is_forwarded(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock))

        response = client.get("/files?path=reports/2024")

        assert response.status_code == 200
        assert response.json() == {"path": "reports/2024"}

    def test_ip_policy_runs_before_pattern_check(self, audit, fake_clock):
        client = TestClient(build_app(allow_list("10.0.0.1"), audit=audit, clock=fake_clock))

        response = client.get(
            "/files?path=../../etc/passwd", headers={"X-Forwarded-For": "203.0.113.9"}
        )

        assert response.text == IP_BLOCKED_BODY
        assert event_types(audit) == [SecurityEventType.IP_BLOCKED]


class TestRateLimiting:
    """Fixed-window limiting of sensitive paths"""

    def test_101st_login_request_is_limited(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock))
        headers = {"X-Forwarded-For": "198.51.100.7"}

        for _ in range(100):
            assert client.get("/login", headers=headers).status_code == 200

        response = client.get("/login", headers=headers)

        assert response.status_code == 429
        assert response.json() == {"error": "Too Many Requests"}
        assert response.headers["retry-after"] == "900"
        assert "content-security-policy" not in response.headers
        assert event_types(audit) == [SecurityEventType.RATE_LIMIT_EXCEEDED]

        # Other paths and other clients keep their own counters
        assert client.get("/dashboard", headers=headers).status_code == 200
        assert client.get("/signup", headers=headers).status_code == 200
        assert client.get("/login", headers={"X-Forwarded-For": "198.51.100.8"}).status_code == 200

    def test_non_sensitive_paths_are_never_limited(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock, max_requests=2))

        for _ in range(5):
            assert client.get("/dashboard").status_code == 200

    def test_window_reset_allows_requests_again(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock, max_requests=2))

        assert client.get("/login").status_code == 200
        assert client.get("/login").status_code == 200
        assert client.get("/login").status_code == 429

        fake_clock.advance(901)

        assert client.get("/login").status_code == 200


class TestSecurityHeaders:
    """Header augmentation on forwarded responses"""

    def test_allowed_response_carries_security_headers(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock))

        response = client.get("/dashboard")

        assert response.status_code == 200
        assert "default-src 'self'" in response.headers["content-security-policy"]
        assert "frame-ancestors 'none'" in response.headers["content-security-policy"]
        assert response.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains"
        assert response.headers["x-dns-prefetch-control"] == "off"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["referrer-policy"] == "strict-origin-when-cross-origin"

    def test_headers_set_by_application_are_replaced(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock))

        response = client.get("/framed")

        assert response.headers.get_list("x-frame-options") == ["DENY"]


class TestSettingsFailures:
    """Settings store failures fall back to defaults"""

    def test_store_failure_allows_request(self, audit, fake_clock):
        def failing_fetch():
            raise ConnectionError("settings store unreachable")

        loader = SecuritySettingsLoader(fetch=failing_fetch, cache_ttl_seconds=0)
        client = TestClient(build_app(audit=audit, clock=fake_clock, settings_loader=loader))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200
        assert "content-security-policy" in response.headers

    def test_invalid_document_allows_request(self, audit, fake_clock):
        document = {"access": {"ipWhitelistEnabled": True, "allowedIPs": "10.0.0.1"}}
        client = TestClient(build_app(document, audit=audit, clock=fake_clock))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200

    def test_store_timeout_allows_request(self, audit, fake_clock):
        def slow_fetch():
            time.sleep(0.5)
            return allow_list("10.0.0.1")

        loader = SecuritySettingsLoader(fetch=slow_fetch, timeout_seconds=0.05, cache_ttl_seconds=0)
        client = TestClient(build_app(audit=audit, clock=fake_clock, settings_loader=loader))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200
        assert response.json() == {"page": "dashboard"}
        assert "content-security-policy" in response.headers
        assert "strict-transport-security" in response.headers

    def test_coerced_booleans_do_not_enable_allow_list(self, audit, fake_clock):
        document = {"access": {"ipWhitelistEnabled": "yes", "allowedIPs": ["10.0.0.1"]}}
        client = TestClient(build_app(document, audit=audit, clock=fake_clock))

        response = client.get("/dashboard", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200
        assert SecurityEventType.IP_BLOCKED not in event_types(audit)


class TestFailOpen:
    """Unexpected gate errors let the request through"""

    def test_gate_error_is_reported_and_request_forwarded(self, audit, fake_clock):
        loader = AsyncMock()
        loader.load.side_effect = RuntimeError("unexpected")
        refresher = RecordingRefresher()
        client = TestClient(
            build_app(audit=audit, clock=fake_clock, settings_loader=loader, refresher=refresher)
        )

        with patch("civicgate.middleware.security_middleware.sentry_sdk.capture_exception") as capture:
            response = client.get("/dashboard")

        assert response.status_code == 200
        assert response.json() == {"page": "dashboard"}
        assert "content-security-policy" in response.headers
        assert refresher.calls == 1
        capture.assert_called_once()
        assert event_types(audit) == [SecurityEventType.MIDDLEWARE_ERROR]
        details = audit.log_security_event.call_args.args[1]
        assert details["errorType"] == "RuntimeError"

    def test_fail_open_metric_uses_fixed_reason(self, audit, fake_clock):
        loader = AsyncMock()
        loader.load.side_effect = KeyError("unexpected")
        client = TestClient(build_app(audit=audit, clock=fake_clock, settings_loader=loader))
        labels = {"decision": "fail_open", "reason": "gate_error"}
        before = REGISTRY.get_sample_value("edge_gate_decisions_total", labels) or 0

        with patch("civicgate.middleware.security_middleware.sentry_sdk.capture_exception"):
            client.get("/dashboard")

        assert REGISTRY.get_sample_value("edge_gate_decisions_total", labels) == before + 1
        assert (
            REGISTRY.get_sample_value(
                "edge_gate_decisions_total", {"decision": "fail_open", "reason": "KeyError"}
            )
            is None
        )

    def test_malformed_session_provider_body_does_not_block(self, audit, fake_clock):
        refresher = SupabaseSessionRefresher(
            "https://project.supabase.co",
            "anon-key",
            access_cookie="sb-access-token",
            refresh_cookie="sb-refresh-token",
            timeout_seconds=1.0,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["unexpected"])),
        )
        client = TestClient(build_app(audit=audit, clock=fake_clock, refresher=refresher))
        client.cookies.set("sb-access-token", "token")

        response = client.get("/dashboard")

        assert response.status_code == 200
        assert response.json() == {"page": "dashboard"}
        assert "content-security-policy" in response.headers

    def test_application_errors_are_not_swallowed(self, audit, fake_clock):
        client = TestClient(build_app(audit=audit, clock=fake_clock))

        with pytest.raises(ValueError, match="application failure"):
            client.get("/boom")


class TestStaticAssets:
    """Static fast path"""

    def test_static_asset_skips_checks_but_gets_headers(self, audit, fake_clock):
        refresher = RecordingRefresher()
        client = TestClient(
            build_app(allow_list("10.0.0.1"), audit=audit, clock=fake_clock, refresher=refresher)
        )

        response = client.get("/static/app.js", headers={"X-Forwarded-For": "203.0.113.9"})

        assert response.status_code == 200
        assert refresher.calls == 1
        assert response.headers["x-frame-options"] == "DENY"
        assert audit.log_security_event.call_count == 0

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/_next/static/chunks/main.js", True),
            ("/static/app.css", True),
            ("/favicon.ico", True),
            ("/images/logo.png", True),
            ("/dashboard", False),
            ("/app/page.tsx", False),
            ("/lib/util.ts", False),
            ("/files/../secret.txt", False),
            ("/.env", False),
            ("/report.", False),
        ],
    )
    def test_is_static_asset(self, path, expected):
        assert is_static_asset(path, ["/_next", "/static", "/favicon"], [".ts", ".tsx"]) is expected


class TestEvaluate:
    """Outcome of evaluate() without going through HTTP"""

    @staticmethod
    def make_request(path="/dashboard", query=b"", headers=None):
        raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
        return Request(
            {
                "type": "http",
                "method": "GET",
                "path": path,
                "query_string": query,
                "headers": raw_headers,
                "client": ("127.0.0.1", 50000),
                "server": ("testserver", 80),
                "scheme": "http",
            }
        )

    @staticmethod
    def make_middleware(settings_document=None, audit=None, clock=None, loader=None):
        return EdgeSecurityMiddleware(
            app=FastAPI(),
            settings_loader=loader
            or SecuritySettingsLoader(fetch=lambda: settings_document, cache_ttl_seconds=0),
            rate_limiter=FixedWindowRateLimiter(
                window_seconds=900, max_requests=1, clock=clock, audit=audit
            ),
            session_refresher=RecordingRefresher(),
            audit=audit,
            ip_policy=IPPolicy(empty_list_denies_all=False),
            is_development=False,
        )

    @pytest.mark.asyncio
    async def test_allow(self, audit, fake_clock):
        middleware = self.make_middleware(audit=audit, clock=fake_clock)

        outcome = await middleware.evaluate(self.make_request(), "127.0.0.1")

        assert isinstance(outcome, Allow)

    @pytest.mark.asyncio
    async def test_deny_ip(self, audit, fake_clock):
        middleware = self.make_middleware(allow_list("10.0.0.1"), audit=audit, clock=fake_clock)

        outcome = await middleware.evaluate(self.make_request(), "127.0.0.1")

        assert isinstance(outcome, Deny)
        assert outcome.reason == DenyReason.IP_BLOCKED

    @pytest.mark.asyncio
    async def test_deny_rate_limited(self, audit, fake_clock):
        middleware = self.make_middleware(audit=audit, clock=fake_clock)
        request = self.make_request("/api/auth/callback")

        first = await middleware.evaluate(request, "127.0.0.1")
        second = await middleware.evaluate(request, "127.0.0.1")

        assert isinstance(first, Allow)
        assert isinstance(second, Deny)
        assert second.reason == DenyReason.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_gate_error(self, audit, fake_clock):
        loader = AsyncMock()
        loader.load.side_effect = KeyError("settings")
        middleware = self.make_middleware(audit=audit, clock=fake_clock, loader=loader)

        outcome = await middleware.evaluate(self.make_request(), "127.0.0.1")

        assert isinstance(outcome, GateError)
        assert isinstance(outcome.cause, KeyError)

    def test_deny_responses(self, audit, fake_clock):
        middleware = self.make_middleware(audit=audit, clock=fake_clock)

        limited = middleware.deny_response(Deny(DenyReason.RATE_LIMITED))
        blocked = middleware.deny_response(Deny(DenyReason.IP_BLOCKED))
        suspicious = middleware.deny_response(Deny(DenyReason.SUSPICIOUS_REQUEST))

        assert limited.status_code == 429
        assert limited.headers["retry-after"] == "900"
        assert blocked.status_code == 403
        assert blocked.body == IP_BLOCKED_BODY.encode()
        assert suspicious.status_code == 403
        assert suspicious.body == SUSPICIOUS_BODY.encode()
