"""
Edge Security Middleware

Front gate for every request reaching the application. In order it:
1. Loads the deployment security settings (defaults when the store fails)
2. Enforces the IP allow-list
3. Rejects URLs matching known attack patterns
4. Rate limits sensitive endpoints per (client IP, path)
5. Refreshes the auth session and forwards to the application
6. Adds security headers to the application's response

Denials are returned directly and never reach the application or the
session refresher. Unexpected errors inside the gate are reported and the
request is let through (fail-open).
"""

import logging
import time
from typing import Callable

import sentry_sdk
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from civicgate.config.config import Config
from civicgate.security.audit import SecurityAudit, SecurityEventType, Severity
from civicgate.security.client_identity import get_client_ip_from_request
from civicgate.security.decisions import ALLOW, Deny, DenyReason, GateError, GateOutcome
from civicgate.security.headers import apply_security_headers
from civicgate.security.ip_policy import IPPolicy
from civicgate.security.rate_limiter import FixedWindowRateLimiter, is_sensitive_path
from civicgate.security.suspicious_patterns import SuspiciousRequestDetector, build_full_url
from civicgate.services.prometheus_metrics import record_gate_decision
from civicgate.services.security_settings_loader import SecuritySettingsLoader
from civicgate.services.session_refresher import build_session_refresher

logger = logging.getLogger(__name__)

IP_BLOCKED_BODY = "Access restricted by IP policy"
SUSPICIOUS_BODY = "Access Denied"


def is_static_asset(
    path: str,
    prefixes: list[str] | tuple[str, ...],
    route_extensions: list[str] | tuple[str, ...],
) -> bool:
    """
    True for build assets and plain files that skip the security checks.

    A final segment with a file extension counts as a static file unless the
    extension is a route source extension. Paths containing ``..`` are never
    static so traversal attempts always reach the detector.
    """
    if any(path.startswith(prefix) for prefix in prefixes):
        return True
    if ".." in path:
        return False

    last_segment = path.rsplit("/", 1)[-1]
    dot = last_segment.rfind(".")
    if dot <= 0 or dot == len(last_segment) - 1:
        return False
    return last_segment[dot:].lower() not in route_extensions


class EdgeSecurityMiddleware(BaseHTTPMiddleware):
    """
    Request gate with injectable collaborators.

    Every collaborator defaults to one built from Config, so the middleware
    can be installed with ``app.add_middleware(EdgeSecurityMiddleware)``.
    Pass a shared ``rate_limiter`` to keep one counter table per process.
    """

    def __init__(
        self,
        app: ASGIApp,
        settings_loader: SecuritySettingsLoader | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        session_refresher=None,
        audit: SecurityAudit | None = None,
        ip_policy: IPPolicy | None = None,
        detector: SuspiciousRequestDetector | None = None,
        sensitive_prefixes: list[str] | None = None,
        static_prefixes: list[str] | None = None,
        route_extensions: list[str] | None = None,
        slow_request_threshold_ms: int | None = None,
        is_development: bool | None = None,
    ):
        super().__init__(app)
        self.audit = audit or SecurityAudit()
        self.settings_loader = settings_loader or SecuritySettingsLoader()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(audit=self.audit)
        self.session_refresher = session_refresher or build_session_refresher()
        self.ip_policy = ip_policy or IPPolicy()
        self.detector = detector or SuspiciousRequestDetector()
        self.sensitive_prefixes = (
            Config.RATE_LIMIT_SENSITIVE_PREFIXES if sensitive_prefixes is None else sensitive_prefixes
        )
        self.static_prefixes = Config.STATIC_PATH_PREFIXES if static_prefixes is None else static_prefixes
        self.route_extensions = (
            Config.ROUTE_FILE_EXTENSIONS if route_extensions is None else route_extensions
        )
        self.slow_request_threshold_ms = (
            Config.SLOW_REQUEST_THRESHOLD_MS
            if slow_request_threshold_ms is None
            else slow_request_threshold_ms
        )
        self.is_development = Config.IS_DEVELOPMENT if is_development is None else is_development

        logger.info(
            f"EdgeSecurityMiddleware initialized (rate limit {self.rate_limiter.max_requests}/"
            f"{self.rate_limiter.window_seconds}s, store={self.rate_limiter.store_name})"
        )

    async def evaluate(self, request: Request, client_ip: str) -> GateOutcome:
        """Run the policy checks in order and return the first denial."""
        try:
            path = request.url.path
            query = request.url.query
            user_agent = request.headers.get("user-agent", "")

            settings = await self.settings_loader.load()

            ip_outcome = self.ip_policy.check(settings, client_ip)
            if isinstance(ip_outcome, Deny):
                logger.warning(f"Blocking request from IP outside allow-list: {client_ip}")
                self.audit.log_security_event(
                    SecurityEventType.IP_BLOCKED,
                    {"clientIP": client_ip, "path": path},
                    Severity.HIGH,
                )
                return ip_outcome

            match = self.detector.scan(path, query, user_agent)
            if match is not None:
                details = {
                    "clientIP": client_ip,
                    "path": path,
                    "query": build_full_url("", query),
                    "userAgent": user_agent,
                    "fullUrl": match.full_url,
                    "pattern": match.pattern,
                }
                logger.warning(f"Blocking suspicious request ({match.pattern}): {match.full_url}")
                self.audit.log_security_event(
                    SecurityEventType.SUSPICIOUS_REQUEST, details, Severity.HIGH
                )
                return Deny(DenyReason.SUSPICIOUS_REQUEST, details)

            if is_sensitive_path(path, self.sensitive_prefixes):
                if await self.rate_limiter.is_limited(client_ip, path):
                    logger.warning(f"Rate limit exceeded: {client_ip} {path}")
                    return Deny(DenyReason.RATE_LIMITED, {"clientIP": client_ip, "path": path})

            return ALLOW
        except Exception as e:
            return GateError(e)

    def deny_response(self, outcome: Deny) -> Response:
        if outcome.reason == DenyReason.RATE_LIMITED:
            return JSONResponse(
                status_code=429,
                content={"error": "Too Many Requests"},
                headers={"Retry-After": str(self.rate_limiter.window_seconds)},
            )
        if outcome.reason == DenyReason.IP_BLOCKED:
            return Response(IP_BLOCKED_BODY, status_code=403, media_type="text/plain")
        return Response(SUSPICIOUS_BODY, status_code=403, media_type="text/plain")

    def _report_gate_error(self, request: Request, client_ip: str, outcome: GateError) -> None:
        cause = outcome.cause
        logger.error(f"Middleware error, allowing request: {cause}", exc_info=cause)
        sentry_sdk.capture_exception(cause)
        try:
            self.audit.log_security_event(
                SecurityEventType.MIDDLEWARE_ERROR,
                {
                    "error": str(cause),
                    "errorType": type(cause).__name__,
                    "path": request.url.path,
                    "clientIP": client_ip,
                },
                Severity.HIGH,
            )
        except Exception as e:
            logger.error(f"Failed to record middleware error event: {e}")

    async def _forward(self, request: Request, call_next: Callable) -> Response:
        response = await self.session_refresher.refresh(request, call_next)
        return apply_security_headers(response, self.is_development)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.monotonic()
        path = request.url.path

        if is_static_asset(path, self.static_prefixes, self.route_extensions):
            record_gate_decision("static")
            return await self._forward(request, call_next)

        client_ip = get_client_ip_from_request(request)
        outcome = await self.evaluate(request, client_ip)

        if isinstance(outcome, Deny):
            record_gate_decision("deny", outcome.reason.value)
            response = self.deny_response(outcome)
        else:
            if isinstance(outcome, GateError):
                record_gate_decision("fail_open", "gate_error")
                self._report_gate_error(request, client_ip, outcome)
            else:
                record_gate_decision("allow")
            response = await self._forward(request, call_next)

        duration_ms = (time.monotonic() - start_time) * 1000
        if duration_ms > self.slow_request_threshold_ms:
            logger.warning(
                f"Slow request detected: {request.method} {path} took {duration_ms:.0f}ms "
                f"(status {response.status_code})"
            )

        return response
