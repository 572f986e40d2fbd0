"""
Response security headers.

Headers are assigned with replace semantics, so applying them twice
produces the same response.
"""

from starlette.responses import Response

STRICT_TRANSPORT_SECURITY = "max-age=31536000; includeSubDomains"

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

# Local Supabase stack (supabase start) used during development
_DEV_CONNECT_SOURCES = [
    "http://127.0.0.1:54321",
    "http://localhost:54321",
    "ws://127.0.0.1:54321",
    "ws://localhost:54321",
]


def build_content_security_policy(is_development: bool = False) -> str:
    connect_src = ["'self'"]
    if is_development:
        connect_src.extend(_DEV_CONNECT_SOURCES)
    connect_src.append("https:")

    directives = [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: https:",
        "font-src 'self' data:",
        f"connect-src {' '.join(connect_src)}",
        "media-src 'self'",
        "frame-src 'none'",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
    ]
    return "; ".join(directives)


def apply_security_headers(response: Response, is_development: bool = False) -> Response:
    """Set CSP, the standard header bundle, HSTS and DNS prefetch control."""
    response.headers["Content-Security-Policy"] = build_content_security_policy(is_development)
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    response.headers["Strict-Transport-Security"] = STRICT_TRANSPORT_SECURITY
    response.headers["X-DNS-Prefetch-Control"] = "off"
    return response
