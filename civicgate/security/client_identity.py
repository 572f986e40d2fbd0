"""
Best-effort client IP resolution.

Values come from client-controllable headers and are not validated as IP
addresses; they are only as trustworthy as the reverse proxy that sets them.
"""

from collections.abc import Mapping

from starlette.requests import Request

UNKNOWN_CLIENT = "unknown"


def get_client_ip(headers: Mapping[str, str], client_host: str | None = None) -> str:
    """
    Resolve the client IP.

    Precedence: first entry of X-Forwarded-For, then X-Real-IP, then the
    connection peer address, then "unknown".
    """
    forwarded_for = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip") or headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return client_host or UNKNOWN_CLIENT


def get_client_ip_from_request(request: Request) -> str:
    return get_client_ip(request.headers, request.client.host if request.client else None)
