"""
IP allow-list gate driven by the municipality security settings.

Matching is exact string comparison against the resolved client IP; CIDR
ranges are not expanded.
"""

import logging

from civicgate.config.config import Config
from civicgate.schemas.security_settings import SecuritySettings
from civicgate.security.decisions import ALLOW, Allow, Deny, DenyReason

logger = logging.getLogger(__name__)


def normalize_allowed_ips(allowed_ips: list[str]) -> list[str]:
    """Trim entries and drop the empty ones."""
    return [ip.strip() for ip in allowed_ips if ip and ip.strip()]


class IPPolicy:
    def __init__(self, empty_list_denies_all: bool | None = None):
        if empty_list_denies_all is None:
            empty_list_denies_all = Config.IP_ALLOWLIST_EMPTY_DENIES_ALL
        self.empty_list_denies_all = empty_list_denies_all

    def check(self, settings: SecuritySettings, client_ip: str) -> Allow | Deny:
        access = settings.access
        if not access.ip_whitelist_enabled:
            return ALLOW

        allowed = normalize_allowed_ips(access.allowed_ips)

        if not allowed:
            if self.empty_list_denies_all:
                return Deny(DenyReason.IP_BLOCKED, {"clientIP": client_ip, "allowList": "empty"})
            # Enabled with nothing configured: the list is treated as not set
            logger.debug("IP allow-list enabled but empty; allowing request")
            return ALLOW

        if client_ip not in allowed:
            return Deny(DenyReason.IP_BLOCKED, {"clientIP": client_ip})

        return ALLOW
