"""
Security settings schema.

Mirrors the ``settings.security`` document an administrator edits for the
municipality. Every field carries a default so an absent or partial document
still parses; the gate itself only reads ``access.ip_whitelist_enabled`` and
``access.allowed_ips``.

Usage:
    from civicgate.schemas.security_settings import parse_security_settings

    settings = parse_security_settings({"access": {"ipWhitelistEnabled": True}})
    settings.access.allowed_ips  # []
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt


class UserRole(str, Enum):
    STAFF = "staff"
    DEPARTMENT_DIRECTOR = "department_director"
    CITY_MANAGER = "city_manager"
    FINANCE = "finance"
    ADMIN = "admin"


class _SettingsSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AuthSettings(_SettingsSection):
    min_password_length: StrictInt = Field(8, ge=6, le=128, alias="minPasswordLength")
    password_expiration_days: StrictInt = Field(90, ge=0, le=3650, alias="passwordExpirationDays")
    max_login_attempts: StrictInt = Field(5, ge=1, le=50, alias="maxLoginAttempts")
    require_special_chars: StrictBool = Field(True, alias="requireSpecialChars")
    require_two_factor_admin: StrictBool = Field(False, alias="requireTwoFactorAdmin")
    sso_enabled: StrictBool = Field(False, alias="ssoEnabled")


class AccessSettings(_SettingsSection):
    default_user_role: UserRole = Field(UserRole.STAFF, alias="defaultUserRole")
    auto_approve_registration: StrictBool = Field(False, alias="autoApproveRegistration")
    ip_whitelist_enabled: StrictBool = Field(False, alias="ipWhitelistEnabled")
    allowed_ips: list[str] = Field(default_factory=list, alias="allowedIPs")


class AuditSettings(_SettingsSection):
    enable_audit_logging: StrictBool = Field(True, alias="enableAuditLogging")
    failed_login_notifications: StrictBool = Field(True, alias="failedLoginNotifications")
    data_export_logging: StrictBool = Field(True, alias="dataExportLogging")
    retention_days: StrictInt = Field(365, ge=1, le=3650, alias="retentionDays")


class SessionSettings(_SettingsSection):
    timeout_minutes: StrictInt = Field(60, ge=5, le=1440, alias="timeoutMinutes")
    max_concurrent_sessions: StrictInt = Field(3, ge=1, le=50, alias="maxConcurrentSessions")
    remember_me_days: StrictInt = Field(30, ge=1, le=365, alias="rememberMeDays")


class SecuritySettings(_SettingsSection):
    auth: AuthSettings = Field(default_factory=AuthSettings)
    access: AccessSettings = Field(default_factory=AccessSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)


def default_security_settings() -> SecuritySettings:
    return SecuritySettings()


def parse_security_settings(raw: Any) -> SecuritySettings:
    """
    Validate a raw settings document.

    ``None`` yields the defaults. Anything else must be a mapping that
    satisfies the schema.

    Raises:
        pydantic.ValidationError: If the document violates the schema.
    """
    if raw is None:
        return default_security_settings()
    return SecuritySettings.model_validate(raw)
