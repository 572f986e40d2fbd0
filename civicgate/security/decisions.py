"""
Outcome types for the edge gate.

``evaluate`` produces exactly one of these per request. The policy that maps
them to responses lives in the middleware: Deny short-circuits, Allow
forwards, and GateError is logged and then forwarded like Allow (fail-open).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DenyReason(str, Enum):
    IP_BLOCKED = "ip_blocked"
    SUSPICIOUS_REQUEST = "suspicious_request"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GateError:
    cause: BaseException


GateOutcome = Allow | Deny | GateError

ALLOW = Allow()
