"""
Prometheus metrics for the edge request gate.

- Gate decisions (allowed / denied by reason / failed open)
- Security events by type and severity
- Rate-limited requests by counter store (memory or redis)
- Security settings load failures
"""

import logging

from prometheus_client import Counter

logger = logging.getLogger(__name__)

gate_decisions = Counter(
    "edge_gate_decisions_total",
    "Edge gate decisions",
    ["decision", "reason"],
)

security_events = Counter(
    "security_events_total",
    "Security events emitted by the edge gate",
    ["event_type", "severity"],
)

rate_limited_requests = Counter(
    "edge_gate_rate_limited_requests_total",
    "Requests rejected by the fixed-window rate limiter",
    ["store"],
)

settings_load_failures = Counter(
    "security_settings_load_failures_total",
    "Security settings loads that fell back to defaults",
    ["error_type"],
)


def record_gate_decision(decision: str, reason: str = "none") -> None:
    gate_decisions.labels(decision=decision, reason=reason).inc()


def record_security_event(event_type: str, severity: str) -> None:
    security_events.labels(event_type=event_type, severity=severity).inc()


def record_rate_limited(store: str) -> None:
    rate_limited_requests.labels(store=store).inc()


def record_settings_load_failure(error_type: str) -> None:
    settings_load_failures.labels(error_type=error_type).inc()
