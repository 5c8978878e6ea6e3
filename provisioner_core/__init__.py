"""
provisioner_core — the timing and naming core of the agent provisioner.

Public API:
    generate_name()          — DNS-safe `<base>-<suffix>` resource names
    ProvisionRetryStrategy   — per-template exponential-backoff circuit breaker
    ReadinessPoller          — remote Running → agent online state machine
    SystemClock              — monotonic clock with cancelable sleeps

Usage:
    from provisioner_core import ProvisionRetryStrategy, generate_name

    breaker = ProvisionRetryStrategy()
    if breaker.is_enabled(template.name):
        name = generate_name(template.name)
"""

from provisioner_core.clock import SystemClock
from provisioner_core.naming import generate_name
from provisioner_core.backoff import ProvisionRetryStrategy
from provisioner_core.readiness import ReadinessPoller

__all__ = [
    "SystemClock",
    "generate_name",
    "ProvisionRetryStrategy",
    "ReadinessPoller",
]
