"""
containeragents/telemetry — provisioning observability.

Public API:
    ProvisioningEventLog  — bounded event log + per-kind counters
"""

from containeragents.telemetry.events import ProvisioningEventLog

__all__ = ["ProvisioningEventLog"]
