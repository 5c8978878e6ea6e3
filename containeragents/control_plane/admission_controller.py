"""
containeragents/control_plane/admission_controller.py
─────────────────────────────────────────────────────
Admission control: may this cloud provision this label right now?

The admission controller is the first gate of every provisioning request. It
runs synchronously in the caller's thread, BEFORE any task is scheduled, so
a rejected request has no side effects at all.

What it checks
──────────────
  1. Count: at least one unit must be requested.

  2. Template resolution: the label expression must parse and some template
     of the cloud must satisfy it (first match in configured order).

  3. Circuit breaker: the resolved template must not be in backoff.
     A template that failed recently is closed until
     last_failure + interval; the capacity planner simply asks again on a
     later cycle.

What it does NOT check
──────────────────────
  • Quotas or free capacity on the platform. The platform answers that by
    failing the create, which feeds the breaker.
  • Credentials. Missing credentials surface as a failed provisioning unit.
"""

from __future__ import annotations

from typing import Optional

from containeragents.control_plane.template_registry import (
    LabelExpressionError,
    TemplateRegistry,
)
from containeragents.shared.models import AgentTemplate
from provisioner_core.backoff import ProvisionRetryStrategy


class AdmissionRejectedError(Exception):
    """
    Raised when a provisioning request fails admission control.

    Attributes:
        reason: Human-readable explanation of why the request was rejected.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TemplateNotFoundError(AdmissionRejectedError):
    """No template of the cloud satisfies the requested label."""


class TemplateBackoffError(AdmissionRejectedError):
    """
    The resolved template is closed by the circuit breaker.

    Attributes:
        template_name: The template in backoff.
        retry_at:      Wall-clock time at which it re-opens.
    """

    def __init__(self, reason: str, template_name: str, retry_at: float) -> None:
        self.template_name = template_name
        self.retry_at = retry_at
        super().__init__(reason)


def admit(
    cloud_name: str,
    registry: TemplateRegistry,
    breaker: ProvisionRetryStrategy,
    label: Optional[str],
    count: int = 1,
    now: Optional[float] = None,
) -> AgentTemplate:
    """
    Run all admission checks and return the template to provision.

    Raises:
        AdmissionRejectedError: bad count or malformed label.
        TemplateNotFoundError:  no template matches the label.
        TemplateBackoffError:   the matching template is in backoff.
    """
    if count < 1:
        raise AdmissionRejectedError(
            f"Cloud {cloud_name!r}: requested count must be ≥ 1, got {count}"
        )

    try:
        template = registry.find_template(label)
    except LabelExpressionError as e:
        raise AdmissionRejectedError(f"Cloud {cloud_name!r}: {e.reason}") from e

    if template is None:
        raise TemplateNotFoundError(
            f"Cloud {cloud_name!r} has no template matching label {label!r}"
        )

    if not breaker.is_enabled(template.name, now):
        retry_at = breaker.next_retry_time(template.name)
        raise TemplateBackoffError(
            f"Template {template.name!r} of cloud {cloud_name!r} is in backoff "
            f"after repeated failures; retry at {retry_at:.0f}",
            template_name=template.name,
            retry_at=retry_at,
        )
    return template
