"""
containeragents/control_plane — provisioning decisions and workflow.

Public API:
    TemplateRegistry        — label → template lookup
    admit()                 — synchronous admission check
    AdmissionRejectedError  — unknown cloud / no template / template in backoff
    InMemoryScheduler       — scheduler-side node bookkeeping
    ProvisioningService     — provision / terminate / retention orchestration
    for_policy()            — retention policy → strategy
"""

from containeragents.control_plane.template_registry import (
    LabelExpressionError,
    TemplateRegistry,
    label_matches,
)
from containeragents.control_plane.admission_controller import (
    AdmissionRejectedError,
    TemplateBackoffError,
    TemplateNotFoundError,
    admit,
)
from containeragents.control_plane.scheduler_api import (
    Computer,
    InMemoryScheduler,
    RegistrationError,
)
from containeragents.control_plane.retention import for_policy
from containeragents.control_plane.provisioning_service import ProvisioningService

__all__ = [
    "LabelExpressionError",
    "TemplateRegistry",
    "label_matches",
    "AdmissionRejectedError",
    "TemplateBackoffError",
    "TemplateNotFoundError",
    "admit",
    "Computer",
    "InMemoryScheduler",
    "RegistrationError",
    "for_policy",
    "ProvisioningService",
]
