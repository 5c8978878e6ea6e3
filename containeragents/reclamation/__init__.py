"""
containeragents/reclamation — cleanup of what provisioning leaves behind.

Public API:
    ReclamationTask     — periodic sweep deleting leaked remote resources
    DeploymentRegistry  — ARM deployment records waiting to be deleted
"""

from containeragents.reclamation.deployments import DeploymentRegistry
from containeragents.reclamation.cleanup_task import ReclamationTask

__all__ = ["DeploymentRegistry", "ReclamationTask"]
