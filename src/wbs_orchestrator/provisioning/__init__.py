"""Workspace provisioning for approved portfolio projects."""

from .workflow import (
    ProvisioningResult,
    ProvisioningState,
    ProvisioningWorkflow,
    app_url,
    folder_name,
)

__all__ = [
    "ProvisioningResult",
    "ProvisioningState",
    "ProvisioningWorkflow",
    "app_url",
    "folder_name",
]
