"""Provider interfaces for tfstatectl."""
from __future__ import annotations

from .azure import AzureCliError, AzureCliProvider, ResourceExistence
from .notifier import (
    NotificationError,
    NotificationResult,
    NotificationStatus,
    WebhookNotifier,
)
from .terraform import (
    ImportFailure,
    PlanStatus,
    TerraformError,
    TerraformProvider,
    classify_import_failure,
)

__all__ = [
    "AzureCliError",
    "AzureCliProvider",
    "ImportFailure",
    "NotificationError",
    "NotificationResult",
    "NotificationStatus",
    "PlanStatus",
    "ResourceExistence",
    "TerraformError",
    "TerraformProvider",
    "WebhookNotifier",
    "classify_import_failure",
]
