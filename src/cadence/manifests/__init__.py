"""Task manifest loading for Cadence."""

from .loader import ManifestLoadError, ManifestLoader, load_manifests
from .models import (
    ManifestDependency,
    ManifestImportResult,
    ManifestPlan,
    ManifestTask,
    TaskManifest,
)

__all__ = [
    "ManifestDependency",
    "ManifestImportResult",
    "ManifestLoadError",
    "ManifestLoader",
    "ManifestPlan",
    "ManifestTask",
    "TaskManifest",
    "load_manifests",
]
