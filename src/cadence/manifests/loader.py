"""Manifest loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import TaskManifest


class ManifestLoadError(RuntimeError):
    """Raised when one or more manifest files cannot be parsed."""


class ManifestLoader:
    """Loads task manifests from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        """Return the normalized search paths."""

        return list(self._search_paths)

    @staticmethod
    def load_file(path: Path) -> TaskManifest | None:
        """Parse one manifest file; empty documents yield ``None``."""

        try:
            document = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ManifestLoadError(f"Failed to parse YAML in {path}: {exc}") from exc
        except OSError as exc:
            raise ManifestLoadError(f"Failed to read {path}: {exc}") from exc

        if document is None:
            return None
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Manifest {path} must be a mapping at the top level")

        document.setdefault("name", Path(path).stem)
        try:
            return TaskManifest.model_validate(document)
        except ValidationError as exc:
            raise ManifestLoadError(f"Manifest validation error in {path}: {exc}") from exc

    def load_all(self) -> dict[str, TaskManifest]:
        """Load manifests from all configured search paths.

        Later search paths override earlier ones when manifest names collide.
        """

        if not self._search_paths:
            return {}

        manifests: dict[str, TaskManifest] = {}
        errors: list[str] = []

        for base in self._search_paths:
            if base.is_file():
                candidates = [base]
            else:
                candidates = sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml"))
            for path in candidates:
                try:
                    manifest = self.load_file(path)
                except ManifestLoadError as exc:
                    errors.append(str(exc))
                    continue
                if manifest is not None:
                    manifests[manifest.name] = manifest

        if errors:
            raise ManifestLoadError("; ".join(errors))

        return manifests

    def get(self, name: str) -> TaskManifest:
        """Return a single manifest by name."""

        manifests = self.load_all()
        try:
            return manifests[name]
        except KeyError as exc:
            raise ManifestLoadError(f"Manifest '{name}' not found in search paths") from exc


def load_manifests(search_paths: Iterable[Path] | None = None) -> dict[str, TaskManifest]:
    """Convenience wrapper for loading manifests from the provided paths."""

    loader = ManifestLoader(search_paths)
    return loader.load_all()


__all__ = ["ManifestLoadError", "ManifestLoader", "TaskManifest", "load_manifests"]
