"""Loads module manifests from disk and detects conflicts between them."""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from typing import Any, Dict, List


MANIFEST_FILE = "manifest.json"
SUPPORTED_MANIFEST_VERSIONS = {1.0, 2.0}

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9_]+$")

logger = logging.getLogger("beacon.modules")


class ModuleManifestError(ValueError):
    pass


def _validate_manifest(manifest: Any) -> None:
    if not isinstance(manifest, dict):
        raise ModuleManifestError("manifest must be an object")
    version = manifest.get("manifest_version")
    if isinstance(version, bool) or not isinstance(version, (int, float)) or float(version) not in SUPPORTED_MANIFEST_VERSIONS:
        raise ModuleManifestError("unsupported manifest_version")
    for key in ("id", "name", "namespace", "version"):
        value = manifest.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ModuleManifestError(f"{key} is required")
    if not _NAMESPACE_RE.match(manifest["namespace"]):
        raise ModuleManifestError("namespace may contain only letters, digits and underscores")
    actions = manifest.get("actions", {})
    if not isinstance(actions, dict):
        raise ModuleManifestError("actions must be an object")


class ModuleManager:
    """A set of module manifests loaded from ``root_dir``.

    Two managers built over the same root are independent, which lets a caller
    ask "what if this set of modules were enabled" without touching anything
    persisted.
    """

    def __init__(self, root_dir: str) -> None:
        self._root_dir = root_dir
        self._manifests: Dict[str, dict] = {}
        self._errors: List[str] = []

    @property
    def root_dir(self) -> str:
        return self._root_dir

    def _read_manifest(self, relative_path: str) -> dict:
        root = os.path.realpath(self._root_dir)
        module_dir = os.path.realpath(os.path.join(root, relative_path))
        if os.path.commonpath([root, module_dir]) != root:
            raise ModuleManifestError("module path is outside of the modules directory")
        path = os.path.join(module_dir, MANIFEST_FILE)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                manifest = json.load(fh)
        except FileNotFoundError as exc:
            raise ModuleManifestError("manifest file not found") from exc
        except (OSError, ValueError) as exc:
            raise ModuleManifestError(f"manifest file cannot be read: {exc}") from exc
        _validate_manifest(manifest)
        return manifest

    def add_module(self, relative_path: str) -> dict | None:
        """Load the manifest at ``relative_path``; return it, or None when it cannot be loaded."""
        try:
            manifest = self._read_manifest(relative_path)
        except ModuleManifestError as exc:
            logger.warning("module_load_failed path=%s error=%s", relative_path, exc)
            self._errors.append(f"Cannot load module at: {relative_path}.")
            return None
        manifest = copy.deepcopy(manifest)
        manifest["relative_path"] = relative_path
        self._manifests[relative_path] = manifest
        return copy.deepcopy(manifest)

    def get_manifests(self) -> Dict[str, dict]:
        return copy.deepcopy(self._manifests)

    def get_errors(self) -> List[str]:
        return list(self._errors)

    def check_conflicts(self) -> dict:
        ids: Dict[str, List[str]] = {}
        namespaces: Dict[str, List[str]] = {}
        actions: Dict[str, List[str]] = {}
        for relative_path, manifest in sorted(self._manifests.items()):
            ids.setdefault(manifest["id"], []).append(relative_path)
            namespaces.setdefault(manifest["namespace"], []).append(relative_path)
            for action in (manifest.get("actions") or {}):
                actions.setdefault(action, []).append(relative_path)

        conflicts: List[str] = []
        conflicting: set[str] = set()
        for module_id, paths in ids.items():
            if len(paths) > 1:
                conflicts.append(f"Identical ID ({module_id}) is used by modules located at {', '.join(paths)}.")
                conflicting.update(paths)
        for namespace, paths in namespaces.items():
            if len(paths) > 1:
                conflicts.append(f"Identical namespace ({namespace}) is used by modules located at {', '.join(paths)}.")
                conflicting.update(paths)
        action_groups: Dict[tuple, List[str]] = {}
        for action, paths in actions.items():
            if len(paths) > 1:
                action_groups.setdefault(tuple(paths), []).append(action)
        for paths in action_groups:
            conflicts.append(f"Identical actions specified by modules located at {', '.join(paths)}.")
            conflicting.update(paths)

        return {"conflicts": conflicts, "conflicting_manifests": sorted(conflicting)}
