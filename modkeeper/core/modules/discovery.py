from __future__ import annotations

"""
Module discovery (no-import scanning).

Discovery reads only manifest text: <modules_root>/<name>/module.json. Module
code is never imported here. Manifests are validated once, at this boundary;
everything downstream works with ManifestModel.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from modkeeper.core.errors import ManifestError
from modkeeper.core.modules.models import ManifestModel, parse_manifest


MANIFEST_FILE = "module.json"


@dataclass(frozen=True)
class DiscoveryProblem:
    module_dir: str
    error: str


class ModuleDiscovery:
    def __init__(self, *, modules_root: str, logger: Optional[logging.Logger] = None):
        self.modules_root = str(modules_root)
        self.logger = logger or logging.getLogger(__name__)
        self.problems: List[DiscoveryProblem] = []

    def list_manifests(self) -> List[ManifestModel]:
        out: List[ManifestModel] = []
        problems: List[DiscoveryProblem] = []
        if not os.path.isdir(self.modules_root):
            self.problems = problems
            return out

        for name in sorted(os.listdir(self.modules_root)):
            if name.startswith((".", "_")):
                continue
            mod_dir = os.path.join(self.modules_root, name)
            if not os.path.isdir(mod_dir):
                continue
            manifest_path = os.path.join(mod_dir, MANIFEST_FILE)
            if not os.path.isfile(manifest_path):
                problems.append(DiscoveryProblem(module_dir=mod_dir, error=f"{MANIFEST_FILE} missing"))
                continue
            try:
                with open(manifest_path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
            except (OSError, ValueError) as e:
                problems.append(DiscoveryProblem(module_dir=mod_dir, error=f"unreadable: {e}"[:200]))
                continue
            if isinstance(raw, dict):
                raw.setdefault("name", name)
            man, err = parse_manifest(raw)
            if man is None:
                problems.append(DiscoveryProblem(module_dir=mod_dir, error=str(err)))
                continue
            if man.name != name:
                problems.append(DiscoveryProblem(module_dir=mod_dir, error="name does not match folder name"))
                continue
            out.append(man)

        for p in problems:
            self.logger.warning("skipping module at %s: %s", p.module_dir, p.error)
        self.problems = problems
        return out


class StaticDiscovery:
    """Manifests supplied programmatically (embedding, tests, external scanners)."""

    def __init__(self, manifests: Iterable[ManifestModel] = ()):
        self._manifests: Dict[str, ManifestModel] = {}
        for man in manifests:
            self.add(man)

    def add(self, manifest: ManifestModel) -> None:
        if manifest.name in self._manifests:
            raise ManifestError(f"Duplicate manifest for module '{manifest.name}'.", module=manifest.name)
        self._manifests[manifest.name] = manifest

    def replace(self, manifest: ManifestModel) -> None:
        self._manifests[manifest.name] = manifest

    def discard(self, name: str) -> None:
        self._manifests.pop(name, None)

    def list_manifests(self) -> List[ManifestModel]:
        return [self._manifests[n] for n in sorted(self._manifests)]
