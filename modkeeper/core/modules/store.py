from __future__ import annotations

"""
Durable storage adapters behind ModuleRegistry.

The persisted layout is an implementation detail of the adapter:
{"schema_version": 1, "modules": {"<name>": {manifest, state, last_modified, revision}}}
"""

import copy
import logging
import os
import threading
from typing import Any, Dict, Optional

from modkeeper.core.config.io import (
    atomic_write_json,
    ensure_dirs,
    read_json_file,
    recover_from_corrupt,
    snapshot_last_known_good,
)


SCHEMA_VERSION = 1


def empty_payload() -> Dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, "modules": {}}


class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._data = copy.deepcopy(initial) if initial else empty_payload()
        self.saves = 0

    def load(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def save(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self._data = copy.deepcopy(data)
            self.saves += 1


class JsonFileStore:
    """
    Atomic JSON file with pre-write backups, a last-known-good copy and
    corruption recovery.
    """

    def __init__(self, path: str, *, backup_keep: int = 20, logger: Optional[logging.Logger] = None):
        self.path = str(path)
        self.backup_keep = int(backup_keep)
        self.logger = logger or logging.getLogger(__name__)
        base_dir = os.path.dirname(self.path) or "."
        self.backups_dir = os.path.join(base_dir, "backups")
        self.last_known_good_dir = os.path.join(base_dir, "last_known_good")
        self._lock = threading.Lock()
        ensure_dirs(base_dir)

    def load(self) -> Dict[str, Any]:
        with self._lock:
            rr = read_json_file(self.path)
            if rr.ok:
                data = rr.data
            elif rr.error == "missing":
                return empty_payload()
            else:
                self.logger.warning("registry file %s unreadable (%s); recovering", self.path, rr.error)
                data, recovered = recover_from_corrupt(
                    self.path,
                    backups_dir=self.backups_dir,
                    last_known_good_dir=self.last_known_good_dir,
                    keep=self.backup_keep,
                )
                if not recovered:
                    self.logger.warning("no last-known-good registry; starting empty")
                    return empty_payload()
            if not isinstance(data.get("modules"), dict):
                data["modules"] = {}
            data.setdefault("schema_version", SCHEMA_VERSION)
            return data

    def save(self, data: Dict[str, Any]) -> None:
        with self._lock:
            atomic_write_json(self.path, data, backups_dir=self.backups_dir, keep=self.backup_keep)
            snapshot_last_known_good(self.path, self.last_known_good_dir)
