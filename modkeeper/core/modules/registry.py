from __future__ import annotations

"""
ModuleRegistry: name -> (manifest, state) over a durable store.

Two tiers:
- persisted entries (one per installed module), written through the store
- a TTL'd cache of discovered manifests (modules known but never installed)

Locking:
- one lock per module name serializes lifecycle operations on that module
- a short map lock protects the entry map, revision counter and caches
Every acquisition is bounded and raises LockTimeoutError instead of hanging.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from modkeeper.core.errors import ConcurrentModificationError, LockTimeoutError, ManifestError
from modkeeper.core.modules.models import ManifestModel, ModuleState, RegistryEntry, RegistrySnapshot
from modkeeper.core.modules.store import SCHEMA_VERSION


_MAP = "<registry>"


class ModuleRegistry:
    def __init__(
        self,
        store: Any,
        discovery: Any = None,
        *,
        lock_timeout_seconds: float = 10.0,
        cache_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.discovery = discovery
        self.lock_timeout_seconds = float(lock_timeout_seconds)
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._map_lock = threading.RLock()
        self._locks: Dict[str, threading.RLock] = {}
        self._entries: Dict[str, RegistryEntry] = {}
        self._seq = 0
        self._discovered: Optional[Dict[str, ManifestModel]] = None
        self._discovered_at = 0.0
        self._aggregates: Dict[str, Tuple[str, ...]] = {}
        self.load()

    # ---- locking ----
    @contextmanager
    def lock(self, name: str, timeout: Optional[float] = None) -> Iterator[None]:
        lk = self._lock_for(name)
        t = self.lock_timeout_seconds if timeout is None else float(timeout)
        if not lk.acquire(timeout=t):
            raise LockTimeoutError(name, t)
        try:
            yield
        finally:
            lk.release()

    def _lock_for(self, name: str) -> threading.RLock:
        with self._map_guard(name):
            lk = self._locks.get(name)
            if lk is None:
                lk = threading.RLock()
                self._locks[name] = lk
            return lk

    @contextmanager
    def _map_guard(self, name: str = _MAP) -> Iterator[None]:
        if not self._map_lock.acquire(timeout=self.lock_timeout_seconds):
            raise LockTimeoutError(name, self.lock_timeout_seconds, scope="registry_map")
        try:
            yield
        finally:
            self._map_lock.release()

    # ---- persistence ----
    def load(self) -> int:
        """(Re)read persisted entries. Returns the number of entries loaded."""
        data = self.store.load()
        raw_modules = data.get("modules") if isinstance(data, dict) else None
        entries: Dict[str, RegistryEntry] = {}
        for name, raw in sorted((raw_modules or {}).items()):
            try:
                entry = RegistryEntry.model_validate(raw)
            except ValidationError as e:
                self.logger.warning("dropping invalid registry entry %s: %s", name, str(e)[:200])
                continue
            if entry.name != name:
                self.logger.warning("dropping registry entry %s: manifest name is %s", name, entry.name)
                continue
            if entry.state is ModuleState.UPDATING:
                # an update was interrupted before it could revert
                fallback = entry.previous_state or ModuleState.INSTALLED
                self.logger.warning("registry entry %s was left updating; restored to %s", name, fallback.value)
                entry = entry.model_copy(update={"state": fallback, "previous_state": None})
            entries[name] = entry
        with self._map_guard():
            self._entries = entries
            self._seq = max([self._seq] + [e.revision for e in entries.values()])
            self._aggregates.clear()
        return len(entries)

    def _payload(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "modules": {n: self._entries[n].model_dump(mode="json") for n in sorted(self._entries)},
        }

    def _check_expect(self, name: str, expect: Optional[Mapping[str, int]]) -> None:
        if not expect:
            return
        changed = sorted(n for n, rev in expect.items() if self._revision_unlocked(n) != int(rev))
        if changed:
            raise ConcurrentModificationError(name, changed=changed)

    def _revision_unlocked(self, name: str) -> int:
        entry = self._entries.get(name)
        return entry.revision if entry is not None else 0

    # ---- writes ----
    def put(
        self,
        name: str,
        manifest: ManifestModel,
        state: ModuleState,
        *,
        expect: Optional[Mapping[str, int]] = None,
        previous_state: Optional[ModuleState] = None,
    ) -> RegistryEntry:
        if manifest.name != name:
            raise ManifestError(f"Manifest name '{manifest.name}' does not match registry key '{name}'.", module=name)
        with self._map_guard(name):
            self._check_expect(name, expect)
            previous = self._entries.get(name)
            self._seq += 1
            entry = RegistryEntry(
                manifest=manifest,
                state=ModuleState(state),
                last_modified=self.clock(),
                revision=self._seq,
                previous_state=previous_state,
            )
            self._entries[name] = entry
            try:
                self.store.save(self._payload())
            except Exception:
                self._restore(name, previous)
                self.logger.warning("registry write for %s failed; rolled back", name)
                raise
            self._aggregates.clear()
            return entry

    def restore(self, name: str, manifest: ManifestModel, state: ModuleState) -> bool:
        """
        Put back a known-good entry after a failed operation. Unlike put(), the
        in-memory entry is kept even when the store write fails; load() maps a
        persisted `updating` entry back to its previous state. Returns whether
        the store accepted the write.
        """
        with self._map_guard(name):
            self._seq += 1
            self._entries[name] = RegistryEntry(
                manifest=manifest, state=ModuleState(state), last_modified=self.clock(), revision=self._seq
            )
            self._aggregates.clear()
            try:
                self.store.save(self._payload())
            except Exception as e:
                self.logger.warning("registry restore of %s kept in memory only: %s", name, e)
                return False
            return True

    def delete(self, name: str, *, expect: Optional[Mapping[str, int]] = None) -> bool:
        with self._map_guard(name):
            self._check_expect(name, expect)
            previous = self._entries.pop(name, None)
            if previous is None:
                return False
            self._seq += 1
            try:
                self.store.save(self._payload())
            except Exception:
                self._restore(name, previous)
                self.logger.warning("registry delete for %s failed; rolled back", name)
                raise
            self._aggregates.clear()
            return True

    def _restore(self, name: str, previous: Optional[RegistryEntry]) -> None:
        if previous is None:
            self._entries.pop(name, None)
        else:
            self._entries[name] = previous

    # ---- reads ----
    def get(self, name: str) -> Tuple[Optional[ManifestModel], ModuleState, bool]:
        with self._map_guard(name):
            entry = self._entries.get(name)
        if entry is not None:
            return entry.manifest, entry.state, True
        man = self._discovered_manifests().get(name)
        if man is None and self.discovery is not None:
            # miss: the module may have appeared since the last scan
            man = self._discovered_manifests(refresh=True).get(name)
        if man is None:
            return None, ModuleState.NOT_INSTALLED, False
        return man, ModuleState.NOT_INSTALLED, True

    def entry(self, name: str) -> Optional[RegistryEntry]:
        with self._map_guard(name):
            return self._entries.get(name)

    def revision(self, name: str) -> int:
        with self._map_guard(name):
            return self._revision_unlocked(name)

    def list(self) -> List[RegistryEntry]:
        with self._map_guard():
            return [self._entries[n] for n in sorted(self._entries)]

    def snapshot(self) -> RegistrySnapshot:
        discovered = self._discovered_manifests()
        with self._map_guard():
            manifests = dict(discovered)
            manifests.update({n: e.manifest for n, e in self._entries.items()})
            states = {n: e.state for n, e in self._entries.items()}
            revisions = {n: e.revision for n, e in self._entries.items()}
        return RegistrySnapshot(manifests=manifests, states=states, revisions=revisions)

    def known_manifests(self) -> List[ManifestModel]:
        snap = self.snapshot()
        return [snap.manifests[n] for n in sorted(snap.manifests)]

    def enabled_names(self) -> Tuple[str, ...]:
        return self._aggregate("enabled", lambda e: e.state is ModuleState.ENABLED)

    def installed_names(self) -> Tuple[str, ...]:
        return self._aggregate("installed", lambda e: e.state.is_installed())

    def _aggregate(self, key: str, pred: Callable[[RegistryEntry], bool]) -> Tuple[str, ...]:
        with self._map_guard():
            cached = self._aggregates.get(key)
            if cached is None:
                cached = tuple(n for n in sorted(self._entries) if pred(self._entries[n]))
                self._aggregates[key] = cached
            return cached

    # ---- discovery cache ----
    def invalidate(self, name: Optional[str] = None) -> None:
        with self._map_guard(name or _MAP):
            self._discovered = None
            self._aggregates.clear()
        self.logger.debug("registry cache invalidated (%s)", name or "all")

    def _discovered_manifests(self, *, refresh: bool = False) -> Dict[str, ManifestModel]:
        if self.discovery is None:
            return {}
        with self._map_guard():
            cached = self._discovered
            fresh = cached is not None and (self.clock() - self._discovered_at) < self.cache_ttl_seconds
        if cached is not None and fresh and not refresh:
            return cached
        # scan outside the map lock; discovery may touch the filesystem
        found: Dict[str, ManifestModel] = {}
        for man in self.discovery.list_manifests():
            if man.name in found:
                self.logger.warning("duplicate discovered manifest %s ignored", man.name)
                continue
            found[man.name] = man
        with self._map_guard():
            self._discovered = found
            self._discovered_at = self.clock()
        return found
