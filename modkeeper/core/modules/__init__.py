"""
Module system core: manifests, dependency graph, registry and lifecycle.

Discovery never imports module code; it reads module.json files only. All
state transitions go through LifecycleManager, which plans against a fresh
DependencyGraph built from a registry snapshot.
"""

from modkeeper.core.modules.discovery import ModuleDiscovery, StaticDiscovery
from modkeeper.core.modules.graph import DependencyGraph
from modkeeper.core.modules.lifecycle import LifecycleHooks, LifecycleManager, OperationResult
from modkeeper.core.modules.models import ManifestModel, ModuleState, RegistryEntry, RegistrySnapshot, parse_manifest
from modkeeper.core.modules.registry import ModuleRegistry
from modkeeper.core.modules.store import JsonFileStore, MemoryStore

__all__ = [
    "DependencyGraph",
    "JsonFileStore",
    "LifecycleHooks",
    "LifecycleManager",
    "ManifestModel",
    "MemoryStore",
    "ModuleDiscovery",
    "ModuleRegistry",
    "ModuleState",
    "OperationResult",
    "RegistryEntry",
    "RegistrySnapshot",
    "StaticDiscovery",
    "parse_manifest",
]
