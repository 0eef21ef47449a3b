from __future__ import annotations

"""
Module contract models (manifest + lifecycle state + registry entry).

The manifest is the contract-of-record for a module. It is validated once, at
the discovery boundary, and is immutable afterwards: planning code passes
manifests around freely and snapshots them without copying.
"""

import re
import time
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


def _ordered_unique(v: Any) -> Tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, (list, tuple, set, frozenset)):
        raise ValueError("expected a list of module names")
    out: list[str] = []
    seen: set[str] = set()
    for item in v:
        s = str(item or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return tuple(out)


class ModuleState(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    ENABLED = "enabled"
    DISABLED = "disabled"
    FAILED = "failed"
    UPDATING = "updating"

    def can_install(self) -> bool:
        return self in (ModuleState.NOT_INSTALLED, ModuleState.FAILED)

    def can_enable(self) -> bool:
        return self in (ModuleState.INSTALLED, ModuleState.DISABLED)

    def can_disable(self) -> bool:
        return self is ModuleState.ENABLED

    def can_remove(self) -> bool:
        return self in (ModuleState.INSTALLED, ModuleState.DISABLED, ModuleState.FAILED)

    def can_update(self) -> bool:
        return self in (ModuleState.INSTALLED, ModuleState.ENABLED, ModuleState.DISABLED)

    def is_installed(self) -> bool:
        return self is not ModuleState.NOT_INSTALLED

    def is_active(self) -> bool:
        return self is ModuleState.ENABLED

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class ManifestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    version: str = Field(default="1.0.0", min_length=1)
    display_name: str = Field(default="", max_length=80)
    description: str = Field(default="", max_length=300)
    author: str = ""
    required_dependencies: Tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("required_dependencies", "dependencies"),
    )
    optional_dependencies: Tuple[str, ...] = ()
    conflicts: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _default_display_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("display_name") and data.get("name"):
            data = dict(data)
            data["display_name"] = str(data["name"]).strip()[:80]
        return data

    @field_validator("name")
    @classmethod
    def _name_safe(cls, v: str) -> str:
        v = str(v or "").strip()
        if not _NAME_RE.fullmatch(v):
            raise ValueError("name contains invalid characters")
        return v

    @field_validator("version")
    @classmethod
    def _version_trimmed(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v:
            raise ValueError("version required")
        return v

    @field_validator("required_dependencies", "optional_dependencies", mode="before")
    @classmethod
    def _norm_ordered(cls, v: Any) -> Tuple[str, ...]:
        return _ordered_unique(v)

    @field_validator("conflicts", "provides", mode="before")
    @classmethod
    def _norm_sets(cls, v: Any) -> Tuple[str, ...]:
        return tuple(sorted(_ordered_unique(v)))

    @model_validator(mode="after")
    def _no_self_reference(self) -> "ManifestModel":
        for field_name in ("required_dependencies", "optional_dependencies", "conflicts"):
            if self.name in getattr(self, field_name):
                raise ValueError(f"{field_name} must not reference the module itself")
        both = set(self.required_dependencies) & set(self.optional_dependencies)
        if both:
            raise ValueError(f"modules listed as both required and optional: {', '.join(sorted(both))}")
        return self

    def has_dependency(self, name: str) -> bool:
        return name in self.required_dependencies

    def has_optional_dependency(self, name: str) -> bool:
        return name in self.optional_dependencies

    def conflicts_with(self, name: str) -> bool:
        return name in self.conflicts

    def provides_capability(self, capability: str) -> bool:
        return capability in self.provides

    def all_dependencies(self) -> Tuple[str, ...]:
        return self.required_dependencies + self.optional_dependencies


def parse_manifest(raw: Any) -> Tuple[Optional[ManifestModel], Optional[str]]:
    """
    Validate a raw manifest dict. Returns (manifest, None) or (None, error).
    """
    if isinstance(raw, ManifestModel):
        return raw, None
    if not isinstance(raw, dict):
        return None, "manifest is not an object"
    try:
        return ManifestModel.model_validate(raw), None
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(x) for x in err.get("loc", ())) or "manifest"
            problems.append(f"{loc}: {err.get('msg', 'invalid')}")
        return None, "; ".join(problems)[:300]


class RegistryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    manifest: ManifestModel
    state: ModuleState
    last_modified: float = Field(default_factory=lambda: time.time())
    revision: int = Field(default=0, ge=0)
    # Set only while state is UPDATING: the state to fall back to.
    previous_state: Optional[ModuleState] = None

    @property
    def name(self) -> str:
        return self.manifest.name


class RegistrySnapshot(BaseModel):
    """
    Point-in-time view of every known module, used for one planning call.
    Manifests of persisted entries take precedence over discovered ones.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    manifests: Dict[str, ManifestModel] = Field(default_factory=dict)
    states: Dict[str, ModuleState] = Field(default_factory=dict)
    revisions: Dict[str, int] = Field(default_factory=dict)

    def state(self, name: str) -> ModuleState:
        return self.states.get(name, ModuleState.NOT_INSTALLED)

    def revision(self, name: str) -> int:
        return int(self.revisions.get(name, 0))

    def revisions_for(self, names: Iterable[str]) -> Dict[str, int]:
        return {n: self.revision(n) for n in names}

    def with_manifest(self, manifest: ManifestModel) -> "RegistrySnapshot":
        manifests = dict(self.manifests)
        manifests[manifest.name] = manifest
        return RegistrySnapshot(manifests=manifests, states=dict(self.states), revisions=dict(self.revisions))
