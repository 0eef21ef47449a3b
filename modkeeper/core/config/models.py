from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field

from modkeeper.core.events.bus import EventBusConfig


class CriticalityWeights(BaseModel):
    """score = direct_dependents * direct + impact_radius * radius"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    direct_dependents: float = Field(default=1.0, ge=0.0)
    impact_radius: float = Field(default=0.5, ge=0.0)


class RegistryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = os.path.join("runtime", "modules.json")
    backup_keep: int = Field(default=20, ge=1, le=200)
    cache_ttl_seconds: float = Field(default=3600.0, ge=0.0)
    lock_timeout_seconds: float = Field(default=10.0, gt=0.0, le=600.0)


class GraphConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hub_threshold: int = Field(default=5, ge=1)
    criticality: CriticalityWeights = Field(default_factory=CriticalityWeights)


class LifecycleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_commit_attempts: int = Field(default=3, ge=1, le=20)
    ops_log_path: str = os.path.join("logs", "ops.jsonl")


class ModkeeperConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    modules_root: str = "modules"
    log_dir: str = "logs"
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    events: EventBusConfig = Field(default_factory=EventBusConfig)
