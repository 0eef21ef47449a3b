from modkeeper.core.config.loader import config_from_dict, default_config_path, load_config, write_default_config
from modkeeper.core.config.models import (
    CriticalityWeights,
    GraphConfig,
    LifecycleConfig,
    ModkeeperConfig,
    RegistryConfig,
)

__all__ = [
    "config_from_dict",
    "default_config_path",
    "load_config",
    "write_default_config",
    "CriticalityWeights",
    "GraphConfig",
    "LifecycleConfig",
    "ModkeeperConfig",
    "RegistryConfig",
]
