from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from modkeeper.core.config.io import atomic_write_json, read_json_file
from modkeeper.core.config.models import ModkeeperConfig
from modkeeper.core.errors import ConfigError


ENV_CONFIG_PATH = "MODKEEPER_CONFIG"
DEFAULT_CONFIG_PATH = os.path.join("config", "modkeeper.json")

logger = logging.getLogger(__name__)


def default_config_path() -> str:
    return os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH


def config_from_dict(raw: Dict[str, Any], *, source: str = "<dict>") -> ModkeeperConfig:
    try:
        return ModkeeperConfig.model_validate(raw)
    except ValidationError as e:
        problems = [f"{'.'.join(str(x) for x in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in e.errors()]
        raise ConfigError(f"Invalid configuration in {source}: {'; '.join(problems)}", path=source, problems=problems) from e


def load_config(path: Optional[str] = None) -> ModkeeperConfig:
    """
    Load and validate the JSON config. A missing file yields defaults; an
    unreadable or invalid one raises ConfigError.
    """
    path = path or default_config_path()
    rr = read_json_file(path)
    if not rr.ok:
        if rr.error == "missing":
            logger.info("config %s not found; using defaults", path)
            return ModkeeperConfig()
        raise ConfigError(f"Cannot read configuration {path}: {rr.error}", path=path)
    return config_from_dict(rr.data, source=path)


def write_default_config(path: str) -> ModkeeperConfig:
    cfg = ModkeeperConfig()
    atomic_write_json(path, cfg.model_dump(mode="json"))
    return cfg
