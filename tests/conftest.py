from __future__ import annotations

import json
import os

import pytest

from .helpers.fakes import build_system, make_manifest


@pytest.fixture
def chain_system():
    """app -> db -> core, plus an unrelated `extra` module."""
    return build_system(
        make_manifest("core"),
        make_manifest("db", requires=["core"]),
        make_manifest("app", requires=["db"]),
        make_manifest("extra"),
    )


@pytest.fixture
def write_module(tmp_path):
    """Writes <tmp>/modules/<name>/module.json and returns the modules root."""
    root = tmp_path / "modules"

    def write(folder: str, obj) -> str:  # noqa: ANN001
        mod_dir = root / folder
        os.makedirs(mod_dir, exist_ok=True)
        with open(mod_dir / "module.json", "w", encoding="utf-8") as f:
            if isinstance(obj, str):
                f.write(obj)
            else:
                json.dump(obj, f, indent=2)
                f.write("\n")
        return str(root)

    return write
