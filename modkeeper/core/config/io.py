from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    error: Optional[str] = None


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.gmtime())


def ensure_dirs(*dirs: str) -> None:
    for d in dirs:
        if d:
            os.makedirs(d, exist_ok=True)


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e}")
    except OSError as e:
        return ReadResult(ok=False, data={}, error=str(e))
    if not isinstance(obj, dict):
        return ReadResult(ok=False, data={}, error="not_object")
    return ReadResult(ok=True, data=obj)


def _enforce_retention(backups_dir: str, prefix: str, *, keep: int) -> None:
    items = [os.path.join(backups_dir, f) for f in os.listdir(backups_dir) if f.startswith(prefix)]
    items.sort(key=os.path.getmtime, reverse=True)
    for p in items[int(keep):]:
        try:
            os.remove(p)
        except OSError:
            pass


def backup_file(path: str, backups_dir: str, *, reason: str, keep: int = 20) -> Optional[str]:
    if not os.path.exists(path):
        return None
    ensure_dirs(backups_dir)
    base = os.path.basename(path)
    out = os.path.join(backups_dir, f"{base}.{_ts()}.{time.time_ns() % 1_000_000:06d}.{reason}")
    shutil.copy2(path, out)
    _enforce_retention(backups_dir, f"{base}.", keep=keep)
    return out


def atomic_write_json(path: str, data: Dict[str, Any], *, backups_dir: Optional[str] = None, keep: int = 20) -> None:
    """Write via temp file + os.replace so readers never see a partial file."""
    directory = os.path.dirname(path) or "."
    ensure_dirs(directory)
    if backups_dir:
        backup_file(path, backups_dir, reason="prewrite", keep=keep)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def snapshot_last_known_good(path: str, last_known_good_dir: str) -> None:
    if not os.path.isfile(path):
        return
    ensure_dirs(last_known_good_dir)
    shutil.copy2(path, os.path.join(last_known_good_dir, os.path.basename(path)))


def recover_from_corrupt(path: str, *, backups_dir: str, last_known_good_dir: str, keep: int = 20) -> Tuple[Dict[str, Any], bool]:
    """
    Move a corrupt file to backups/<name>.<ts>.corrupt and restore the last
    known good copy if there is one. Returns (data, recovered).
    """
    ensure_dirs(backups_dir, last_known_good_dir)
    if os.path.exists(path):
        base = os.path.basename(path)
        shutil.move(path, os.path.join(backups_dir, f"{base}.{_ts()}.corrupt"))
        _enforce_retention(backups_dir, f"{base}.", keep=keep)
    rr = read_json_file(os.path.join(last_known_good_dir, os.path.basename(path)))
    if rr.ok:
        atomic_write_json(path, rr.data)
        return rr.data, True
    return {}, False
