from __future__ import annotations

import logging
import os

from modkeeper.core.logger import LOGGER_NAME, setup_logging
from modkeeper.core.ops_log import OpsLogger, new_trace_id


def _reset_logger():
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def test_setup_logging_writes_rotating_file(tmp_path):
    _reset_logger()
    try:
        logger = setup_logging(str(tmp_path / "logs"), console=False)
        logger.info("enabled %s", "core")
        for h in logger.handlers:
            h.flush()
        with open(tmp_path / "logs" / "modkeeper.log", "r", encoding="utf-8") as f:
            text = f.read()
        assert "| INFO | enabled core" in text
        assert logger.propagate is False
    finally:
        _reset_logger()


def test_setup_logging_is_idempotent(tmp_path):
    _reset_logger()
    try:
        setup_logging(str(tmp_path), console=True)
        logger = setup_logging(str(tmp_path), console=True)
        assert len(logger.handlers) == 2
    finally:
        _reset_logger()


def test_ops_tail_skips_torn_lines(tmp_path):
    ops = OpsLogger(path=str(tmp_path / "ops" / "ops.jsonl"))
    assert ops.tail() == []
    tid = new_trace_id()
    ops.log(trace_id=tid, event="module.install", outcome="ok", details={"module": "core"})
    with open(ops.path, "a", encoding="utf-8") as f:
        f.write('{"truncated":\n')
    ops.log(trace_id=tid, event="module.enable", outcome="rejected")

    records = ops.tail()
    assert [r["event"] for r in records] == ["module.install", "module.enable"]
    assert records[0]["details"] == {"module": "core"}
    assert len(tid) == 16
    assert os.path.isdir(tmp_path / "ops")
