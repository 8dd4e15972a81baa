from __future__ import annotations

import json
import logging
from pathlib import Path

from laz2hillshade.logging_utils import HumanFormatter, LogOptions, configure_logging


def test_configure_logging_writes_json(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "laz2hillshade.jsonl"
    configure_logging(LogOptions(log_file=log_path))
    logger = logging.getLogger("laz2hillshade.test")
    logger.info("hello", extra={"unit": "16/32768/32767"})
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    assert lines
    payload = json.loads(lines[-1])
    assert payload["message"] == "hello"
    assert payload["level"] == "info"
    assert payload["logger"] == "laz2hillshade.test"
    assert payload["extra"]["unit"] == "16/32768/32767"


def test_console_level_follows_verbosity() -> None:
    root = configure_logging(LogOptions(quiet=True))
    assert root.handlers[0].level == logging.WARNING
    root = configure_logging(LogOptions(verbose=1))
    assert root.handlers[0].level == logging.DEBUG
    root = configure_logging(LogOptions())
    assert root.handlers[0].level == logging.INFO
    assert len(root.handlers) == 1


def test_human_formatter_prefixes_unit() -> None:
    formatter = HumanFormatter("%(levelname)s: %(message)s")
    record = logging.LogRecord("laz2hillshade", logging.ERROR, __file__, 1, "boom", None, None)
    assert formatter.format(record) == "ERROR: boom"
    record.unit = "14/1/2"
    assert formatter.format(record) == "[14/1/2] ERROR: boom"


def test_json_console(capsys) -> None:
    configure_logging(LogOptions(json_console=True))
    logging.getLogger("laz2hillshade.test").warning("careful")
    payload = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert payload["level"] == "warning"
    assert "extra" not in payload
