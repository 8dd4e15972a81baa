from __future__ import annotations

import csv
import importlib.util
import sys
from pathlib import Path

from tests.utils import AREA, plane_index_db


def _load_script(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / name
    spec = importlib.util.spec_from_file_location(name.replace(".py", ""), module_path)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    spec.loader.exec_module(module)
    return module


def test_benchmark_render_script(tmp_path: Path, monkeypatch) -> None:
    module = _load_script("benchmark_render.py")
    index = plane_index_db(tmp_path)
    output_dir = tmp_path / "bench"
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "benchmark_render.py",
            "--source",
            str(index),
            "--bbox",
            *(repr(value) for value in AREA.as_tuple()),
            "--zoom-level",
            "17",
            "--unit-zoom-level",
            "16",
            "--jobs",
            "1",
            "--jobs",
            "2",
            "--runs",
            "1",
            "--output-dir",
            str(output_dir),
        ],
    )

    assert module.main() == 0
    with (output_dir / "render.csv").open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["jobs"] for row in rows] == ["1", "2"]
    assert all(row["failures"] == "0" for row in rows)
    assert all(int(row["tiles"]) > 0 for row in rows)
