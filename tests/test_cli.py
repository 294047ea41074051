"""Smoke tests for the parabench CLI."""

import json
import sys
from pathlib import Path

from typer.testing import CliRunner

# Add repo root to path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from parabench.cli.main import app

runner = CliRunner()


def test_partition_command():
    result = runner.invoke(app, ["partition", "10", "4"])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines == [
        "worker 0: [0, 3) size=3",
        "worker 1: [3, 6) size=3",
        "worker 2: [6, 8) size=2",
        "worker 3: [8, 10) size=2",
    ]


def test_partition_rejects_zero_workers():
    result = runner.invoke(app, ["partition", "10", "0"])
    assert result.exit_code != 0


def test_compare_writes_json_report(tmp_path):
    out = tmp_path / "report.json"
    result = runner.invoke(
        app,
        [
            "compare",
            "--workload", "sqrt-sum",
            "--size", "1000",
            "--workers", "2",
            "-s", "serial", "-s", "atomic", "-s", "partitioned",
            "-b", "none", "-b", "threads",
            "--json", str(out),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "agreement=PASS" in result.output

    report = json.loads(out.read_text())
    assert report["agreement_passed"] is True
    assert [(r["strategy"], r["backend"]) for r in report["records"]] == [
        ("serial", "none"),
        ("serial", "threads"),
        ("atomic", "none"),
        ("atomic", "threads"),
        ("partitioned", "none"),
        ("partitioned", "threads"),
    ]


def test_compare_rejects_bad_workers():
    result = runner.invoke(app, ["compare", "--workers", "0", "-b", "none"])
    assert result.exit_code != 0


def test_race_command_small():
    result = runner.invoke(app, ["race", "--increments", "2000", "--workers", "2", "--runs", "2"])
    assert result.exit_code == 0, result.output
    assert "atomic result: 2,000" in result.output
