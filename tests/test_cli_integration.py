import json
from pathlib import Path
from typing import Any

from click.testing import CliRunner, Result

from phasegate.cli import cli
from phasegate.config import load_config, save_config


def _quiet_logging(config_path: Path) -> None:
    config = load_config(config_path)
    config.logging.level = "CRITICAL"
    save_config(config_path, config)


def _ok(runner: CliRunner, args: list[str]) -> Result:
    result = runner.invoke(cli, args)
    assert result.exit_code == 0, result.output
    return result


def _json(runner: CliRunner, args: list[str]) -> Any:
    return json.loads(_ok(runner, args).output)


def _init(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    init_result = _ok(runner, ["init"])
    assert "Initialized phasegate" in init_result.output
    assert "Auto rollback: off" in init_result.output
    assert (tmp_path / "phasegate.toml").exists()
    assert (tmp_path / "phasegate-graph.toml").exists()
    _quiet_logging(tmp_path / "phasegate.toml")
    return runner


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    validate_result = _ok(runner, ["validate"])
    assert "Task graph OK: 4 phases, 5 tasks" in validate_result.output

    first = _json(runner, ["claim", "w1"])
    assert first["assigned"] is True
    assert (first["task_id"], first["attempt"], first["lease_token"]) == ("assess-inventory", 1, 1)

    denied = runner.invoke(cli, ["claim", "w2", "--task", "characterization-tests"])
    assert denied.exit_code != 0
    assert "phase(assessment).status == Complete" in denied.output

    complete_result = _ok(runner, ["complete", "w1", "assess-inventory", "--token", "1"])
    assert "Completed assess-inventory (sequence 2)" in complete_result.output

    second = _json(runner, ["claim", "w1"])
    assert second["task_id"] == "assess-risks"
    _ok(runner, ["complete", "w1", "assess-risks", "--metric", "reviewed=true"])

    status = _json(runner, ["status"])
    phases = {item["id"]: item["status"] for item in status["phases"]}
    assert phases == {
        "assessment": "Complete",
        "safety-net": "Open",
        "transformation": "Locked",
        "validation": "Locked",
    }

    no_work = _json(runner, ["claim", "w2", "--role", "coder"])
    assert no_work["assigned"] is False
    assert no_work["reason"] == "waiting on leased tasks or dependencies"

    tester = _json(runner, ["claim", "w2", "--role", "tester"])
    assert tester["task_id"] == "characterization-tests"
    fail_result = _ok(runner, ["fail", "w2", "characterization-tests", "--error", "flaky"])
    assert "retry as attempt 2" in fail_result.output

    retry = _json(runner, ["claim", "w2", "--role", "tester"])
    assert (retry["task_id"], retry["attempt"]) == ("characterization-tests", 2)
    _ok(runner, ["complete", "w2", "characterization-tests"])

    _ok(runner, ["metric", "coverage=0.95"])
    for expected in ("transform-modules", "validate-behaviour"):
        claimed = _json(runner, ["claim", "w3"])
        assert claimed["task_id"] == expected
        _ok(runner, ["complete", "w3", expected, "--payload", '{"ok": true}'])

    verbose = _json(runner, ["status", "--verbose"])
    assert {item["status"] for item in verbose["phases"]} == {"Complete"}
    assert verbose["metrics"]["assess-risks.reviewed"] is True

    done = _json(runner, ["claim", "w1"])
    assert done["reason"] == "all phases complete"

    _ok(runner, ["metric", "coverage=0.5"])
    regressions = _json(runner, ["regressions"])
    assert [item["phase_id"] for item in regressions] == ["transformation"]

    record = _json(runner, ["rollback", "transformation", "--reason", "coverage dropped"])
    assert record["affected_phases"] == ["transformation", "validation"]
    assert record["affected_tasks"] == ["transform-modules", "validate-behaviour"]

    status = _json(runner, ["status"])
    phases = {item["id"]: item["status"] for item in status["phases"]}
    assert phases["safety-net"] == "Complete"
    assert phases["transformation"] == "Locked"
    assert "coverage >= 0.90" in status["phases"][2]["unmet"]

    replay = _json(runner, ["replay", "--upto", "2"])
    assert replay["sequence"] == 2
    assert replay["tasks"]["assess-inventory"]["status"] == "Done"

    archive_result = _ok(runner, ["archive"])
    assert "Archived ledger to" in archive_result.output
    assert list((tmp_path / ".phasegate" / "archive").glob("ledger-*.jsonl"))


def test_force_resolve_and_sweep_commands(tmp_path: Path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)
    config = load_config(tmp_path / "phasegate.toml")
    config.scheduler.max_attempts = 1
    save_config(tmp_path / "phasegate.toml", config)

    sweep_result = _ok(runner, ["sweep"])
    assert "No expired leases." in sweep_result.output

    _json(runner, ["claim", "w1"])
    terminal = runner.invoke(cli, ["fail", "w1", "assess-inventory", "--error", "broken"])
    assert terminal.exit_code != 0
    assert "failed terminally" in terminal.output

    status = _json(runner, ["status"])
    assert status["terminal_failures"] == [
        {"task_id": "assess-inventory", "attempt": 1, "last_error": "broken"}
    ]

    resolved = _ok(runner, ["force-resolve", "assess-inventory", "--reason", "done by hand"])
    assert "RolledBack" in resolved.output
    assert _json(runner, ["claim", "w1"])["task_id"] == "assess-risks"

    again = runner.invoke(cli, ["force-resolve", "assess-risks", "--reason", "nope"])
    assert again.exit_code != 0
    assert "Only terminally failed tasks" in again.output


def test_invalid_graph_blocks_startup(tmp_path: Path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)
    (tmp_path / "phasegate-graph.toml").write_text(
        """
[[phases]]
id = "A"
order = 0

[[tasks]]
id = "T1"
phase = "A"
depends_on = ["T2"]

[[tasks]]
id = "T2"
phase = "A"
depends_on = ["T1"]
""",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["validate"])

    assert result.exit_code != 0
    assert "Dependency cycle" in result.output


def test_bad_metric_assignment_is_a_usage_error(tmp_path: Path, monkeypatch) -> None:
    runner = _init(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["metric", "coverage"])

    assert result.exit_code == 2
    assert "Expected key=value" in result.output
