import tomllib
from pathlib import Path

import pytest

from phasegate import __version__
from phasegate.config import PhasegateConfig, dumps_toml, load_config, save_config
from phasegate.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "phasegate.toml"
    config = PhasegateConfig.default()
    config.scheduler.lease_timeout_seconds = 60.0
    config.scheduler.max_attempts = 5
    config.worker.heartbeat_interval_seconds = 15.0
    config.ledger.backend = "memory"
    config.ledger.path = "state/ledger.jsonl"
    config.recovery.auto_rollback = True
    config.graph.path = "graphs/legacy.toml"
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.scheduler.lease_timeout_seconds == 60.0
    assert loaded.scheduler.max_attempts == 5
    assert loaded.scheduler.max_append_retries == 8
    assert loaded.worker.heartbeat_interval_seconds == 15.0
    assert loaded.ledger.backend == "memory"
    assert loaded.ledger.path == "state/ledger.jsonl"
    assert loaded.recovery.auto_rollback is True
    assert loaded.graph.path == "graphs/legacy.toml"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == PhasegateConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(PhasegateConfig.default())

    for section in ("[scheduler]", "[worker]", "[ledger]", "[recovery]", "[graph]", "[logging]"):
        assert section in rendered
    assert "lease_timeout_seconds = 30.0" in rendered
    assert "max_attempts = 3" in rendered
    assert "auto_rollback = false" in rendered
    assert tomllib.loads(rendered)["ledger"]["backend"] == "local"


def test_heartbeat_must_fit_three_times_into_lease() -> None:
    config = PhasegateConfig.default()
    config.scheduler.lease_timeout_seconds = 30.0
    config.worker.heartbeat_interval_seconds = 10.0

    with pytest.raises(ConfigError, match="heartbeat_interval_seconds"):
        config.validate()

    config.worker.heartbeat_interval_seconds = 9.5
    config.validate()


def test_invalid_values_are_reported_together(tmp_path: Path) -> None:
    config_path = tmp_path / "phasegate.toml"
    config_path.write_text(
        "[scheduler]\nmax_attempts = 0\n\n[ledger]\nbackend = \"s3\"\n", encoding="utf-8"
    )

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_path)

    message = str(excinfo.value)
    assert "max_attempts" in message
    assert "s3" in message


def test_unknown_key_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="Unknown configuration key"):
        PhasegateConfig.from_dict({"scheduler": {"lease_ttl": 3}})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
