from pathlib import Path

import pytest
from pydantic import ValidationError

from memplayer.application.config import AppConfig, resolve_config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    monkeypatch.setattr("memplayer.application.config.CONFIG_FILE", path)
    for var in ("MEMPLAYER_BACKEND", "MEMPLAYER_REQUEST_RETENTION", "MEMPLAYER_VAULT_ROOT"):
        monkeypatch.delenv(var, raising=False)
    return path


def test_defaults_resolve_paths(config_file, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = resolve_config()
    assert config.vault_root == Path.cwd()
    assert config.state_file == Path.cwd() / ".memplayer" / "state.json"
    assert config.backend == "memory"
    assert config.request_retention == 0.9


def test_toml_then_env_then_cli(config_file, monkeypatch):
    config_file.write_text('backend = "postgrest"\nrequest_retention = 0.8\nleech_threshold = 3\n')
    config = resolve_config()
    assert (config.backend, config.request_retention, config.leech_threshold) == ("postgrest", 0.8, 3)

    monkeypatch.setenv("MEMPLAYER_REQUEST_RETENTION", "0.85")
    assert resolve_config().request_retention == 0.85

    config = resolve_config({"request_retention": 0.95, "backend": None})
    assert config.request_retention == 0.95
    # None overrides are dropped, so the file value survives
    assert config.backend == "postgrest"


def test_vault_root_expands_user(config_file, mock_home):
    config = resolve_config({"vault_root": "~/notes"})
    assert config.vault_root == (mock_home / "notes").resolve()
    assert config.state_file == config.vault_root / ".memplayer" / "state.json"


def test_explicit_state_file(config_file, tmp_path):
    config = resolve_config({"vault_root": tmp_path, "state_file": tmp_path / "s.json"})
    assert config.state_file == (tmp_path / "s.json").resolve()


@pytest.mark.parametrize(
    "override",
    [
        {"request_retention": 1.5},
        {"backend": "sqlite"},
        {"sync_concurrency": 0},
        {"request_timeout": 0},
    ],
)
def test_invalid_values_rejected(config_file, override):
    with pytest.raises(ValidationError):
        AppConfig(**override)


def test_scheduler_params(config_file):
    params = AppConfig(request_retention=0.85, maximum_interval=100, leech_threshold=2).scheduler_params()
    assert (params.request_retention, params.maximum_interval, params.leech_threshold) == (0.85, 100, 2)
