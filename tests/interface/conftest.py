import pytest


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's config file and MEMPLAYER_* variables out of interface tests."""
    monkeypatch.setattr(
        "memplayer.application.config.CONFIG_FILE", tmp_path / "no-config" / "config.toml"
    )
    for var in ("MEMPLAYER_BACKEND", "MEMPLAYER_VAULT_ROOT", "MEMPLAYER_STATE_FILE"):
        monkeypatch.delenv(var, raising=False)
