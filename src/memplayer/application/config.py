from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from memplayer.application.scheduler import SchedulerParams
from memplayer.domain.constants import (
    CHUNK_SIZE,
    LEECH_THRESHOLD,
    MAXIMUM_INTERVAL,
    NEW_CARDS_PER_DAY,
    OCCURRENCE_WARNING_THRESHOLD,
    REQUEST_RETENTION,
    REQUEST_TIMEOUT,
    REVIEWS_PER_DAY,
    SYNC_CONCURRENCY,
)

CONFIG_FILE = Path.home() / ".config/memplayer/config.toml"


class AppConfig(BaseSettings):
    """
    Configuration model for memplayer.
    Supports loading from:
    1. Config file (~/.config/memplayer/config.toml)
    2. Environment variables (MEMPLAYER_*)
    3. Manual overrides (CLI), which win over both
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMPLAYER_",
        toml_file=CONFIG_FILE,
        extra="ignore",
    )

    # Paths
    vault_root: Path | None = None
    state_file: Path | None = None
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".config/memplayer/logs")

    # Remote store
    backend: Literal["memory", "postgrest"] = "memory"
    remote_url: str | None = None
    remote_key: str | None = None
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)
    sync_concurrency: int = Field(default=SYNC_CONCURRENCY, ge=1)
    chunk_size: int = Field(default=CHUNK_SIZE, ge=1)

    # Scheduling
    request_retention: float = Field(default=REQUEST_RETENTION, gt=0, lt=1)
    maximum_interval: int = Field(default=MAXIMUM_INTERVAL, ge=1)
    leech_threshold: int = Field(default=LEECH_THRESHOLD, ge=0)

    # Daily goals
    new_cards_per_day: int = Field(default=NEW_CARDS_PER_DAY, ge=0)
    reviews_per_day: int = Field(default=REVIEWS_PER_DAY, ge=0)

    # Integrity warnings
    occurrence_warning_threshold: int = Field(default=OCCURRENCE_WARNING_THRESHOLD, ge=1)

    verbose: int = 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        from pydantic_settings import TomlConfigSettingsSource

        # Earlier sources take priority
        if CONFIG_FILE.exists():
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=CONFIG_FILE),
            )
        return (init_settings, env_settings)

    @field_validator("vault_root", "state_file", mode="before")
    @classmethod
    def resolve_path(cls, v: Any) -> Path | None:
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()

    def scheduler_params(self) -> SchedulerParams:
        return SchedulerParams(
            request_retention=self.request_retention,
            maximum_interval=self.maximum_interval,
            leech_threshold=self.leech_threshold,
        )


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. ~/.config/memplayer/config.toml (if exists)
    3. Environment variables (MEMPLAYER_*)
    4. cli_overrides (passed from Typer, None values dropped)
    """
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    config = AppConfig(**overrides)

    if config.vault_root is None:
        config.vault_root = Path.cwd()

    if config.state_file is None:
        config.state_file = config.vault_root / ".memplayer" / "state.json"

    return config
