from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from reciter.domain.constants import (
    DATABASE_FILENAME,
    DEBOUNCE_SECONDS,
    DEFAULT_MIRROR_URL,
    POLL_INTERVAL,
    REQUEST_TIMEOUT,
    STORAGE_KEY,
)

CONFIG_FILES = [
    Path.home() / ".config/reciter/config.toml",
    Path.home() / ".reciter.toml",
]


class AppConfig(BaseSettings):
    """
    Configuration model for reciter.
    Supports loading from:
    1. Environment variables (RECITER_*)
    2. Config file (~/.config/reciter/config.toml or ~/.reciter.toml)
    3. Manual overrides (CLI)
    """

    model_config = SettingsConfigDict(
        env_prefix="RECITER_",
        toml_file=CONFIG_FILES,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local/share/reciter")
    storage_key: str = STORAGE_KEY
    seed: bool = True

    # Remote mirror
    backend: Literal["auto", "offline", "memory", "http"] = "auto"
    mirror_url: str = DEFAULT_MIRROR_URL
    user_id: str | None = None
    poll_interval: float = POLL_INTERVAL
    debounce_seconds: float = DEBOUNCE_SECONDS
    request_timeout: float = REQUEST_TIMEOUT

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

        # First existing file wins; CLI overrides are applied last by resolve_config
        toml_file = next((f for f in CONFIG_FILES if f.exists()), None)

        if toml_file:
            return (
                init_settings,
                env_settings,
                TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            )
        return (init_settings, env_settings)

    @field_validator("data_dir", mode="before")
    @classmethod
    def resolve_data_dir(cls, v: Any) -> Path:
        return Path(v).expanduser().resolve()

    @property
    def database_path(self) -> Path:
        return self.data_dir / DATABASE_FILENAME

    @property
    def sync_enabled(self) -> bool:
        return self.backend != "offline" and bool(self.user_id)


def resolve_config(cli_overrides: dict[str, Any] | None = None) -> AppConfig:
    """
    Multi-layered configuration resolution.
    1. Defaults in AppConfig
    2. TOML config file (if exists)
    3. Environment variables (RECITER_*)
    4. cli_overrides (passed from Typer)
    """
    # Typer passes None for options the user did not give
    overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    return AppConfig(**overrides)
