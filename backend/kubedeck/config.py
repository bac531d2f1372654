from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings sourced from environment variables and `.env`.

    Cluster declarations, the active selection and the encryption key live in
    the YAML file pointed to by ``config_path`` (see ``core.file_config``).
    """

    model_config = SettingsConfigDict(env_file=(".env",), env_file_encoding="utf-8", extra="ignore")

    app_name: str = "kubedeck"
    app_version: str = "1.0.0"
    app_env: Literal["development", "production", "test"] = "development"
    host: str = "0.0.0.0"
    port: int | None = None

    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_date_format: str = "%Y-%m-%d %H:%M:%S"

    config_path: str = "configs/config.yaml"
    # Overrides database.url from the YAML file when set
    database_url: str | None = None

    health_probe_interval_seconds: float = Field(default=30.0, gt=0)
    health_probe_initial_delay_seconds: float = Field(default=5.0, ge=0)
    health_probe_workers: int = Field(default=1, ge=1)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
