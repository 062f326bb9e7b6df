"""Configuration for the generation broker using pydantic-settings."""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent

# TOML sections whose keys are flattened into top-level settings fields.
_TOML_SECTIONS = ("queue", "credits", "limits", "discord", "provider")


class AppEnv(StrEnum):
    DEV = "dev"
    PRODUCTION = "production"


class TomlSettingsSource(PydanticBaseSettingsSource):
    def __init__(self, settings_cls: type[BaseSettings], toml_file: str | Path):
        super().__init__(settings_cls)
        self.toml_file = Path(toml_file)

    def get_field_value(self, field_name: str, field_data: Any) -> tuple[Any, str, bool]:
        # Not used in this source style
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not self.toml_file.exists():
            return {}

        import tomllib

        try:
            with open(self.toml_file, "rb") as f:
                data = tomllib.load(f)
        except Exception:
            return {}

        if not isinstance(data, dict):
            return {}

        flattened: dict[str, Any] = {}

        # Sections only group keys; each key is already a full field name.
        for section in _TOML_SECTIONS:
            values = data.get(section, {})
            if isinstance(values, dict):
                flattened.update(values)

        for k, v in data.items():
            if k not in _TOML_SECTIONS:
                flattened[k] = v

        return flattened


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # --- Environment ---
    app_env: AppEnv = Field(
        default=AppEnv.PRODUCTION,
        validation_alias=AliasChoices("GENBROKER_APP_ENV", "APP_ENV", "ENV"),
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> AppEnv:
        if v is None:
            return AppEnv.PRODUCTION
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in {"dev", "development", "local", "localhost", "test"}:
                return AppEnv.DEV
        return AppEnv.PRODUCTION

    @field_validator("banned_words", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v_stripped = v.strip()
            if not v_stripped:
                return []
            if v_stripped.startswith("[") and v_stripped.endswith("]"):
                import json
                try:
                    return json.loads(v_stripped)
                except Exception:
                    pass
            return [x.strip() for x in v_stripped.split(",") if x.strip()]
        return v or []

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    # --- Project Paths ---
    project_root: Path = PROJECT_ROOT

    # --- API & Security ---
    internal_api_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GENBROKER_INTERNAL_API_TOKEN", "INTERNAL_API_TOKEN"),
    )
    admin_user_ids: Any = Field(default_factory=list, validation_alias="GENBROKER_ADMIN_USER_IDS")

    # --- Database ---
    database_url: str = Field(
        default="postgresql+psycopg://localhost/genbroker",
        validation_alias=AliasChoices("GENBROKER_DATABASE_URL", "DATABASE_URL"),
    )

    # --- Credits ---
    signup_credit_grant: int = 1000
    monthly_refill_amount: int = 1000
    reservation_ttl_seconds: int = 3600
    low_balance_threshold: int = 100
    default_item_cost: int = 5

    # --- Queue ---
    generation_concurrency: int = 3
    generation_max_attempts: int = 3
    generation_backoff_seconds: float = 5.0
    generation_max_backoff_seconds: float = 300.0
    generation_start_delay_seconds: float = 1.0
    notification_concurrency: int = 10
    notification_max_attempts: int = 3
    notification_backoff_seconds: float = 2.0
    queue_history_ttl_seconds: int = 3600
    queue_history_max_entries: int = 100
    # Run generation and notification workers inside the API process.
    api_run_workers: bool = True
    api_run_scheduler: bool = True

    # --- Maintenance ---
    reservation_sweep_interval_minutes: int = 10
    stale_job_check_interval_minutes: int = 15
    stale_job_minutes: int = 10
    job_retention_days: int = 90
    job_retention_cron: str = "0 2 * * *"

    # --- Limits ---
    max_concurrent_jobs_per_user: int = 3
    max_jobs_per_hour: int = 20
    max_jobs_per_day: int = 50
    prompt_min_length: int = 3
    prompt_max_length: int = 4000
    max_image_quantity: int = 10
    banned_words: Any = Field(
        default_factory=lambda: ["nsfw", "explicit", "adult", "porn", "nude"],
        validation_alias="GENBROKER_BANNED_WORDS",
    )

    # --- Discord ---
    discord_bot_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GENBROKER_DISCORD_BOT_TOKEN", "DISCORD_BOT_TOKEN"),
    )
    discord_api_base: str = "https://discord.com/api/v10"
    discord_timeout_seconds: float = 10.0

    # --- Provider ---
    edenai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("GENBROKER_EDENAI_API_KEY", "EDEN_AI_API_KEY"),
    )
    edenai_base_url: str = "https://api.edenai.run/v2"
    provider_timeout_seconds: float = 300.0

    @field_validator("admin_user_ids", mode="before")
    @classmethod
    def parse_admin_ids(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return [str(x) for x in (v or [])]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Order of precedence:
        # 1. Constructor arguments
        # 2. Environment variables
        # 3. .env file
        # 4. config/genbroker.toml
        # 5. Secrets
        toml_path = os.getenv("GENBROKER_SETTINGS_FILE")
        if not toml_path:
            toml_path = str(PROJECT_ROOT / "config" / "genbroker.toml")

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlSettingsSource(settings_cls, toml_file=toml_path),
            file_secret_settings,
        )


settings = Settings()
