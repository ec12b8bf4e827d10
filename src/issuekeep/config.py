"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (ISSUEKEEP__REMOTE__OWNER=acme)
  2. issuekeep.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional: all fields have sensible defaults. Durations
are validated at construction so that a misconfigured TTL or rate window
fails at startup rather than on the first request.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("issuekeep")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")


def _find_config_file() -> str | None:
    """Return the path of the first issuekeep.yaml found, or None."""
    candidates = [
        Path("issuekeep.yaml"),
        Path(platformdirs.user_config_dir("issuekeep")) / "issuekeep.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class RemoteSettings(BaseModel):
    base_url: str = "https://api.github.com"
    owner: str = ""
    repo: str = ""
    token: str | None = None
    # Login of the bot account that writes registry records. Records found
    # under a different author are rejected as unverified.
    bot_login: str | None = None
    timeout_seconds: PositiveFloat = 30.0


class NamespaceSettings(BaseModel):
    enabled: bool = True
    branch: str | None = None
    default_branch: str = "main"
    allowed_branches: list[str] = []


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    list_ttl_seconds: PositiveFloat = 60.0
    page_ttl_seconds: PositiveFloat = 300.0
    comments_ttl_seconds: PositiveFloat = 180.0
    reactions_ttl_seconds: PositiveFloat = 120.0
    ban_check_ttl_seconds: PositiveFloat = 600.0
    profile_ttl_seconds: PositiveFloat = 24 * 60 * 60.0
    document_max_age_minutes: PositiveFloat = 30.0
    stale_ttl_seconds: PositiveFloat = 24 * 60 * 60.0
    max_entries: PositiveInt = 500
    cleanup_interval_hours: PositiveInt = 6

    @model_validator(mode="after")
    def _stale_ttl_covers_fresh_ttls(self) -> CacheSettings:
        fresh = max(
            self.list_ttl_seconds,
            self.page_ttl_seconds,
            self.comments_ttl_seconds,
            self.reactions_ttl_seconds,
        )
        if self.stale_ttl_seconds < fresh:
            raise ValueError(
                f"stale_ttl_seconds ({self.stale_ttl_seconds}) must not be shorter "
                f"than the longest fresh TTL ({fresh})"
            )
        return self


class CoordinationSettings(BaseModel):
    # Observed read-after-write indexing lag of the remote store; not a
    # documented guarantee.
    inflight_grace_seconds: float = Field(default=5.0, ge=0)
    reaction_switch_delay_seconds: float = Field(default=0.3, ge=0)


class RateWindow(BaseModel):
    seconds: PositiveFloat
    max_count: PositiveInt


class RateLimitRule(BaseModel):
    cooldown_seconds: float = Field(default=0.0, ge=0)
    windows: list[RateWindow] = []


class RateLimitSettings(BaseModel):
    comment: RateLimitRule = RateLimitRule(
        cooldown_seconds=5.0,
        windows=[
            RateWindow(seconds=60, max_count=5),
            RateWindow(seconds=300, max_count=10),
        ],
    )
    reaction: RateLimitRule = RateLimitRule(
        cooldown_seconds=1.0,
        windows=[RateWindow(seconds=60, max_count=10)],
    )


class ThreadSettings(BaseModel):
    page_size: int = Field(default=10, ge=1, le=100)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: ISSUEKEEP__CACHE__MAX_ENTRIES=1000
        env_prefix="ISSUEKEEP__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    remote: RemoteSettings = RemoteSettings()
    namespace: NamespaceSettings = NamespaceSettings()
    cache: CacheSettings = CacheSettings()
    coordination: CoordinationSettings = CoordinationSettings()
    rate_limits: RateLimitSettings = RateLimitSettings()
    threads: ThreadSettings = ThreadSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
