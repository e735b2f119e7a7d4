"""Settings for the Kidato sync core."""

from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    service_name: str = _env_field("kidato-sync", "SERVICE_NAME")
    environment: str = _env_field("production", "KIDATO_ENV", "APP_ENV", "ENVIRONMENT")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")

    obs_enabled: bool = _env_field(True, "OBS_ENABLED")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    # Remote collection names, as seeded in the backend project
    users_collection: str = _env_field("users", "USERS_COLLECTION")
    files_collection: str = _env_field("files", "FILES_COLLECTION")
    schools_collection: str = _env_field("schools", "SCHOOLS_COLLECTION")
    courses_collection: str = _env_field("courses", "COURSES_COLLECTION")

    default_role: str = _env_field("student", "DEFAULT_ROLE")

    # Blob store
    download_base_url: str = _env_field("http://localhost:9199/blobs", "DOWNLOAD_BASE_URL")
    upload_chunk_size: int = _env_field(256 * 1024, "UPLOAD_CHUNK_SIZE")

    # Redis-backed document source
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = _env_field("kidato", "REDIS_KEY_PREFIX")
    redis_poll_interval_seconds: float = _env_field(1.0, "REDIS_POLL_INTERVAL_SECONDS")
    redis_error_backoff_seconds: float = _env_field(0.5, "REDIS_ERROR_BACKOFF_SECONDS")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("upload_chunk_size", mode="after")
    def _positive_chunk(cls, value: int) -> int:  # type: ignore[override]
        if value <= 0:
            raise ValueError("upload_chunk_size must be positive")
        return value

    # Environment helpers
    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development")


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
