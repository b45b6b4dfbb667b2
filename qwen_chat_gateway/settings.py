from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    backend_base_url: str = "https://chat.qwen.ai"
    backend_api_keys: str = ""
    backend_ssxmod_itna: str | None = None
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float = 120.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 5.0
    default_model: str = "qwen-max"
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    upload_timeout_seconds: float = 30.0
    upload_max_file_bytes: int = 100 * 1024 * 1024
    upload_max_retries: int = 3
    upload_retry_base_delay_seconds: float = 1.0
    content_cache_max_entries: int | None = None
    stream_max_buffer_chars: int = 1024 * 1024
    image_edit_fallback_to_generate: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def backend_api_keys_list(self) -> list[str]:
        return _split_csv(self.backend_api_keys)

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
