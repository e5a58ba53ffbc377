"""Configuration management using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from IMAGE_BRIDGE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGE_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "universal-image-bridge"
    extension_name: str = "universal-nano-banana"

    # Storage
    settings_path: Path = Path("data/settings.json")
    media_dir: Path = Path("data/media")
    save_debounce_seconds: float = 1.0

    # Host application (avatar source + headers merged into every generation request)
    host_base_url: str = "http://localhost:8000"
    default_headers: dict[str, str] = {}

    # Per-call timeout for the generation request and hosted-image fetch
    request_timeout: float = 120.0

    # Server settings
    backend_host: str = "localhost"
    backend_port: int = 8000
    frontend_port: int = 3000


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
