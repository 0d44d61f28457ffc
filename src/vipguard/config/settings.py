from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings with environment variable support (VIPGUARD_*)."""

    model_config = SettingsConfigDict(env_prefix="VIPGUARD_", env_file=".env", extra="ignore")

    # Cluster file and secret
    CONFIG_PATH: str = "config/cluster.yaml"
    AUTH_SECRET: Optional[SecretStr] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    METRICS_INTERVAL: float = 30.0

    # Runtime state export
    STATE_FILE: Optional[str] = None
    STATUS_ENABLED: bool = True
    STATUS_HOST: str = "127.0.0.1"
    STATUS_PORT: int = 8765


# Global settings instance
settings = Settings()
