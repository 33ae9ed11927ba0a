from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Project base directory (repo root)
BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_CLUSTER_CONFIG = str(BASE_DIR / "config" / "cluster.yaml")


class Settings(BaseSettings):
    """Process settings with environment variable support (CAUSALSYNC_*)"""

    model_config = SettingsConfigDict(
        env_prefix="CAUSALSYNC_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Network; HOST overrides the listen host from the cluster file when set
    HOST: Optional[str] = None
    CONNECT_TIMEOUT: float = 5.0
    MAX_PAYLOAD_BYTES: int = 64 * 1024

    # Cluster membership
    CLUSTER_CONFIG: str = DEFAULT_CLUSTER_CONFIG

    # Logging / audit trail
    LOG_LEVEL: str = "INFO"
    LOG_PATH: Optional[str] = None


def get_settings(**overrides) -> Settings:
    """Build settings from the environment, applying non-None overrides."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})
