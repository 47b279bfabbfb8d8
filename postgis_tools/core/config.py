# postgis_tools/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List
from pathlib import Path
import logging
from functools import lru_cache

# Configure logger
logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Application info
    PROJECT_NAME: str = "PostGIS Tools"
    API_V1_STR: str = "/api/v1"
    VERSION: str = "1.0.0"
    DESCRIPTION: str = "PostGIS schema metadata and data editing tools"

    # Local configuration (field overlay + last connection settings)
    CONFIG_DIR: Path = Path.home() / ".postgis_tools"
    CONFIG_FILE_NAME: str = "config.json"

    # Optional connection used at startup; otherwise set through the API
    DATABASE_URL: Optional[str] = None
    POSTGRES_HOST: Optional[str] = None
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: Optional[str] = None
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None

    # Driver timeouts in seconds
    DB_CONNECT_TIMEOUT: int = 5
    DB_COMMAND_TIMEOUT: int = 60

    # Editable grid
    DATA_ROW_LIMIT: int = 200

    # Server settings
    HOST: str = "127.0.0.1"
    PORT: int = 8001
    LOG_LEVEL: str = "INFO"

    # CORS settings
    CORS_ORIGINS: List[str] = ["*"]

    @property
    def CONFIG_PATH(self) -> Path:
        """Full path to the JSON configuration file"""
        return self.CONFIG_DIR / self.CONFIG_FILE_NAME

    @property
    def has_startup_connection(self) -> bool:
        return bool(self.DATABASE_URL or (self.POSTGRES_HOST and self.POSTGRES_DB))

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._ensure_config_dir()

    def _ensure_config_dir(self):
        """Create the configuration directory if it is missing"""
        try:
            self.CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # The store reports the failure again when it actually writes
            logger.error(f"Failed to create config directory {self.CONFIG_DIR}: {e}")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


# Cache the settings instance
@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Create settings instance for import
settings = get_settings()
