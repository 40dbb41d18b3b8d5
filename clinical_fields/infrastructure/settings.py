"""Application Settings.

Combines the configuration manager with application defaults.
"""

import os
from typing import Optional

from clinical_fields.infrastructure.config_manager import ConfigManager, DatabaseConfig, EngineConfig

# Application metadata
APP_NAME = "Clinical-Fields"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Configuration is read lazily on first access, so environment changes made
    before that (for example by tests) are honoured.
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None
        self.app_name = os.getenv("CF_APP_NAME", APP_NAME)

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def engine_config(self) -> EngineConfig:
        return self.config_manager.get_engine_config()

    @property
    def log_level(self) -> str:
        return self.config_manager.get("logging.level", "INFO")

    def get_db_path(self) -> str:
        """Get database path (':memory:' for an in-memory database)."""
        return self.db_config.get_connection_string()

    def reload(self) -> None:
        """Forget the loaded configuration; the next access reads it again."""
        self._config_manager = None


# Global settings instance
settings = Settings()
