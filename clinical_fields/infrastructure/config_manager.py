"""Configuration Manager.

This module loads the engine configuration (database location, translation
languages, recalculation batching, log level) from environment variables or a
JSON file and validates it with Pydantic models before use.

Architecture:
    - Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation prevents runtime errors
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Database configuration.

    Parameters:
        db_type: Type of database (only 'duckdb' is supported)
        db_path: Path to database file, or ':memory:'
    """

    db_type: str = Field(default="duckdb", description="Database type")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        supported_types = ["duckdb"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")

        return str(db_path_obj)

    def get_connection_string(self) -> str:
        """Get the DuckDB database path (':memory:' when unset)."""
        return self.db_path or ":memory:"


class EngineConfig(BaseModel):
    """Field engine settings.

    Parameters:
        default_language: Language stored category and field texts are written in
        fallback_language: Language used when a requested translation is missing
        recalculation_batch_size: Rows per batch when recalculating a field for all entities
    """

    default_language: str = Field(default="fr", min_length=2, description="Language of stored texts")
    fallback_language: str = Field(default="en", min_length=2, description="Translation fallback")
    recalculation_batch_size: int = Field(default=500, ge=1, description="Recalculation batch size")


class ConfigManager:
    """Configuration manager for the field engine.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        engine_config = config.get_engine_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with "database", "engine"
                and "logging" sections
        """
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._engine_config: Optional[EngineConfig] = None

    @classmethod
    def from_environment(cls) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CF_DB_TYPE: Database type (duckdb)
            - CF_DB_PATH: Path to database file
            - CF_DEFAULT_LANGUAGE: Language of stored texts
            - CF_FALLBACK_LANGUAGE: Translation fallback language
            - CF_RECALC_BATCH_SIZE: Recalculation batch size
            - CF_LOG_LEVEL: Logging level

        A ``.env`` file in the project root is loaded first when present.

        Returns:
            ConfigManager instance
        """
        env_path = Path(__file__).parent.parent.parent / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        engine: Dict[str, Any] = {}
        if os.getenv("CF_DEFAULT_LANGUAGE"):
            engine["default_language"] = os.getenv("CF_DEFAULT_LANGUAGE")
        if os.getenv("CF_FALLBACK_LANGUAGE"):
            engine["fallback_language"] = os.getenv("CF_FALLBACK_LANGUAGE")
        if os.getenv("CF_RECALC_BATCH_SIZE"):
            engine["recalculation_batch_size"] = int(os.getenv("CF_RECALC_BATCH_SIZE"))

        config_data = {
            "database": {
                "db_type": os.getenv("CF_DB_TYPE", "duckdb"),
                "db_path": os.getenv("CF_DB_PATH"),
            },
            "engine": engine,
            "logging": {
                "level": os.getenv("CF_LOG_LEVEL", "INFO"),
            },
        }

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        """Get database configuration (validated on first access)."""
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_engine_config(self) -> EngineConfig:
        """Get field engine configuration (validated on first access)."""
        if self._engine_config is None:
            self._engine_config = EngineConfig(**self._config_data.get("engine", {}))
        return self._engine_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "engine.default_language")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def get_database_config() -> DatabaseConfig:
    """Load the database configuration from the environment.

    Defaults to an in-memory DuckDB database when nothing is configured.
    """
    config_manager = ConfigManager.from_environment()
    return config_manager.get_database_config()
