"""Tests for configuration loading."""

import json
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError as PydanticValidationError

from clinical_fields.infrastructure.config_manager import (
    ConfigManager,
    DatabaseConfig,
    EngineConfig,
    get_database_config,
)


class TestDatabaseConfig:
    """Test DatabaseConfig validation."""

    def test_defaults_to_memory(self):
        """Test an unset path means an in-memory database."""
        config = DatabaseConfig()
        assert config.db_type == "duckdb"
        assert config.get_connection_string() == ":memory:"

    def test_db_type_is_normalized(self):
        """Test the database type is case-insensitive."""
        assert DatabaseConfig(db_type="DuckDB").db_type == "duckdb"

    def test_unsupported_db_type(self):
        """Test other database types are rejected."""
        with pytest.raises(PydanticValidationError):
            DatabaseConfig(db_type="postgresql")

    def test_missing_directory(self, tmp_path):
        """Test a path in a missing directory is rejected."""
        with pytest.raises(PydanticValidationError):
            DatabaseConfig(db_path=str(tmp_path / "missing" / "fields.duckdb"))

    def test_file_path(self, tmp_path):
        """Test a file path in an existing directory is kept."""
        path = str(tmp_path / "fields.duckdb")
        assert DatabaseConfig(db_path=path).get_connection_string() == path


class TestEngineConfig:
    """Test EngineConfig defaults and bounds."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.default_language == "fr"
        assert config.fallback_language == "en"
        assert config.recalculation_batch_size == 500

    def test_batch_size_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            EngineConfig(recalculation_batch_size=0)


class TestConfigManagerFromEnvironment:
    """Test loading configuration from environment variables."""

    def test_environment_variables(self, tmp_path):
        """Test every CF_* variable is picked up."""
        db_path = str(tmp_path / "fields.duckdb")
        env = {
            "CF_DB_PATH": db_path,
            "CF_DEFAULT_LANGUAGE": "en",
            "CF_FALLBACK_LANGUAGE": "fr",
            "CF_RECALC_BATCH_SIZE": "50",
            "CF_LOG_LEVEL": "DEBUG",
        }
        with patch.dict(os.environ, env, clear=True):
            config = ConfigManager.from_environment()

        assert config.get_database_config().db_path == db_path
        engine = config.get_engine_config()
        assert (engine.default_language, engine.fallback_language) == ("en", "fr")
        assert engine.recalculation_batch_size == 50
        assert config.get("logging.level") == "DEBUG"

    def test_defaults_without_environment(self):
        """Test an empty environment gives in-memory DuckDB and default languages."""
        with patch.dict(os.environ, {}, clear=True):
            db_config = get_database_config()
            config = ConfigManager.from_environment()

        assert db_config.get_connection_string() == ":memory:"
        assert config.get_engine_config().default_language == "fr"
        assert config.get("logging.level") == "INFO"


class TestConfigManagerFromFile:
    """Test loading configuration from JSON files."""

    def test_from_file(self, tmp_path):
        """Test sections are read from a JSON file."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "database": {"db_type": "duckdb", "db_path": ":memory:"},
            "engine": {"recalculation_batch_size": 10},
        }))

        config = ConfigManager.from_file(str(config_file))

        assert config.get_database_config().get_connection_string() == ":memory:"
        assert config.get_engine_config().recalculation_batch_size == 10
        assert config.get("engine.recalculation_batch_size") == 10
        assert config.get("engine.missing", "fallback") == "fallback"
        assert config.get("database.db_path.nested", "fallback") == "fallback"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))

    def test_non_object_json(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]")
        with pytest.raises(ValueError):
            ConfigManager.from_file(str(config_file))
