"""Application settings with Pydantic Settings validation.

Secrets (the PostgreSQL password) are loaded from the environment or a .env
file. Non-sensitive configuration is loaded from config/main.yaml and any other
config/*.yaml files, each validated against its JSON schema in config/schemas/.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.similarity_constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    END_TIME_THRESHOLD_MINUTES,
    LOCATION_SIMILARITY_THRESHOLD,
    NAME_SIMILARITY_THRESHOLD,
    RESOLVER_WINDOW_MINUTES,
    START_TIME_THRESHOLD_MINUTES,
)

CONFIG_DIR_DEFAULT: Final[Path] = Path("config")

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "event_feed_engine"

FEED_DEFAULT_PAGE_SIZE: Final[int] = 20
FEED_MAX_PAGE_SIZE: Final[int] = 100
MIGRATION_BATCH_SIZE_DEFAULT: Final[int] = 200

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR_DEFAULT) -> dict[str, Any]:
    """Load JSON Schema from <config_dir>/schemas/.

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR_DEFAULT,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR_DEFAULT) -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. main.yaml
    2. All other *.yaml files (sorted alphabetically)

    Returns:
        Merged configuration dictionary
    """
    merged_config: dict[str, Any] = {}
    if not config_dir.is_dir():
        logger.info("config_load_complete", file_count=0)
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    if main_path.exists():
        yaml_files.insert(0, main_path)

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(yaml_file), error=str(e))
            continue

        try:
            validate_config_section(file_config, schema_name, str(yaml_file), config_dir)
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Values passed explicitly or found in the environment win over YAML, which
    wins over the defaults declared here.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    # === Database ===

    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(default="data/feed_engine.db", description="SQLite database path")
    sqlite_busy_timeout_seconds: float = Field(
        default=5.0, gt=0, description="How long SQLite waits on a locked database"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(default="feed_engine", description="PostgreSQL database name")
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(default=POSTGRES_MIN_CONNECTIONS_DEFAULT, ge=1)
    postgres_max_connections: int = Field(default=POSTGRES_MAX_CONNECTIONS_DEFAULT, ge=1)
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT, ge=0
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT, ge=1
    )
    postgres_application_name: str = Field(default=POSTGRES_APPLICATION_NAME_DEFAULT)

    # === Similarity ===

    similarity_start_threshold_minutes: int = Field(
        default=START_TIME_THRESHOLD_MINUTES, ge=0
    )
    similarity_end_threshold_minutes: int = Field(default=END_TIME_THRESHOLD_MINUTES, ge=0)
    similarity_name_threshold: float = Field(
        default=NAME_SIMILARITY_THRESHOLD, ge=0.0, le=1.0
    )
    similarity_description_threshold: float = Field(
        default=DESCRIPTION_SIMILARITY_THRESHOLD, ge=0.0, le=1.0
    )
    similarity_location_threshold: float = Field(
        default=LOCATION_SIMILARITY_THRESHOLD, ge=0.0, le=1.0
    )
    resolver_window_minutes: int = Field(
        default=RESOLVER_WINDOW_MINUTES,
        ge=1,
        description="Half-width of the start-time scan used to find group candidates",
    )

    # === Feed queries ===

    feed_default_page_size: int = Field(default=FEED_DEFAULT_PAGE_SIZE, ge=1)
    feed_max_page_size: int = Field(default=FEED_MAX_PAGE_SIZE, ge=1)

    # === Store retries ===

    store_retry_max_attempts: int = Field(default=3, ge=1)
    store_retry_base_delay_seconds: float = Field(default=0.05, ge=0)
    store_retry_max_delay_seconds: float = Field(default=1.0, ge=0)

    # === Migrations ===

    migration_batch_size: int = Field(default=MIGRATION_BATCH_SIZE_DEFAULT, ge=1)
    repair_bad_year_start: int = Field(
        default=2027, description="First year treated as a corrupted feed timestamp"
    )
    repair_bad_year_end: int = Field(
        default=2028, description="Year whose January 1st ends the corrupted range (exclusive)"
    )

    # === Logging ===

    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))
        _assign("sqlite_busy_timeout_seconds", database_config.get("busy_timeout_seconds"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))
        _assign("postgres_statement_timeout_ms", postgres_config.get("statement_timeout_ms"))

        similarity_config = config.get("similarity") or {}
        _assign(
            "similarity_start_threshold_minutes",
            similarity_config.get("start_threshold_minutes"),
        )
        _assign(
            "similarity_end_threshold_minutes",
            similarity_config.get("end_threshold_minutes"),
        )
        _assign("similarity_name_threshold", similarity_config.get("name_threshold"))
        _assign(
            "similarity_description_threshold",
            similarity_config.get("description_threshold"),
        )
        _assign("similarity_location_threshold", similarity_config.get("location_threshold"))
        _assign("resolver_window_minutes", similarity_config.get("resolver_window_minutes"))

        feed_config = config.get("feed") or {}
        _assign("feed_default_page_size", feed_config.get("default_page_size"))
        _assign("feed_max_page_size", feed_config.get("max_page_size"))

        retry_config = config.get("store_retry") or {}
        _assign("store_retry_max_attempts", retry_config.get("max_attempts"))
        _assign("store_retry_base_delay_seconds", retry_config.get("base_delay_seconds"))
        _assign("store_retry_max_delay_seconds", retry_config.get("max_delay_seconds"))

        migration_config = config.get("migrations") or {}
        _assign("migration_batch_size", migration_config.get("batch_size"))
        _assign("repair_bad_year_start", migration_config.get("repair_bad_year_start"))
        _assign("repair_bad_year_end", migration_config.get("repair_bad_year_end"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("log_json", logging_config.get("json"))

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        if self.feed_default_page_size > self.feed_max_page_size:
            raise ValueError("feed_default_page_size must not exceed feed_max_page_size")
        if self.repair_bad_year_start >= self.repair_bad_year_end:
            raise ValueError("repair_bad_year_start must be before repair_bad_year_end")
        if self.postgres_min_connections > self.postgres_max_connections:
            raise ValueError("postgres_min_connections must not exceed postgres_max_connections")
        return self

    @property
    def postgres_dsn(self) -> str:
        """libpq keyword DSN built from the postgres_* fields."""
        parts = [
            f"host={self.postgres_host}",
            f"port={self.postgres_port}",
            f"dbname={self.postgres_database}",
            f"user={self.postgres_user}",
            f"connect_timeout={self.postgres_connect_timeout_seconds}",
            f"application_name={self.postgres_application_name}",
        ]
        if self.postgres_password is not None:
            parts.append(f"password={self.postgres_password.get_secret_value()}")
        return " ".join(parts)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests and CLIs)."""
    global _settings
    _settings = None
