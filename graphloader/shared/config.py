# Configuration loader with environment variable support
# YAML file (config/<env>.yaml) for load tuning, environment for connection secrets

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_NODE_LABEL = "Document"


class ConfigurationError(ValueError):
    """Raised when the loader configuration cannot be used."""


class LoaderConfig(BaseModel):
    """Batching, dispatch and upsert resolution settings."""

    chunk_size: int = Field(default=100, gt=0)
    concurrency: int = Field(default=4, gt=0)
    upsert_patterns: List[str] = Field(default_factory=list)
    node_label: str = DEFAULT_NODE_LABEL
    progress_interval_seconds: float = Field(default=1.0, gt=0)
    max_failure_details: int = Field(default=1000, ge=0)

    @validator("upsert_patterns", each_item=True)
    def _pattern_compiles(cls, value: str):
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid upsert pattern {value!r}: {e}")
        return value

    @validator("node_label")
    def _label_not_blank(cls, value: str):
        if not value or not value.strip():
            raise ValueError("node_label must be a non-empty label name")
        return value.strip()


class RetryConfig(BaseModel):
    """Conflict retry budget and backoff curve for one batch."""

    max_retries: int = Field(default=8, ge=0)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=10.0, ge=0)
    jitter_seconds: float = Field(default=0.5, ge=0)

    @validator("backoff_max_seconds")
    def _cap_not_below_base(cls, value: float, values: Dict[str, Any]):
        base = values.get("backoff_base_seconds")
        if base is not None and value < base:
            raise ValueError(
                f"backoff_max_seconds ({value}) must be >= backoff_base_seconds ({base})"
            )
        return value


class ErrorClassificationConfig(BaseModel):
    """Extra Neo4j status codes treated as conflicts or transport failures."""

    conflict_codes: List[str] = Field(default_factory=list)
    transport_codes: List[str] = Field(default_factory=list)


class Neo4jConfig(BaseModel):
    database: Optional[str] = None
    max_connection_lifetime: int = 3600
    connection_acquisition_timeout: float = 60.0
    connection_timeout: float = 5.0


class Config(BaseModel):
    """Main configuration model"""

    model_config = ConfigDict(extra="forbid")

    loader: LoaderConfig = Field(default_factory=LoaderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    errors: ErrorClassificationConfig = Field(
        default_factory=ErrorClassificationConfig
    )
    neo4j: Neo4jConfig = Field(default_factory=Neo4jConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Neo4j
    neo4j_uri: str = Field(default="neo4j://localhost:7687", alias="NEO4J_URI")
    neo4j_user: str = Field(default="neo4j", alias="NEO4J_USER")
    neo4j_password: Optional[str] = Field(default=None, alias="NEO4J_PASSWORD")
    neo4j_database: Optional[str] = Field(default=None, alias="NEO4J_DATABASE")

    # Logging
    log_level: str = Field(default="WARNING", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def _default_config_path(settings: Settings) -> Path:
    return Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If an explicit CONFIG_PATH does not exist
        ConfigurationError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config_path = _default_config_path(settings)

    config_dict: Dict[str, Any] = {}
    if config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f) or {}
    else:
        logger.info(
            "No configuration file at %s, using built-in defaults", config_path
        )

    try:
        config = Config(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}")

    validate_config_at_startup(config, settings)

    return config, settings


def apply_overrides(config: Config, **overrides: Any) -> Config:
    """
    Return a copy of ``config`` with loader/retry fields replaced.

    ``None`` values are ignored so unset CLI flags keep the YAML value.
    Overrides are validated the same way as file values.

    Raises:
        ConfigurationError: If an override is invalid
    """
    loader_fields = set(LoaderConfig.model_fields)
    retry_fields = set(RetryConfig.model_fields)

    loader_update: Dict[str, Any] = {}
    retry_update: Dict[str, Any] = {}
    for name, value in overrides.items():
        if value is None:
            continue
        if name in loader_fields:
            loader_update[name] = value
        elif name in retry_fields:
            retry_update[name] = value
        else:
            raise ConfigurationError(f"Unknown configuration override: {name}")

    try:
        loader = LoaderConfig(**{**config.loader.model_dump(), **loader_update})
        retry = RetryConfig(**{**config.retry.model_dump(), **retry_update})
    except ValidationError as e:
        raise ConfigurationError(str(e))

    return Config(
        loader=loader,
        retry=retry,
        errors=config.errors.model_copy(deep=True),
        neo4j=config.neo4j.model_copy(deep=True),
    )


def validate_config_at_startup(config: Config, settings: Settings) -> None:
    """
    Validate critical configuration at startup.

    Raises:
        ConfigurationError: If a cross-field check fails
    """
    logger.info(
        "Loader configuration loaded: chunk_size=%s concurrency=%s "
        "patterns=%s label=%s max_retries=%s",
        config.loader.chunk_size,
        config.loader.concurrency,
        config.loader.upsert_patterns,
        config.loader.node_label,
        config.retry.max_retries,
    )

    overlap = set(config.errors.conflict_codes) & set(config.errors.transport_codes)
    if overlap:
        raise ConfigurationError(
            f"Status codes cannot be both conflict and transport: {sorted(overlap)}"
        )

    if not settings.neo4j_password:
        logger.warning("NEO4J_PASSWORD is not set; connecting without authentication")
