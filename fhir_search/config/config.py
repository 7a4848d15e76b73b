"""
Configuration management for the FHIR search engine.

This module handles loading and validating configuration from configuration
files and environment variables.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from fhir_search import constants
from fhir_search.utils.environment import env_key, get_env, get_env_bool, get_env_int, load_env_file


class SearchConfig(BaseModel):
    """Configuration for search paging."""

    default_page_size: int = Field(
        constants.DEFAULT_PAGE_SIZE, description="Page size used when a request gives none"
    )
    maximum_page_size: int = Field(
        constants.MAXIMUM_PAGE_SIZE, description="Largest page size a client may request"
    )
    paging_cache_size: int = Field(
        constants.PAGING_CACHE_SIZE, description="Number of bundle providers kept for paging links"
    )
    paging_cache_ttl: int = Field(
        3600, ge=0, description="Seconds a bundle provider stays available for paging links"
    )

    @field_validator("default_page_size", "maximum_page_size", "paging_cache_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that sizes are positive."""
        if v < 1:
            raise ValueError("page and cache sizes must be at least 1")
        return v


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field("INFO", description="Default logging level")
    config_file: Optional[str] = Field(
        None, description="Path to logging configuration file"
    )
    log_file: Optional[str] = Field(None, description="Path to log file")


class MetricsConfig(BaseModel):
    """Configuration for Prometheus metrics."""

    enabled: bool = Field(True, description="Collect search metrics")
    namespace: str = Field("fhir_search", description="Metric name prefix")
    port: Optional[int] = Field(None, description="Port for the metrics server")


class Config(BaseModel):
    """Main configuration for the FHIR search engine."""

    search: SearchConfig = Field(default_factory=SearchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    properties: Dict[str, str] = Field(
        default_factory=dict, description="Additional named configuration properties"
    )
    debug: bool = Field(False, description="Enable debug mode")
    environment: str = Field("production", description="Deployment environment")


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as file:
        try:
            data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid configuration file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return data


def _merged(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively apply ``overlay`` on a copy of ``base``; nested mappings merge, other values replace."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        merged[key] = _merged(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def overlay_path(config_path: Path, env: Optional[str] = None) -> Path:
    """``search.yaml`` becomes ``search.<env>.yaml`` next to it; ``env`` defaults to $ENV or ``local``."""
    env = env or get_env("ENV", "local")
    return config_path.with_name(f"{config_path.stem}.{env}.yaml")


def load_config(config_path: Union[str, Path]) -> Config:
    """
    Load configuration from a YAML file and its per-environment overlay.

    Args:
        config_path: Base YAML file

    Returns:
        Validated configuration

    Raises:
        FileNotFoundError: If the base file is missing
        ValueError: If a file is not valid YAML or the values do not validate
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    data = _read_yaml(config_path)
    overlay = overlay_path(config_path)
    if overlay.is_file():
        data = _merged(data, _read_yaml(overlay))

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {config_path}: {e}") from e


def load_config_from_env(env_file: Optional[Union[str, Path]] = None) -> Config:
    """
    Load configuration from environment variables.

    Environment variables are prefixed with FHIR_SEARCH_ and use underscore as
    separator for nested keys.

    Examples:
        FHIR_SEARCH_SEARCH_DEFAULT_PAGE_SIZE=20
        FHIR_SEARCH_LOGGING_LEVEL=DEBUG
        FHIR_SEARCH_METRICS_ENABLED=false

    Args:
        env_file: Optional .env file loaded before reading the environment

    Returns:
        Validated configuration object with values from environment variables
    """
    if env_file:
        load_env_file(env_file)

    config_data: Dict[str, Any] = {}

    for section, model in (("search", SearchConfig), ("logging", LoggingConfig), ("metrics", MetricsConfig)):
        for name, field in model.model_fields.items():
            key = env_key(section, name)
            if get_env(key) is None:
                continue
            if field.annotation is bool:
                value: Any = get_env_bool(key)
            elif field.annotation is int:
                value = get_env_int(key, field.default)
            else:
                value = get_env(key)
            config_data.setdefault(section, {})[name] = value

    if get_env(env_key("debug")) is not None:
        config_data["debug"] = get_env_bool(env_key("debug"))

    if env := get_env(env_key("environment")):
        config_data["environment"] = env

    try:
        return Config.model_validate(config_data)
    except ValidationError as e:
        raise ValueError(f"Invalid environment configuration: {e}") from e
