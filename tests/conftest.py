"""
Test configuration and fixtures for the FHIR search engine.

This module provides pytest fixtures and configuration for testing.
"""

import sys
from pathlib import Path
from typing import Dict, Generator

import pytest

# Add the project root to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fhir_search.config.config import Config, LoggingConfig, MetricsConfig, SearchConfig
from fhir_search.utils.metrics import MetricsManager, setup_search_metrics


@pytest.fixture
def test_config() -> Config:
    """Provide a test configuration."""
    return Config(
        search=SearchConfig(
            default_page_size=20,
            maximum_page_size=200,
            paging_cache_size=50,
            paging_cache_ttl=60,
        ),
        logging=LoggingConfig(
            level="DEBUG",
            config_file=None,
            log_file=None,
        ),
        metrics=MetricsConfig(enabled=True, namespace="test_fhir_search"),
        properties={"fhir2.narrative.enabled": "true"},
        debug=True,
        environment="test",
    )


@pytest.fixture
def test_env_vars(monkeypatch: pytest.MonkeyPatch) -> Generator[Dict[str, str], None, None]:
    """Set up test environment variables."""
    env_vars = {
        "FHIR_SEARCH_SEARCH_DEFAULT_PAGE_SIZE": "25",
        "FHIR_SEARCH_SEARCH_PAGING_CACHE_SIZE": "500",
        "FHIR_SEARCH_LOGGING_LEVEL": "DEBUG",
        "FHIR_SEARCH_DEBUG": "true",
        "FHIR_SEARCH_ENVIRONMENT": "test",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    yield env_vars

    for key in env_vars:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def metrics() -> MetricsManager:
    """Provide a metrics manager with the search metrics on a private registry."""
    return setup_search_metrics(MetricsManager(namespace="test_fhir_search"))
