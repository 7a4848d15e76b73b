"""
Environment variable access for the FHIR search engine.

Settings read from the environment share the ``FHIR_SEARCH_`` prefix;
``env_key`` builds those names from configuration paths.
"""

import os
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv

from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "FHIR_SEARCH_"

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})


def env_key(*parts: str) -> str:
    """Environment variable name for a configuration path, e.g. ``("search", "default_page_size")``."""
    return ENV_PREFIX + "_".join(part.upper() for part in parts)


def load_env_file(env_file: Optional[Union[str, Path]] = None, override: bool = False) -> bool:
    """
    Load variables from a .env file into the process environment.

    Without ``env_file`` python-dotenv searches the working directory and its
    parents. Variables that are already set win unless ``override`` is true.

    Returns:
        True if a file was found and at least one variable was read
    """
    loaded = load_dotenv(dotenv_path=env_file, override=override)
    if not loaded:
        logger.debug("No variables loaded from %s", env_file or ".env")
    return loaded


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """True for 1/true/yes/y/on in any case, False for any other set value."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


def get_env_int(key: str, default: int = 0) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning("%s=%r is not an integer, using %d", key, value, default)
        return default


def get_env_list(key: str, default: Optional[List[str]] = None, separator: str = ",") -> List[str]:
    """Split a variable on ``separator``, dropping blank items."""
    value = os.environ.get(key)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(separator) if item.strip()]
