"""
Read-only named property lookup backed by the search configuration.
"""

from typing import Dict, Optional, Set

from fhir_search import constants
from fhir_search.config.config import Config
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigPropertyService:
    """
    Property service over a :class:`Config`.

    Paging properties map onto ``config.search``; anything else is looked up
    in ``config.properties``. Misses are remembered so repeated lookups of an
    unset property stay cheap.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()
        self._missing: Set[str] = set()

    def _values(self) -> Dict[str, str]:
        values = {
            constants.DEFAULT_PAGE_SIZE_PROPERTY: str(self.config.search.default_page_size),
            constants.MAXIMUM_PAGE_SIZE_PROPERTY: str(self.config.search.maximum_page_size),
        }
        values.update(self.config.properties)
        return values

    def get_property(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name in self._missing:
            return default

        value = self._values().get(name)
        if value is None or value == "":
            self._missing.add(name)
            return default

        return value

    def get_property_as_int(self, name: str, default: int) -> int:
        value = self.get_property(name)
        if value is None:
            return default

        try:
            return int(value)
        except ValueError:
            logger.error(
                "Error converting property %s with value '%s' to an integer", name, value
            )
            return default
