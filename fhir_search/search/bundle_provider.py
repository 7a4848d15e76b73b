"""
Bundle providers: lazy, paginated views over search results.

A provider is cheap to build. The identifier list, total count and preferred
page size are each computed on first use and then reused, so paging through
one provider always sees the same order.
"""

import abc
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from fhir_search import constants
from fhir_search.search.dao import FhirDao, PropertyService, Translator, resource_key
from fhir_search.search.include import IncludeSpecification, SearchQueryInclude
from fhir_search.search.parameter_map import SearchParameterMap
from fhir_search.search.query import SearchQuery
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

_UNSET = object()


class SearchEntryMode(str, Enum):
    """Why a resource is part of a page."""

    MATCH = "match"
    INCLUDE = "include"


class BundleEntry(BaseModel):
    """A resource on a page and its entry mode."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    resource: Any
    mode: SearchEntryMode = SearchEntryMode.MATCH


def _window(offset: int, limit: Optional[int], total: int, maximum: int) -> Optional[Tuple[int, int]]:
    """Normalize a page request to ``[start, end)`` or None if it is past the end."""
    start = max(offset, 0)
    if start >= total:
        return None
    if limit is None or limit <= 0 or limit > maximum:
        limit = maximum
    return start, min(start + limit, total)


class BaseBundleProvider(abc.ABC):
    """Identity, timestamps and page size handling shared by providers."""

    def __init__(self, property_service: Optional[PropertyService] = None):
        self.property_service = property_service
        self._identity = str(uuid.uuid4())
        self._published = datetime.now(timezone.utc)
        self._lock = threading.Lock()
        self._page_size: Any = _UNSET
        self._maximum_page_size: Any = _UNSET

    @property
    def identity(self) -> str:
        """Token under which the provider can be parked for later page requests."""
        return self._identity

    @property
    def published(self) -> datetime:
        return self._published

    @property
    @abc.abstractmethod
    def resource_types(self) -> Set[str]:
        """Resource types this provider searches."""

    @abc.abstractmethod
    def count(self) -> int:
        """Total number of matching resources."""

    @abc.abstractmethod
    def get_page(self, offset: int, limit: Optional[int]) -> List[BundleEntry]:
        """
        Entries for the matches in ``[offset, offset + limit)``.

        A negative offset is treated as 0, a missing, non-positive or too large
        limit becomes ``maximum_page_size()``, and an offset past the end
        yields an empty page.
        Matches come first, followed by their included resources.
        """

    def _default_page_size(self) -> Optional[int]:
        return None

    def _default_maximum_page_size(self) -> int:
        return constants.MAXIMUM_PAGE_SIZE

    def preferred_page_size(self) -> Optional[int]:
        if self._page_size is _UNSET:
            with self._lock:
                if self._page_size is _UNSET:
                    if self.property_service is not None:
                        self._page_size = self.property_service.get_property_as_int(
                            constants.DEFAULT_PAGE_SIZE_PROPERTY, constants.DEFAULT_PAGE_SIZE
                        )
                    else:
                        self._page_size = self._default_page_size()
        return self._page_size

    def maximum_page_size(self) -> int:
        """Largest number of matches one page may hold, from ``fhir2.paging.maximum``."""
        if self._maximum_page_size is _UNSET:
            with self._lock:
                if self._maximum_page_size is _UNSET:
                    if self.property_service is not None:
                        maximum = self.property_service.get_property_as_int(
                            constants.MAXIMUM_PAGE_SIZE_PROPERTY, constants.MAXIMUM_PAGE_SIZE
                        )
                    else:
                        maximum = self._default_maximum_page_size()
                    self._maximum_page_size = max(maximum, 1)
        return self._maximum_page_size

    def get_resources(self, from_index: int, to_index: int) -> List[Any]:
        """Resources for matches ``[from_index, to_index)``, followed by their includes."""
        if to_index <= max(from_index, 0):
            return []
        return [entry.resource for entry in self.get_page(from_index, to_index - max(from_index, 0))]

    def size(self) -> int:
        return self.count()


class SearchQueryBundleProvider(BaseBundleProvider):
    """Provider for a single search against one DAO."""

    def __init__(
        self,
        params: SearchParameterMap,
        dao: FhirDao,
        translator: Translator,
        search_query: Optional[SearchQuery] = None,
        property_service: Optional[PropertyService] = None,
        search_query_include: Optional[SearchQueryInclude] = None,
        include_specification: Optional[IncludeSpecification] = None,
        metrics: Optional[Any] = None,
    ):
        super().__init__(property_service)
        self.params = params.freeze()
        self.dao = dao
        self.translator = translator
        self.search_query = search_query or SearchQuery(property_service=property_service, metrics=metrics)
        self.search_query_include = search_query_include
        self.include_specification = include_specification
        self.metrics = metrics

        self._identifiers: Optional[List[str]] = None
        self._count: Optional[int] = None

    @property
    def resource_type(self) -> str:
        return self.dao.resource_type

    @property
    def resource_types(self) -> Set[str]:
        return {self.resource_type}

    def _default_page_size(self) -> Optional[int]:
        return self.dao.get_preferred_page_size()

    def _get_identifiers(self) -> List[str]:
        if self._identifiers is None:
            with self._lock:
                if self._identifiers is None:
                    self._identifiers = self.search_query.get_matching_identifiers(self.params, self.dao)
                    logger.debug(
                        "Search %s matched %d %s identifiers",
                        self.identity,
                        len(self._identifiers),
                        self.resource_type,
                    )
        return self._identifiers

    def count(self) -> int:
        if self._count is None:
            with self._lock:
                if self._count is None:
                    self._count = self.search_query.get_result_count(self.params, self.dao)
        return self._count

    def get_page(self, offset: int, limit: Optional[int]) -> List[BundleEntry]:
        identifiers = self._get_identifiers()
        window = _window(offset, limit, len(identifiers), self.maximum_page_size())
        if window is None:
            return []

        started = time.perf_counter()
        start, end = window
        matches = self.search_query.get_matches(self.dao, self.translator, identifiers[start:end])
        entries = [BundleEntry(resource=match.resource, mode=SearchEntryMode.MATCH) for match in matches]

        if self.search_query_include is not None and self.include_specification is not None:
            included = self.search_query_include.get_included_resources(matches, self.include_specification)
            entries.extend(BundleEntry(resource=resource, mode=SearchEntryMode.INCLUDE) for resource in included)

        elapsed = time.perf_counter() - started
        logger.debug(
            "Search %s served %s[%d:%d] with %d entries in %.3fs",
            self.identity,
            self.resource_type,
            start,
            end,
            len(entries),
            elapsed,
        )
        if self.metrics is not None:
            labels = {"resource_type": self.resource_type}
            self.metrics.increment_counter("pages_total", labels=labels)
            self.metrics.observe_histogram("page_fetch_duration_seconds", elapsed, labels=labels)

        return entries


class TwoSearchQueryBundleProvider(BaseBundleProvider):
    """
    Two providers presented as one result.

    The second provider's matches follow the first's. A page spanning both
    lists first's matches, second's matches, then the included resources of
    each, without repeating a resource.
    """

    def __init__(
        self,
        first: BaseBundleProvider,
        second: BaseBundleProvider,
        property_service: Optional[PropertyService] = None,
    ):
        super().__init__(property_service)
        self.first = first
        self.second = second
        self._count: Optional[int] = None

    @property
    def resource_types(self) -> Set[str]:
        return self.first.resource_types | self.second.resource_types

    def _default_page_size(self) -> Optional[int]:
        return self.first.preferred_page_size()

    def _default_maximum_page_size(self) -> int:
        return self.first.maximum_page_size()

    def count(self) -> int:
        if self._count is None:
            with self._lock:
                if self._count is None:
                    self._count = self.first.count() + self.second.count()
        return self._count

    def get_page(self, offset: int, limit: Optional[int]) -> List[BundleEntry]:
        first_count = self.first.count()
        window = _window(offset, limit, self.count(), self.maximum_page_size())
        if window is None:
            return []

        start, end = window
        entries: List[BundleEntry] = []
        if start < first_count:
            entries.extend(self.first.get_page(start, min(end, first_count) - start))
        if end > first_count:
            second_start = max(start, first_count)
            entries.extend(self.second.get_page(second_start - first_count, end - second_start))

        matches = [entry for entry in entries if entry.mode == SearchEntryMode.MATCH]
        seen = {resource_key(entry.resource) for entry in matches}
        included = []
        for entry in entries:
            if entry.mode != SearchEntryMode.INCLUDE:
                continue
            key = resource_key(entry.resource)
            if key[1] is not None and key in seen:
                continue
            seen.add(key)
            included.append(entry)

        return matches + included
