"""
Search query orchestration.

SearchQuery turns a SearchParameterMap into a SearchQueryBundleProvider. Every
request-level check (parameter validation, include resolution) runs when the
provider is built; the backend is only consulted when the provider is asked for
a count or a page.
"""

from typing import Any, Generic, List, Optional, Sequence, TypeVar

from fhir_search.search.dao import FhirDao, PropertyService, Translator, translate_entity
from fhir_search.search.include import MatchedEntity, SearchQueryInclude
from fhir_search.search.parameter_map import SearchParameterMap
from fhir_search.search.validation import SearchParameterValidator
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

E = TypeVar("E")
R = TypeVar("R")


class SearchQuery(Generic[E, R]):
    """Builds bundle providers and performs the backend steps they delegate."""

    def __init__(
        self,
        property_service: Optional[PropertyService] = None,
        validator: Optional[SearchParameterValidator] = None,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize the search query.

        Args:
            property_service: Source of paging properties for created providers
            validator: Validator applied to every map; the default rules if omitted
            metrics: MetricsManager with the search metrics registered
        """
        self.property_service = property_service
        self.validator = validator if validator is not None else SearchParameterValidator()
        self.metrics = metrics

    def get_query_results(
        self,
        params: SearchParameterMap,
        dao: FhirDao[E],
        translator: Translator[E, R],
        include: Optional[SearchQueryInclude] = None,
    ) -> "SearchQueryBundleProvider":
        """
        Create a provider for the resources matching ``params``.

        Args:
            params: Search criteria; a frozen snapshot is taken
            dao: Backend for the searched resource type
            translator: Maps matched entities to resources
            include: Resolver for the map's ``_include``/``_revinclude`` entries

        Returns:
            A lazy provider; no backend call has been made yet

        Raises:
            InvalidRequestError: If a parameter, chain or include is not supported
        """
        from fhir_search.search.bundle_provider import SearchQueryBundleProvider

        frozen = params.freeze()
        resource_type = dao.resource_type

        self.validator.validate_and_raise(resource_type, frozen)

        specification = None
        if include is not None:
            specification = include.include_specification(resource_type, frozen)

        provider = SearchQueryBundleProvider(
            frozen,
            dao,
            translator,
            search_query=self,
            property_service=self.property_service,
            search_query_include=include,
            include_specification=specification,
            metrics=self.metrics,
        )

        logger.info(
            "Created search %s on %s with %d parameters", provider.identity, resource_type, len(frozen)
        )
        if self.metrics is not None:
            self.metrics.increment_counter("searches_total", labels={"resource_type": resource_type})

        return provider

    def get_matching_identifiers(self, params: SearchParameterMap, dao: FhirDao[E]) -> List[str]:
        """Ordered, distinct identifiers of the entities matching ``params``."""
        identifiers = dao.get_search_result_identifiers(params)
        distinct = list(dict.fromkeys(identifiers))
        if len(distinct) != len(identifiers):
            logger.debug(
                "Dropped %d duplicate identifiers from %s search",
                len(identifiers) - len(distinct),
                dao.resource_type,
            )
        return distinct

    def get_result_count(self, params: SearchParameterMap, dao: FhirDao[E]) -> int:
        return dao.get_result_count(params)

    def get_matches(
        self, dao: FhirDao[E], translator: Translator[E, R], identifiers: Sequence[str]
    ) -> List[MatchedEntity]:
        """
        Load and translate the entities for one page of identifiers.

        Entities whose translation fails are left out.
        """
        if not identifiers:
            return []

        matches = []
        for entity in dao.get_entities_by_identifiers(list(identifiers)):
            resource = translate_entity(translator, entity, dao.resource_type, self.metrics)
            if resource is not None:
                matches.append(MatchedEntity(entity, resource))
        return matches
