"""
Search functionality for FHIR resources.

This package provides the search parameter map, parameter validation,
include resolution and the lazy bundle providers that page through results.
"""

from fhir_search.search.bundle_provider import (
    BaseBundleProvider,
    BundleEntry,
    SearchEntryMode,
    SearchQueryBundleProvider,
    TwoSearchQueryBundleProvider,
)
from fhir_search.search.cache import BundleProviderCache, CacheOptions
from fhir_search.search.dao import FhirDao, PropertyService, Translator, resource_key
from fhir_search.search.include import (
    IncludeRegistry,
    IncludeSpecification,
    MatchedEntity,
    Relationship,
    ResourceHandle,
    SearchQueryInclude,
)
from fhir_search.search.parameter_map import PropParam, SearchParameterMap
from fhir_search.search.query import SearchQuery
from fhir_search.search.validation import (
    ResourceTypeRules,
    SearchParameterValidator,
    ValidationRule,
)

__all__ = [
    "BaseBundleProvider",
    "BundleEntry",
    "SearchEntryMode",
    "SearchQueryBundleProvider",
    "TwoSearchQueryBundleProvider",
    "BundleProviderCache",
    "CacheOptions",
    "FhirDao",
    "PropertyService",
    "Translator",
    "resource_key",
    "IncludeRegistry",
    "IncludeSpecification",
    "MatchedEntity",
    "Relationship",
    "ResourceHandle",
    "SearchQueryInclude",
    "PropParam",
    "SearchParameterMap",
    "SearchQuery",
    "ResourceTypeRules",
    "SearchParameterValidator",
    "ValidationRule",
]
