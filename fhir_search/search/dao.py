"""
Contracts the search core requires from its collaborators.

DAOs, translators and the property service live outside this package; these
protocols describe only what the search engine calls on them.
"""

from collections.abc import Mapping
from typing import Any, List, Optional, Protocol, Sequence, Tuple, TypeVar, runtime_checkable

from fhir_search.search.parameter_map import SearchParameterMap
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

E_co = TypeVar("E_co", covariant=True)
R_co = TypeVar("R_co", covariant=True)
E_contra = TypeVar("E_contra", contravariant=True)


@runtime_checkable
class FhirDao(Protocol[E_co]):
    """Backend access for one entity type."""

    resource_type: str

    def get_search_result_identifiers(self, params: SearchParameterMap) -> List[str]:
        """
        Ordered identifiers of every entity matching ``params``.

        The sort in ``params`` is applied here; without one the DAO's natural
        order is used, which must be stable across calls.
        """
        ...

    def get_entities_by_identifiers(self, identifiers: Sequence[str]) -> List[E_co]:
        """Entities for ``identifiers``, in the order given."""
        ...

    def get_result_count(self, params: SearchParameterMap) -> int:
        ...

    def get_preferred_page_size(self) -> Optional[int]:
        ...


@runtime_checkable
class Translator(Protocol[E_contra, R_co]):
    """Maps a domain entity to its external resource. May raise per entity."""

    def to_external_resource(self, entity: E_contra) -> R_co:
        ...


@runtime_checkable
class PropertyService(Protocol):
    """Read-only named configuration lookup."""

    def get_property(self, name: str, default: Optional[str] = None) -> Optional[str]:
        ...

    def get_property_as_int(self, name: str, default: int) -> int:
        ...


def resource_key(resource: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Return ``(resource_type, id)`` for an external resource.

    Mappings are read through ``resourceType``/``id``; other objects through
    ``resource_type`` (or ``resourceType``) and ``id`` attributes.
    """
    if isinstance(resource, Mapping):
        resource_type = resource.get("resourceType", resource.get("resource_type"))
        resource_id = resource.get("id")
    else:
        resource_type = getattr(resource, "resource_type", None) or getattr(resource, "resourceType", None)
        resource_id = getattr(resource, "id", None)

    if callable(resource_type):
        resource_type = resource_type()

    return (
        str(resource_type) if resource_type is not None else None,
        str(resource_id) if resource_id is not None else None,
    )


def translate_entity(
    translator: Translator,
    entity: Any,
    resource_type: Optional[str] = None,
    metrics: Optional[Any] = None,
) -> Optional[Any]:
    """
    Translate one entity, returning None when the translator fails.

    A failure is either an exception or a ``None`` result. Failures are logged
    and counted in ``translation_failures_total`` when a metrics manager is
    given; callers exclude the entity from their results.
    """
    try:
        resource = translator.to_external_resource(entity)
    except Exception as e:
        logger.warning(
            "Failed to translate %s entity %r: %s", resource_type or "unknown", entity, e, exc_info=True
        )
        resource = None
    else:
        if resource is None:
            logger.warning("Translator returned no resource for %s entity %r", resource_type or "unknown", entity)

    if resource is None and metrics is not None:
        metrics.increment_counter(
            "translation_failures_total", labels={"resource_type": resource_type or "unknown"}
        )

    return resource
