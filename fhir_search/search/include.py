"""
Forward and reverse include resolution.

Relationships are registered on an IncludeRegistry, always named from the
referencing side: ``Relationship("Observation", "patient", "Patient")`` says an
Observation references a Patient through its ``patient`` property. A forward
include (``_include=Observation:patient``) attaches the Patients of a page of
Observations; a reverse include (``_revinclude=Observation:patient``) attaches
the Observations referencing a page of Patients. Only one hop is followed.
"""

from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict

from fhir_search import constants
from fhir_search.search.dao import resource_key, translate_entity
from fhir_search.search.parameter_map import SearchParameterMap
from fhir_search.search.params import Include, ReferenceOrListParam, ReferenceParam
from fhir_search.utils.errors import (
    ErrorDetail,
    SearchConfigurationError,
    UnsupportedIncludeError,
)
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

ResourceKey = Tuple[Optional[str], Optional[str]]


class MatchedEntity(NamedTuple):
    """A primary result: the domain entity and its translated resource."""

    entity: Any
    resource: Any


class ResourceHandle(BaseModel):
    """DAO and translator used to load resources of one type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    resource_type: str
    dao: Any
    translator: Any


class Relationship(BaseModel):
    """
    A reference from ``source_type`` to ``target_type`` named ``name``.

    ``references`` extracts the referenced id, or a collection of them, from a
    source entity and enables forward includes. ``search_handler`` and
    ``search_property`` name the criterion that finds sources by target id and
    enable reverse includes.
    """

    model_config = ConfigDict(frozen=True)

    source_type: str
    name: str
    target_type: str
    references: Optional[Callable[[Any], Union[None, str, Iterable[Optional[str]]]]] = None
    search_handler: Optional[str] = None
    search_property: Optional[str] = None

    @property
    def supports_forward(self) -> bool:
        return self.references is not None

    @property
    def supports_reverse(self) -> bool:
        return self.search_handler is not None

    def __str__(self) -> str:
        return f"{self.source_type}:{self.name}:{self.target_type}"


class IncludeSpecification(BaseModel):
    """Resolved includes for one search on ``primary_type``."""

    model_config = ConfigDict(frozen=True)

    primary_type: str
    forward: Tuple[Relationship, ...] = ()
    reverse: Tuple[Relationship, ...] = ()

    def is_empty(self) -> bool:
        return not self.forward and not self.reverse


class IncludeRegistry:
    """Allow-list of include relationships and the handles to serve them."""

    def __init__(self):
        self._handles: Dict[str, ResourceHandle] = {}
        self._relationships: List[Relationship] = []

    def register_handle(self, resource_type: str, dao: Any, translator: Any) -> "IncludeRegistry":
        self._handles[resource_type] = ResourceHandle(
            resource_type=resource_type, dao=dao, translator=translator
        )
        return self

    def get_handle(self, resource_type: str) -> ResourceHandle:
        handle = self._handles.get(resource_type)
        if handle is None:
            raise SearchConfigurationError(f"No DAO registered for resource type '{resource_type}'")
        return handle

    def register_relationship(self, relationship: Relationship) -> "IncludeRegistry":
        """
        Add a relationship to the allow-list.

        Raises:
            SearchConfigurationError: If the relationship can serve neither
                direction, or the handle it needs is not registered
        """
        if not relationship.supports_forward and not relationship.supports_reverse:
            raise SearchConfigurationError(
                f"Relationship {relationship} needs a reference extractor or a search handler"
            )
        if relationship.supports_forward and relationship.target_type not in self._handles:
            raise SearchConfigurationError(
                f"Relationship {relationship} has no handle for target type '{relationship.target_type}'"
            )
        if relationship.supports_reverse and relationship.source_type not in self._handles:
            raise SearchConfigurationError(
                f"Relationship {relationship} has no handle for source type '{relationship.source_type}'"
            )

        self._relationships.append(relationship)
        logger.debug("Registered include relationship %s", relationship)
        return self

    @property
    def relationships(self) -> List[Relationship]:
        return list(self._relationships)

    def resolve(self, include: Include) -> Relationship:
        """
        Find the relationship an include names.

        Raises:
            UnsupportedIncludeError: If no registered relationship matches, or
                the include omits a target type and several match
        """
        candidates = [
            r for r in self._relationships
            if r.source_type == include.source_type
            and r.name == include.relationship
            and (include.target_type is None or r.target_type == include.target_type)
        ]

        if len(candidates) == 1:
            return candidates[0]

        message = (
            f"Include '{include}' is ambiguous; name the target type"
            if candidates
            else f"Include '{include}' is not supported"
        )
        raise UnsupportedIncludeError(
            message=message,
            details=[ErrorDetail(param=_include_param(include), value=str(include), message=message)],
        )

    def specification(self, primary_type: str, includes: Iterable[Include]) -> IncludeSpecification:
        """
        Resolve includes for a search on ``primary_type``.

        Duplicate includes are folded. Forward includes must start at the
        primary type; reverse includes must point at it.

        Raises:
            UnsupportedIncludeError: If an include cannot be served
        """
        forward: List[Relationship] = []
        reverse: List[Relationship] = []

        for include in includes:
            relationship = self.resolve(include)

            if include.reverse:
                usable = relationship.supports_reverse and relationship.target_type == primary_type
                bucket = reverse
            else:
                usable = relationship.supports_forward and relationship.source_type == primary_type
                bucket = forward

            if not usable:
                message = f"Include '{include}' cannot be applied to a search on {primary_type}"
                raise UnsupportedIncludeError(
                    message=message,
                    details=[ErrorDetail(param=_include_param(include), value=str(include), message=message)],
                )

            if relationship not in bucket:
                bucket.append(relationship)

        return IncludeSpecification(primary_type=primary_type, forward=tuple(forward), reverse=tuple(reverse))


def _include_param(include: Include) -> str:
    return constants.REVERSE_INCLUDE_SEARCH_HANDLER if include.reverse else constants.INCLUDE_SEARCH_HANDLER


def _iter_includes(value: Any, reverse: bool) -> Iterable[Include]:
    if isinstance(value, Include):
        yield value.model_copy(update={"reverse": reverse}) if value.reverse != reverse else value
    elif isinstance(value, str):
        yield Include.parse(value, reverse=reverse)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for member in value:
            yield from _iter_includes(member, reverse)
    else:
        raise SearchConfigurationError(f"Unsupported include value: {value!r}")


def _as_references(value: Any) -> Iterable[Optional[str]]:
    """Extractor results may be a single reference or a collection of them."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return value


def _strip_type(reference: str) -> str:
    return reference.rsplit("/", 1)[-1] if "/" in reference else reference


class SearchQueryInclude:
    """Loads the resources named by an IncludeSpecification for a page of results."""

    def __init__(self, registry: IncludeRegistry, metrics: Optional[Any] = None):
        self.registry = registry
        self.metrics = metrics

    def include_specification(
        self, resource_type: str, params: SearchParameterMap
    ) -> Optional[IncludeSpecification]:
        """
        Build the specification from a map's ``_include``/``_revinclude`` entries.

        Returns:
            The specification, or None if the map requests no includes
        """
        includes: List[Include] = []
        for handler, reverse in (
            (constants.INCLUDE_SEARCH_HANDLER, False),
            (constants.REVERSE_INCLUDE_SEARCH_HANDLER, True),
        ):
            for param in params.get_parameters(handler):
                try:
                    includes.extend(_iter_includes(param.param, reverse))
                except ValueError as e:
                    raise UnsupportedIncludeError(
                        message=str(e),
                        details=[ErrorDetail(param=handler, value=str(param.param), message=str(e))],
                    ) from e

        if not includes:
            return None

        return self.registry.specification(resource_type, includes)

    def get_included_resources(
        self, primary: Sequence[MatchedEntity], specification: Optional[IncludeSpecification]
    ) -> List[Any]:
        """
        Load every resource the specification attaches to ``primary``.

        Results are distinct by (resource type, id) and never repeat a primary
        resource. Backend errors propagate.
        """
        if not primary or specification is None or specification.is_empty():
            return []

        seen: Set[ResourceKey] = {resource_key(match.resource) for match in primary}
        included: List[Any] = []

        for relationship in specification.forward:
            resources = self._load_forward(relationship, primary, seen)
            self._collect(resources, seen, included, relationship, "forward")

        for relationship in specification.reverse:
            resources = self._load_reverse(relationship, primary)
            self._collect(resources, seen, included, relationship, "reverse")

        return included

    def _load_forward(
        self, relationship: Relationship, primary: Sequence[MatchedEntity], seen: Set[ResourceKey]
    ) -> List[Any]:
        identifiers: List[str] = []
        for match in primary:
            for reference in _as_references(relationship.references(match.entity)):
                if not reference:
                    continue
                identifier = _strip_type(str(reference))
                if (relationship.target_type, identifier) in seen or identifier in identifiers:
                    continue
                identifiers.append(identifier)

        if not identifiers:
            return []

        handle = self.registry.get_handle(relationship.target_type)
        entities = handle.dao.get_entities_by_identifiers(identifiers)
        return self._translate(handle, entities)

    def _load_reverse(self, relationship: Relationship, primary: Sequence[MatchedEntity]) -> List[Any]:
        primary_ids = list(dict.fromkeys(
            resource_id for _, resource_id in (resource_key(match.resource) for match in primary)
            if resource_id
        ))
        if not primary_ids:
            return []

        references = ReferenceOrListParam(values=tuple(
            ReferenceParam(value=resource_id, resource_type=relationship.target_type)
            for resource_id in primary_ids
        ))
        params = SearchParameterMap()
        if relationship.search_property:
            params.add_parameter(relationship.search_handler, relationship.search_property, references)
        else:
            params.add_parameter(relationship.search_handler, references)

        handle = self.registry.get_handle(relationship.source_type)
        identifiers = list(dict.fromkeys(handle.dao.get_search_result_identifiers(params.freeze())))
        if not identifiers:
            return []

        entities = handle.dao.get_entities_by_identifiers(identifiers)
        return self._translate(handle, entities)

    def _translate(self, handle: ResourceHandle, entities: Iterable[Any]) -> List[Any]:
        resources = []
        for entity in entities:
            resource = translate_entity(handle.translator, entity, handle.resource_type, self.metrics)
            if resource is not None:
                resources.append(resource)
        return resources

    def _collect(
        self,
        resources: Iterable[Any],
        seen: Set[ResourceKey],
        included: List[Any],
        relationship: Relationship,
        direction: str,
    ) -> None:
        added = 0
        for resource in resources:
            key = resource_key(resource)
            if key[1] is not None and key in seen:
                continue
            seen.add(key)
            included.append(resource)
            added += 1

        logger.debug("Included %d resources through %s (%s)", added, relationship, direction)
        if self.metrics is not None and added:
            loaded_type = relationship.source_type if direction == "reverse" else relationship.target_type
            self.metrics.increment_counter(
                "included_resources_total",
                value=added,
                labels={"resource_type": loaded_type, "direction": direction},
            )
