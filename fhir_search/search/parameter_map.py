"""
SearchParameterMap: the protocol-agnostic description of a search.

A map is an ordered multimap of (handler, property, value) entries plus an
optional sort specification. Callers build it fluently; SearchQuery works on a
frozen snapshot so the criteria cannot change under a running search.
"""

import hashlib
import json
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from fhir_search.search.params import SortSpec, is_empty_value
from fhir_search.utils.errors import SearchConfigurationError

_NOT_SET = object()


class PropParam(BaseModel):
    """One entry of a SearchParameterMap."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    handler: str
    property_name: Optional[str] = None
    param: Any = None

    @field_validator("param")
    @classmethod
    def make_hashable(cls, v: Any) -> Any:
        """Store collections as tuples/frozensets so entries stay hashable."""
        if isinstance(v, list):
            return tuple(v)
        if isinstance(v, set):
            return frozenset(v)
        return v


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return {"__type__": type(value).__name__, **value.model_dump(mode="json")}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (frozenset, set)):
        return sorted(json.dumps(_jsonable(v), sort_keys=True) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class SearchParameterMap:
    """
    Ordered, named multimap of search criteria.

    Entries with empty values (``None``, blank strings, lists whose members are
    all empty) are treated as absent and are not stored.
    """

    def __init__(self):
        self._params: List[PropParam] = []
        self._sort_spec: Optional[SortSpec] = None
        self._frozen = False

    def _check_mutable(self) -> None:
        if self._frozen:
            raise SearchConfigurationError("Cannot modify a frozen SearchParameterMap")

    def add_parameter(self, handler: str, property_or_value: Any, value: Any = _NOT_SET) -> "SearchParameterMap":
        """
        Append a criterion.

        Called as ``add_parameter(handler, value)`` or
        ``add_parameter(handler, property, value)``.

        Returns:
            This map, for chaining
        """
        self._check_mutable()

        if value is _NOT_SET:
            property_name, value = None, property_or_value
        else:
            property_name = property_or_value

        if is_empty_value(value):
            return self

        self._params.append(PropParam(handler=handler, property_name=property_name, param=value))
        return self

    def set_sort_spec(self, sort_spec: Optional[SortSpec]) -> "SearchParameterMap":
        self._check_mutable()
        self._sort_spec = sort_spec
        return self

    @property
    def sort_spec(self) -> Optional[SortSpec]:
        return self._sort_spec

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_parameters(self, handler: str) -> List[PropParam]:
        """Return every entry registered under ``handler``, in insertion order."""
        return [p for p in self._params if p.handler == handler]

    def handlers(self) -> List[str]:
        """Handler names in first-seen order."""
        return list(dict.fromkeys(p.handler for p in self._params))

    def is_empty(self) -> bool:
        return not self._params

    def freeze(self) -> "SearchParameterMap":
        """Return an immutable snapshot of this map (self if already frozen)."""
        if self._frozen:
            return self

        snapshot = SearchParameterMap()
        snapshot._params = list(self._params)
        snapshot._sort_spec = self._sort_spec
        snapshot._frozen = True
        return snapshot

    def _identity(self) -> Tuple[Tuple[PropParam, ...], Optional[SortSpec]]:
        return tuple(self._params), self._sort_spec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": [
                [p.handler, p.property_name, _jsonable(p.param)] for p in self._params
            ],
            "sort": _jsonable(self._sort_spec),
        }

    def cache_key(self) -> str:
        """
        Stable digest of the map's structure.

        Insertion order is part of the key.
        """
        serialized = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.md5(serialized.encode()).hexdigest()

    def __iter__(self) -> Iterator[PropParam]:
        return iter(list(self._params))

    def __len__(self) -> int:
        return len(self._params)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SearchParameterMap):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self) -> int:
        # Hashed through the serialized form so dict values are supported
        if not self._frozen:
            raise TypeError("unhashable SearchParameterMap: freeze() it first")
        return hash(self.cache_key())

    def __repr__(self) -> str:
        entries = ", ".join(
            f"{p.handler}{'.' + p.property_name if p.property_name else ''}={p.param!r}"
            for p in self._params
        )
        return f"SearchParameterMap({entries}, sort={self._sort_spec!r}, frozen={self._frozen})"
