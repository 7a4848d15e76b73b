"""
Search parameter values.

This module provides the typed values stored in a SearchParameterMap: tokens,
references (optionally chained), date ranges, quantities, strings, reverse
chained ``_has`` constraints, includes and sort specifications. All values are
immutable and hashable so a parameter map can be compared structurally.

AND lists hold OR lists; the DAO intersects the AND groups and unions the
members of each OR group.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, model_validator


class ParamPrefix(str, Enum):
    """Comparison prefixes for ordered values (dates and quantities)."""

    EQUAL = "eq"
    NOT_EQUAL = "ne"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"
    GREATER_THAN_OR_EQUALS = "ge"
    LESS_THAN_OR_EQUALS = "le"
    STARTS_AFTER = "sa"
    ENDS_BEFORE = "eb"
    APPROXIMATE = "ap"


class TemporalPrecision(str, Enum):
    """Precision of a date search value."""

    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    MINUTE = "minute"
    SECOND = "second"
    MILLI = "milli"


class StringModifier(str, Enum):
    """Matching modes for string parameters."""

    PARTIAL = "partial"
    EXACT = "exact"
    CONTAINS = "contains"
    FUZZY = "fuzzy"


class SortOrder(str, Enum):
    """Sort directions."""

    ASC = "asc"
    DESC = "desc"


def is_empty_value(value: Any) -> bool:
    """
    Check whether a parameter value carries no criteria.

    ``None``, blank strings, empty collections, collections whose members are
    all empty and parameters reporting ``is_empty()`` all count as empty.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, SearchParam):
        return value.is_empty()
    if isinstance(value, (list, tuple, set, frozenset)):
        return all(is_empty_value(v) for v in value)
    return False


class SearchParam(BaseModel):
    """Base class for all search parameter values."""

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return False


class TokenParam(SearchParam):
    """A coded value, optionally qualified by its code system."""

    code: Optional[str] = None
    system: Optional[str] = None
    text: bool = False

    def is_empty(self) -> bool:
        return is_empty_value(self.code)


class ReferenceParam(SearchParam):
    """
    A reference to another resource.

    Without a chain, ``value`` is the id of the referenced resource. With a
    chain, ``value`` is matched against the named property of the referenced
    resource, e.g. ``subject.name=John`` becomes
    ``ReferenceParam(value="John", resource_type="Patient", chain="name")``.
    """

    value: Optional[str] = None
    resource_type: Optional[str] = None
    chain: Optional[str] = None

    @property
    def id_part(self) -> Optional[str]:
        if self.chain:
            return None
        if self.value and "/" in self.value:
            return self.value.rsplit("/", 1)[-1]
        return self.value

    def is_empty(self) -> bool:
        return is_empty_value(self.value)


class DateParam(SearchParam):
    """One bound of a date range."""

    value: Union[datetime, date]
    prefix: ParamPrefix = ParamPrefix.EQUAL
    precision: TemporalPrecision = TemporalPrecision.DAY


class DateRangeParam(SearchParam):
    """A date range; either bound may be open."""

    lower_bound: Optional[DateParam] = None
    upper_bound: Optional[DateParam] = None

    @classmethod
    def between(cls, lower: Union[datetime, date, None], upper: Union[datetime, date, None]) -> "DateRangeParam":
        """Build an inclusive range from plain values."""
        return cls(
            lower_bound=DateParam(value=lower, prefix=ParamPrefix.GREATER_THAN_OR_EQUALS) if lower else None,
            upper_bound=DateParam(value=upper, prefix=ParamPrefix.LESS_THAN_OR_EQUALS) if upper else None,
        )

    def is_empty(self) -> bool:
        return self.lower_bound is None and self.upper_bound is None


class QuantityParam(SearchParam):
    """A numeric value with an optional unit."""

    value: Optional[Decimal] = None
    unit: Optional[str] = None
    system: Optional[str] = None
    prefix: ParamPrefix = ParamPrefix.EQUAL

    def is_empty(self) -> bool:
        return self.value is None


class StringParam(SearchParam):
    """A string matched exactly, by prefix/substring, or fuzzily."""

    value: Optional[str] = None
    modifier: StringModifier = StringModifier.PARTIAL

    def is_empty(self) -> bool:
        return is_empty_value(self.value)


class HasParam(SearchParam):
    """
    A reverse chained constraint.

    ``_has:Observation:patient:code=1234`` is
    ``HasParam(target_type="Observation", reference_property="patient",
    parameter="code", value="1234")``.
    """

    target_type: str
    reference_property: str
    parameter: str
    value: Optional[str] = None

    def is_empty(self) -> bool:
        return is_empty_value(self.value)


class OrListParam(SearchParam):
    """Members are unioned."""

    values: Tuple[Any, ...] = ()

    @classmethod
    def of(cls, *values: Any):
        return cls(values=tuple(values))

    def is_empty(self) -> bool:
        return all(is_empty_value(v) for v in self.values)


class AndListParam(SearchParam):
    """Members (OR lists) are intersected."""

    values: Tuple[Any, ...] = ()

    @classmethod
    def of(cls, *values: Any):
        return cls(values=tuple(values))

    def is_empty(self) -> bool:
        return all(is_empty_value(v) for v in self.values)


class TokenOrListParam(OrListParam):
    values: Tuple[Optional[TokenParam], ...] = ()


class TokenAndListParam(AndListParam):
    values: Tuple[Optional[TokenOrListParam], ...] = ()


class ReferenceOrListParam(OrListParam):
    values: Tuple[Optional[ReferenceParam], ...] = ()


class ReferenceAndListParam(AndListParam):
    values: Tuple[Optional[ReferenceOrListParam], ...] = ()


class StringOrListParam(OrListParam):
    values: Tuple[Optional[StringParam], ...] = ()


class StringAndListParam(AndListParam):
    values: Tuple[Optional[StringOrListParam], ...] = ()


class HasOrListParam(OrListParam):
    values: Tuple[Optional[HasParam], ...] = ()


class HasAndListParam(AndListParam):
    values: Tuple[Optional[HasOrListParam], ...] = ()


class Include(SearchParam):
    """
    An ``_include`` or ``_revinclude`` entry.

    The relationship is always named from the referencing side: ``source_type``
    holds the reference called ``relationship`` to ``target_type``. A forward
    include attaches targets of primary results of ``source_type``; a reverse
    include attaches sources referencing primary results of ``target_type``.
    """

    source_type: str
    relationship: str
    target_type: Optional[str] = None
    reverse: bool = False

    @classmethod
    def parse(cls, value: str, reverse: bool = False) -> "Include":
        """Parse ``Source:relationship[:Target]``."""
        parts = value.split(":")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid include value: {value}")
        return cls(
            source_type=parts[0],
            relationship=parts[1],
            target_type=parts[2] if len(parts) == 3 else None,
            reverse=reverse,
        )

    def __str__(self) -> str:
        value = f"{self.source_type}:{self.relationship}"
        if self.target_type:
            value += f":{self.target_type}"
        return value


class SortSpec(SearchParam):
    """A sort key, optionally followed by further keys."""

    parameter: str
    order: SortOrder = SortOrder.ASC
    chain: Optional["SortSpec"] = None

    @model_validator(mode="after")
    def validate_parameter(self) -> "SortSpec":
        if not self.parameter.strip():
            raise ValueError("Sort parameter cannot be blank")
        return self

    @classmethod
    def of(cls, *keys: Union[str, Tuple[str, SortOrder]]) -> "SortSpec":
        """Build a chained sort spec; a leading '-' means descending."""
        spec: Optional[SortSpec] = None
        for key in reversed(keys):
            if isinstance(key, tuple):
                parameter, order = key
            elif key.startswith("-"):
                parameter, order = key[1:], SortOrder.DESC
            else:
                parameter, order = key, SortOrder.ASC
            spec = cls(parameter=parameter, order=order, chain=spec)
        if spec is None:
            raise ValueError("At least one sort key is required")
        return spec

    def keys(self) -> Iterable["SortSpec"]:
        spec: Optional[SortSpec] = self
        while spec is not None:
            yield spec
            spec = spec.chain


SortSpec.model_rebuild()
