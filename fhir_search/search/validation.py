"""
Search parameter validation.

This module checks a SearchParameterMap against the handlers, properties and
chained reference properties a resource type supports, so malformed requests
are rejected before any backend work happens.
"""

from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from fhir_search import constants
from fhir_search.search.parameter_map import PropParam, SearchParameterMap
from fhir_search.search.params import (
    AndListParam,
    DateRangeParam,
    OrListParam,
    ReferenceParam,
)
from fhir_search.utils.errors import (
    ErrorDetail,
    InvalidRequestError,
    UnsupportedChainError,
)
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)

PATIENT_CHAINS = ["identifier", "given", "family", "name"]
PRACTITIONER_CHAINS = ["identifier", "given", "family", "name"]
ENCOUNTER_CHAINS = ["date", "type"]
LOCATION_CHAINS = ["name", "address-city", "address-state", "address-postalcode", "address-country"]

REFERENCE_VALUE_TYPES = ["ReferenceParam", "ReferenceOrListParam", "ReferenceAndListParam"]
TOKEN_VALUE_TYPES = ["TokenParam", "TokenOrListParam", "TokenAndListParam"]
STRING_VALUE_TYPES = ["StringParam", "StringOrListParam", "StringAndListParam", "str"]
DATE_VALUE_TYPES = ["DateRangeParam"]
QUANTITY_VALUE_TYPES = ["QuantityParam"]
HAS_VALUE_TYPES = ["HasParam", "HasOrListParam", "HasAndListParam"]


class ValidationRule(BaseModel):
    """Model for the rule attached to one search handler."""

    handler: str
    value_types: Optional[List[str]] = None
    allowed_properties: Optional[List[str]] = None
    allowed_chains: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class ResourceTypeRules(BaseModel):
    """Rules for a specific resource type."""

    allowed_handlers: List[str]
    handler_rules: Dict[str, ValidationRule] = Field(default_factory=dict)


def _reference_rule(handler: str, chains: List[str]) -> ValidationRule:
    return ValidationRule(handler=handler, value_types=REFERENCE_VALUE_TYPES, allowed_chains=chains)


def _iter_references(value: Any) -> Iterator[ReferenceParam]:
    if isinstance(value, ReferenceParam):
        yield value
    elif isinstance(value, (OrListParam, AndListParam)):
        for member in value.values:
            yield from _iter_references(member)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for member in value:
            yield from _iter_references(member)


def _as_date(value: Any) -> date:
    return value.date() if isinstance(value, datetime) else value


class SearchParameterValidator(BaseModel):
    """
    Validator for search parameter maps.

    Resource types without registered rules accept any handler, since their DAO
    interprets whatever it receives. Chained references are always checked:
    against the handler rule when there is one, otherwise against
    ``chain_allow_list``. A handler missing from both accepts no chains.
    """

    max_parameters: int = 50

    # Handlers accepted for every resource type
    common_handlers: List[str] = Field(
        default_factory=lambda: [
            constants.COMMON_SEARCH_HANDLER,
            constants.INCLUDE_SEARCH_HANDLER,
            constants.REVERSE_INCLUDE_SEARCH_HANDLER,
        ]
    )

    resource_type_rules: Dict[str, ResourceTypeRules] = Field(default_factory=dict)

    # Chains accepted per reference handler where no resource type rule says otherwise
    chain_allow_list: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            constants.PATIENT_REFERENCE_SEARCH_HANDLER: list(PATIENT_CHAINS),
            constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER: list(PRACTITIONER_CHAINS),
            constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER: list(ENCOUNTER_CHAINS),
            constants.LOCATION_REFERENCE_SEARCH_HANDLER: list(LOCATION_CHAINS),
        }
    )

    def __init__(self, **data):
        """Initialize with default rules if not provided."""
        super().__init__(**data)

        if not self.resource_type_rules:
            self._set_default_resource_type_rules()

        logger.info("Search parameter validator initialized")

    def _set_default_resource_type_rules(self):
        """Set default rules for the core clinical resource types."""
        self.resource_type_rules[constants.PATIENT] = ResourceTypeRules(
            allowed_handlers=[
                constants.NAME_SEARCH_HANDLER,
                constants.STRING_SEARCH_HANDLER,
                constants.CODED_SEARCH_HANDLER,
                constants.DATE_RANGE_SEARCH_HANDLER,
                constants.HAS_SEARCH_HANDLER,
            ],
            handler_rules={
                constants.DATE_RANGE_SEARCH_HANDLER: ValidationRule(
                    handler=constants.DATE_RANGE_SEARCH_HANDLER,
                    value_types=DATE_VALUE_TYPES,
                    allowed_properties=["birthdate", "deathDate"],
                ),
                constants.HAS_SEARCH_HANDLER: ValidationRule(
                    handler=constants.HAS_SEARCH_HANDLER,
                    value_types=HAS_VALUE_TYPES,
                ),
            },
        )

        self.resource_type_rules[constants.ENCOUNTER] = ResourceTypeRules(
            allowed_handlers=[
                constants.DATE_RANGE_SEARCH_HANDLER,
                constants.LOCATION_REFERENCE_SEARCH_HANDLER,
                constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER,
                constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                constants.CODED_SEARCH_HANDLER,
                constants.HAS_SEARCH_HANDLER,
            ],
            handler_rules={
                constants.LOCATION_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.LOCATION_REFERENCE_SEARCH_HANDLER, LOCATION_CHAINS
                ),
                constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER, PRACTITIONER_CHAINS
                ),
                constants.PATIENT_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.PATIENT_REFERENCE_SEARCH_HANDLER, PATIENT_CHAINS
                ),
                constants.DATE_RANGE_SEARCH_HANDLER: ValidationRule(
                    handler=constants.DATE_RANGE_SEARCH_HANDLER, value_types=DATE_VALUE_TYPES
                ),
            },
        )

        self.resource_type_rules[constants.OBSERVATION] = ResourceTypeRules(
            allowed_handlers=[
                constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER,
                constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                constants.OBSERVATION_REFERENCE_SEARCH_HANDLER,
                constants.CODED_SEARCH_HANDLER,
                constants.CATEGORY_SEARCH_HANDLER,
                constants.DATE_RANGE_SEARCH_HANDLER,
                constants.QUANTITY_SEARCH_HANDLER,
                constants.STRING_SEARCH_HANDLER,
            ],
            handler_rules={
                constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER, ENCOUNTER_CHAINS
                ),
                constants.PATIENT_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.PATIENT_REFERENCE_SEARCH_HANDLER, PATIENT_CHAINS
                ),
                constants.OBSERVATION_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.OBSERVATION_REFERENCE_SEARCH_HANDLER, []
                ),
                constants.CODED_SEARCH_HANDLER: ValidationRule(
                    handler=constants.CODED_SEARCH_HANDLER, value_types=TOKEN_VALUE_TYPES
                ),
                constants.DATE_RANGE_SEARCH_HANDLER: ValidationRule(
                    handler=constants.DATE_RANGE_SEARCH_HANDLER, value_types=DATE_VALUE_TYPES
                ),
                constants.QUANTITY_SEARCH_HANDLER: ValidationRule(
                    handler=constants.QUANTITY_SEARCH_HANDLER, value_types=QUANTITY_VALUE_TYPES
                ),
            },
        )

        self.resource_type_rules[constants.MEDICATION_REQUEST] = ResourceTypeRules(
            allowed_handlers=[
                constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER,
                constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER,
                constants.MEDICATION_REFERENCE_SEARCH_HANDLER,
                constants.CODED_SEARCH_HANDLER,
                constants.DATE_RANGE_SEARCH_HANDLER,
            ],
            handler_rules={
                constants.PATIENT_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.PATIENT_REFERENCE_SEARCH_HANDLER, PATIENT_CHAINS
                ),
                constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.ENCOUNTER_REFERENCE_SEARCH_HANDLER, ENCOUNTER_CHAINS
                ),
                constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.PARTICIPANT_REFERENCE_SEARCH_HANDLER, PRACTITIONER_CHAINS
                ),
                constants.MEDICATION_REFERENCE_SEARCH_HANDLER: _reference_rule(
                    constants.MEDICATION_REFERENCE_SEARCH_HANDLER, []
                ),
            },
        )

    def register(self, resource_type: str, rules: ResourceTypeRules) -> None:
        """Add or replace the rules for a resource type."""
        self.resource_type_rules[resource_type] = rules

    def validate_parameter(
        self, resource_type: Optional[str], param: PropParam
    ) -> Tuple[bool, Optional[ErrorDetail], bool]:
        """
        Validate one map entry.

        Returns:
            Tuple of (is_valid, error_detail, is_chain_error)
        """
        if isinstance(param.param, DateRangeParam):
            detail = self._validate_date_range(param)
            if detail:
                return False, detail, False

        rule: Optional[ValidationRule] = None
        resource_rules = self.resource_type_rules.get(resource_type) if resource_type else None
        if resource_rules is not None and param.handler not in self.common_handlers:
            if param.handler not in resource_rules.allowed_handlers:
                return False, ErrorDetail(
                    param=param.handler,
                    message=f"Search handler '{param.handler}' is not supported for resource type '{resource_type}'",
                ), False

            rule = resource_rules.handler_rules.get(param.handler)
            detail = self._check_rule(rule, param) if rule is not None else None
            if detail:
                return False, detail, False

        allowed_chains = rule.allowed_chains if rule is not None else self.chain_allow_list.get(param.handler, [])
        for reference in _iter_references(param.param):
            if reference is None or not reference.chain:
                continue
            if reference.chain not in allowed_chains:
                return False, ErrorDetail(
                    param=param.handler,
                    value=reference.chain,
                    message=(
                        f"Chained property '{reference.chain}' is not supported by '{param.handler}'. "
                        f"Supported: {', '.join(allowed_chains) or 'none'}"
                    ),
                ), True

        return True, None, False

    @staticmethod
    def _check_rule(rule: ValidationRule, param: PropParam) -> Optional[ErrorDetail]:
        value_type = type(param.param).__name__
        if rule.value_types and value_type not in rule.value_types:
            return ErrorDetail(
                param=param.handler,
                value=value_type,
                message=rule.error_message
                or f"Search handler '{param.handler}' does not accept values of type {value_type}",
            )

        if rule.allowed_properties is not None and param.property_name is not None:
            if param.property_name not in rule.allowed_properties:
                return ErrorDetail(
                    param=param.handler,
                    value=param.property_name,
                    message=f"Property '{param.property_name}' is not supported by '{param.handler}'",
                )
        return None

    def _validate_date_range(self, param: PropParam) -> Optional[ErrorDetail]:
        value: DateRangeParam = param.param
        if value.lower_bound is None or value.upper_bound is None:
            return None

        if _as_date(value.lower_bound.value) > _as_date(value.upper_bound.value):
            return ErrorDetail(
                param=param.handler,
                value=param.property_name,
                message="Date range lower bound is after its upper bound",
            )
        return None

    def validate_parameters(
        self, resource_type: Optional[str], params: SearchParameterMap
    ) -> Tuple[bool, List[ErrorDetail], bool]:
        """
        Validate a whole parameter map.

        Returns:
            Tuple of (is_valid, error_details, has_chain_error)
        """
        errors: List[ErrorDetail] = []
        chain_error = False

        if len(params) > self.max_parameters:
            errors.append(
                ErrorDetail(message=f"Search exceeds maximum of {self.max_parameters} parameters")
            )

        for param in params:
            is_valid, detail, is_chain_error = self.validate_parameter(resource_type, param)
            if not is_valid:
                errors.append(detail)
                chain_error = chain_error or is_chain_error

        return len(errors) == 0, errors, chain_error

    def validate_and_raise(self, resource_type: Optional[str], params: SearchParameterMap) -> None:
        """
        Validate a parameter map and raise an exception if invalid.

        Raises:
            UnsupportedChainError: If a chained reference names an unsupported property
            InvalidRequestError: If any other entry is invalid
        """
        is_valid, errors, chain_error = self.validate_parameters(resource_type, params)
        if is_valid:
            return

        logger.info(
            "Rejected search on %s: %s", resource_type, "; ".join(e.message for e in errors)
        )
        if chain_error:
            raise UnsupportedChainError(message="Invalid chained search parameter", details=errors)
        raise InvalidRequestError(message="Invalid search parameters", details=errors)

    def get_allowed_handlers(self, resource_type: str) -> List[Dict[str, Any]]:
        """
        Describe the handlers accepted for a resource type.

        Returns:
            List of handler information dictionaries
        """
        handlers = [{"handler": handler, "chains": []} for handler in self.common_handlers]

        if resource_type in self.resource_type_rules:
            resource_rules = self.resource_type_rules[resource_type]
            for handler in resource_rules.allowed_handlers:
                rule = resource_rules.handler_rules.get(handler)
                handlers.append({
                    "handler": handler,
                    "chains": list(rule.allowed_chains) if rule else list(self.chain_allow_list.get(handler, [])),
                })

        return handlers
