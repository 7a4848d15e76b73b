"""
Tests for search query orchestration.
"""

import unittest
from datetime import date
from unittest.mock import MagicMock

from fhir_search import constants
from fhir_search.config.config import Config, SearchConfig
from fhir_search.config.properties import ConfigPropertyService
from fhir_search.search.bundle_provider import SearchEntryMode, SearchQueryBundleProvider
from fhir_search.search.include import IncludeRegistry, Relationship, SearchQueryInclude
from fhir_search.search.parameter_map import SearchParameterMap
from fhir_search.search.params import (
    DateRangeParam,
    Include,
    ReferenceAndListParam,
    ReferenceOrListParam,
    ReferenceParam,
    TokenAndListParam,
    TokenOrListParam,
    TokenParam,
)
from fhir_search.search.query import SearchQuery
from fhir_search.search.validation import SearchParameterValidator
from fhir_search.utils.errors import InvalidRequestError, UnsupportedChainError, UnsupportedIncludeError
from fhir_search.utils.metrics import MetricsManager, setup_search_metrics
from tests.search.fakes import DictTranslator, Entity, InMemoryDao, ids_of, make_entities


def match_by_patient(params, entities):
    entries = params.get_parameters(constants.PATIENT_REFERENCE_SEARCH_HANDLER)
    if not entries:
        return [e.id for e in entities]
    wanted = {reference.id_part for reference in entries[0].param.values}
    return [e.id for e in entities if e.attributes.get("subject") in wanted]


class TestSearchQuery(unittest.TestCase):
    """Tests for SearchQuery."""

    def setUp(self):
        """Set up test fixtures."""
        self.metrics = setup_search_metrics(MetricsManager())
        self.query = SearchQuery(
            property_service=ConfigPropertyService(Config(search=SearchConfig(default_page_size=5))),
            validator=SearchParameterValidator(),
            metrics=self.metrics,
        )
        self.dao = InMemoryDao(constants.PATIENT, make_entities("p1", "p2", "p3"))
        self.translator = DictTranslator(constants.PATIENT)

    def test_get_query_results_is_lazy(self):
        """Test that building a provider makes no backend calls."""
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, self.translator)

        self.assertIsInstance(provider, SearchQueryBundleProvider)
        self.assertEqual(self.dao.identifier_calls, [])
        self.assertEqual(self.dao.count_calls, [])
        self.assertEqual(self.dao.entity_calls, [])
        self.assertEqual(
            self.metrics.get_sample_value("searches_total", {"resource_type": constants.PATIENT}), 1.0
        )

    def test_params_are_frozen(self):
        """Test that later changes to the caller's map do not reach the provider."""
        params = SearchParameterMap().add_parameter(constants.NAME_SEARCH_HANDLER, "John")
        provider = self.query.get_query_results(params, self.dao, self.translator)

        params.add_parameter(constants.NAME_SEARCH_HANDLER, "Jane")

        self.assertTrue(provider.params.frozen)
        self.assertEqual(len(provider.params), 1)

    def test_empty_map_counts_all_visible(self):
        """Test that an empty map matches everything the DAO exposes."""
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, self.translator)

        self.assertEqual(provider.count(), 3)
        self.assertEqual(ids_of(provider.get_resources(0, 10)), ["p1", "p2", "p3"])

    def test_count_is_idempotent(self):
        """Test that the DAO count is asked once per provider."""
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, self.translator)

        self.assertEqual(provider.count(), 3)
        self.assertEqual(provider.count(), 3)
        self.assertEqual(len(self.dao.count_calls), 1)

    def test_token_criterion(self):
        """Test a category token search against a DAO with one match."""
        dao = InMemoryDao(
            constants.ALLERGY_INTOLERANCE,
            make_entities("a1", "a2"),
            matcher=lambda params, entities: ["a1"],
        )
        params = SearchParameterMap().add_parameter(
            constants.CATEGORY_SEARCH_HANDLER,
            TokenAndListParam.of(TokenOrListParam.of(TokenParam(code="food"))),
        )

        provider = self.query.get_query_results(params, dao, DictTranslator(constants.ALLERGY_INTOLERANCE))

        self.assertEqual(provider.count(), 1)
        resources = provider.get_resources(0, 10)
        self.assertEqual(ids_of(resources), ["a1"])
        token = dao.identifier_calls[0].get_parameters(constants.CATEGORY_SEARCH_HANDLER)[0].param
        self.assertEqual(token.values[0].values[0].code, "food")

    def test_equal_date_bounds_reach_dao_unchanged(self):
        """Test that a single-day range is passed through as given."""
        day = date(1975, 2, 2)
        range_param = DateRangeParam.between(day, day)
        params = SearchParameterMap().add_parameter(constants.DATE_RANGE_SEARCH_HANDLER, "birthdate", range_param)

        provider = self.query.get_query_results(params, self.dao, self.translator)
        provider.count()

        received = self.dao.count_calls[0].get_parameters(constants.DATE_RANGE_SEARCH_HANDLER)[0]
        self.assertEqual(received.property_name, "birthdate")
        self.assertEqual(received.param, range_param)
        self.assertEqual(received.param.lower_bound.value, received.param.upper_bound.value)

    def test_translation_failures_are_excluded(self):
        """Test that an untranslatable entity is dropped but still counted."""
        translator = DictTranslator(constants.PATIENT, failing_ids=["p2"])
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, translator)

        page = provider.get_page(0, 10)

        self.assertEqual(ids_of([e.resource for e in page]), ["p1", "p3"])
        self.assertEqual(provider.count(), 3)
        self.assertEqual(
            self.metrics.get_sample_value("translation_failures_total", {"resource_type": constants.PATIENT}), 1.0
        )

    def test_translator_returning_none_is_excluded(self):
        """Test that a None translation counts as a failure."""
        translator = DictTranslator(constants.PATIENT, none_ids=["p1"])
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, translator)

        self.assertEqual(ids_of(provider.get_resources(0, 10)), ["p2", "p3"])

    def test_backend_errors_propagate(self):
        """Test that DAO exceptions reach the caller unchanged."""
        error = RuntimeError("connection lost")
        self.dao.get_search_result_identifiers = MagicMock(side_effect=error)
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, self.translator)

        with self.assertRaises(RuntimeError) as context:
            provider.get_page(0, 10)
        self.assertIs(context.exception, error)

    def test_invalid_chain_raises_at_construction(self):
        """Test that unsupported chains are rejected before any DAO call."""
        dao = InMemoryDao(constants.OBSERVATION, [])
        params = SearchParameterMap().add_parameter(
            constants.PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceAndListParam.of(
                ReferenceOrListParam.of(ReferenceParam(value="x", resource_type=constants.PATIENT, chain="favourite-color"))
            ),
        )

        with self.assertRaises(UnsupportedChainError):
            self.query.get_query_results(params, dao, DictTranslator(constants.OBSERVATION))
        self.assertEqual(dao.identifier_calls, [])

    def test_unknown_handler_raises(self):
        """Test that unsupported handlers are rejected."""
        params = SearchParameterMap().add_parameter(constants.QUANTITY_SEARCH_HANDLER, "5")

        with self.assertRaises(InvalidRequestError):
            self.query.get_query_results(params, self.dao, self.translator)

    def test_default_validator(self):
        """Test that a query built without a validator still applies the default rules."""
        query = SearchQuery()
        observations = InMemoryDao(constants.OBSERVATION, make_entities("o1"))
        params = SearchParameterMap().add_parameter(
            constants.PATIENT_REFERENCE_SEARCH_HANDLER,
            ReferenceAndListParam.of(
                ReferenceOrListParam.of(ReferenceParam(value="x", resource_type=constants.PATIENT, chain="nonsense"))
            ),
        )

        with self.assertRaises(UnsupportedChainError):
            query.get_query_results(params, observations, DictTranslator(constants.OBSERVATION))
        self.assertEqual(observations.identifier_calls, [])
        self.assertEqual(observations.count_calls, [])

        provider = query.get_query_results(
            SearchParameterMap().add_parameter(constants.NAME_SEARCH_HANDLER, "John"), self.dao, self.translator
        )
        self.assertIsNone(provider.preferred_page_size())
        self.assertEqual(provider.count(), 3)

    def test_chain_rejected_for_type_without_rules(self):
        """Test that chains are checked even where handlers are not restricted."""
        query = SearchQuery()
        immunizations = InMemoryDao("Immunization", make_entities("i1"))
        translator = DictTranslator("Immunization")

        with self.assertRaises(UnsupportedChainError):
            query.get_query_results(
                SearchParameterMap().add_parameter(
                    constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                    ReferenceParam(value="x", resource_type=constants.PATIENT, chain="nonsense"),
                ),
                immunizations,
                translator,
            )

        provider = query.get_query_results(
            SearchParameterMap().add_parameter(
                constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                ReferenceParam(value="John", resource_type=constants.PATIENT, chain="name"),
            ),
            immunizations,
            translator,
        )
        self.assertEqual(provider.count(), 1)

    def test_preferred_page_size_from_property_service(self):
        """Test that providers read the configured default page size."""
        provider = self.query.get_query_results(SearchParameterMap(), self.dao, self.translator)

        self.assertEqual(provider.preferred_page_size(), 5)

    def test_get_matching_identifiers_drops_duplicates(self):
        """Test that duplicate identifiers from the DAO are folded."""
        dao = InMemoryDao(constants.PATIENT, make_entities("p1", "p2"), matcher=lambda p, e: ["p2", "p1", "p2"])

        self.assertEqual(self.query.get_matching_identifiers(SearchParameterMap(), dao), ["p2", "p1"])


class TestSearchQueryWithIncludes(unittest.TestCase):
    """Tests for searches that request includes."""

    def setUp(self):
        """Set up test fixtures."""
        self.patients = InMemoryDao(constants.PATIENT, make_entities("p1", "p2"))
        self.observations = InMemoryDao(
            constants.OBSERVATION,
            [Entity("o1", subject="p1"), Entity("o2", subject="p1"), Entity("o3", subject="p2")],
            matcher=match_by_patient,
        )
        self.patient_translator = DictTranslator(constants.PATIENT)
        self.observation_translator = DictTranslator(constants.OBSERVATION)

        registry = (
            IncludeRegistry()
            .register_handle(constants.PATIENT, self.patients, self.patient_translator)
            .register_handle(constants.OBSERVATION, self.observations, self.observation_translator)
            .register_relationship(
                Relationship(
                    source_type=constants.OBSERVATION,
                    name="patient",
                    target_type=constants.PATIENT,
                    references=lambda entity: [entity.attributes["subject"]],
                    search_handler=constants.PATIENT_REFERENCE_SEARCH_HANDLER,
                )
            )
        )
        self.include = SearchQueryInclude(registry)
        self.query = SearchQuery(validator=SearchParameterValidator())

    def test_forward_include(self):
        """Test that each referenced patient is included once after the matches."""
        params = SearchParameterMap().add_parameter(constants.INCLUDE_SEARCH_HANDLER, Include.parse("Observation:patient"))

        provider = self.query.get_query_results(params, self.observations, self.observation_translator, self.include)
        page = provider.get_page(0, 2)

        self.assertEqual([(e.resource["id"], e.mode) for e in page], [
            ("o1", SearchEntryMode.MATCH),
            ("o2", SearchEntryMode.MATCH),
            ("p1", SearchEntryMode.INCLUDE),
        ])

    def test_reverse_include_does_not_change_count(self):
        """Test that reverse includes add entries but not to the count."""
        plain = self.query.get_query_results(SearchParameterMap(), self.patients, self.patient_translator, self.include)
        params = SearchParameterMap().add_parameter(
            constants.REVERSE_INCLUDE_SEARCH_HANDLER, Include.parse("Observation:patient", reverse=True)
        )
        with_includes = self.query.get_query_results(params, self.patients, self.patient_translator, self.include)

        self.assertEqual(plain.count(), with_includes.count())
        page = with_includes.get_page(0, 10)
        self.assertEqual(ids_of([e.resource for e in page]), ["p1", "p2", "o1", "o2", "o3"])
        self.assertEqual(len([e for e in page if e.mode == SearchEntryMode.MATCH]), with_includes.count())

    def test_unsupported_include_raises_at_construction(self):
        """Test that an include with no registered relationship is rejected."""
        params = SearchParameterMap().add_parameter(constants.INCLUDE_SEARCH_HANDLER, Include.parse("Observation:performer"))

        with self.assertRaises(UnsupportedIncludeError):
            self.query.get_query_results(params, self.observations, self.observation_translator, self.include)
        self.assertEqual(self.observations.identifier_calls, [])

    def test_includes_ignored_without_resolver(self):
        """Test that include entries are inert when no resolver is given."""
        params = SearchParameterMap().add_parameter(constants.INCLUDE_SEARCH_HANDLER, Include.parse("Observation:patient"))

        provider = self.query.get_query_results(params, self.observations, self.observation_translator)

        self.assertEqual(ids_of(provider.get_resources(0, 10)), ["o1", "o2", "o3"])


if __name__ == "__main__":
    unittest.main()
