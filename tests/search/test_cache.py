"""
Tests for the bundle provider cache.
"""

import unittest
from unittest.mock import patch

from pydantic import ValidationError

from fhir_search import constants
from fhir_search.config.config import SearchConfig
from fhir_search.search.bundle_provider import SearchQueryBundleProvider, TwoSearchQueryBundleProvider
from fhir_search.search.cache import BundleProviderCache, CacheOptions
from fhir_search.search.parameter_map import SearchParameterMap
from tests.search.fakes import DictTranslator, InMemoryDao, make_entities


def make_provider(resource_type=constants.PATIENT):
    dao = InMemoryDao(resource_type, make_entities("1", "2"))
    return SearchQueryBundleProvider(SearchParameterMap(), dao, DictTranslator(resource_type))


class TestBundleProviderCache(unittest.TestCase):
    """Tests for the bundle provider cache."""

    def setUp(self):
        """Set up test fixtures."""
        self.cache_options = CacheOptions(enabled=True, ttl=5, max_size=3)
        self.cache = BundleProviderCache(options=self.cache_options)
        self.provider = make_provider()

    def test_put_and_get(self):
        """Test storing and retrieving a provider by identity."""
        identity = self.cache.put(self.provider)

        self.assertEqual(identity, self.provider.identity)
        self.assertIs(self.cache.get(identity), self.provider)
        self.assertIn(identity, self.cache)
        self.assertEqual(len(self.cache), 1)

    def test_get_nonexistent(self):
        """Test getting an unknown identity."""
        self.assertIsNone(self.cache.get("missing"))

    def test_put_same_provider_twice(self):
        """Test that storing a provider again replaces its entry."""
        self.cache.put(self.provider)
        self.cache.put(self.provider)

        self.assertEqual(len(self.cache), 1)
        self.assertEqual(self.cache.stats()["resource_counts"], {constants.PATIENT: 1})

    @patch("fhir_search.search.cache.time.time")
    def test_expiration(self, mock_time):
        """Test that entries expire after their TTL."""
        mock_time.return_value = 1000.0
        self.cache.put(self.provider, ttl=1)
        self.assertIsNotNone(self.cache.get(self.provider.identity))

        mock_time.return_value = 1001.5
        self.assertIsNone(self.cache.get(self.provider.identity))
        self.assertEqual(len(self.cache), 0)

    @patch("fhir_search.search.cache.time.time")
    def test_zero_ttl_never_expires(self, mock_time):
        """Test that a TTL of zero keeps the entry until evicted."""
        mock_time.return_value = 1000.0
        self.cache.put(self.provider, ttl=0)

        mock_time.return_value = 10_000_000.0
        self.assertIs(self.cache.get(self.provider.identity), self.provider)

    def test_fifo_eviction(self):
        """Test that the oldest entries are evicted when the cache is full."""
        providers = [make_provider() for _ in range(4)]
        for provider in providers:
            self.cache.put(provider)

        self.assertEqual(len(self.cache), 3)
        self.assertIsNone(self.cache.get(providers[0].identity))
        for provider in providers[1:]:
            self.assertIs(self.cache.get(provider.identity), provider)

    @patch("fhir_search.search.cache.time.time")
    def test_cleanup_prefers_expired(self, mock_time):
        """Test that expired entries are evicted before live ones."""
        mock_time.return_value = 1000.0
        oldest = make_provider()
        self.cache.put(oldest)
        short_lived = make_provider()
        self.cache.put(short_lived, ttl=1)
        third = make_provider()
        self.cache.put(third)

        mock_time.return_value = 1002.0
        newest = make_provider()
        self.cache.put(newest)

        self.assertIn(oldest.identity, self.cache)
        self.assertNotIn(short_lived.identity, self.cache)
        self.assertIn(newest.identity, self.cache)

    def test_invalidate_all(self):
        """Test invalidating every entry."""
        self.cache.put(self.provider)
        self.cache.put(make_provider(constants.OBSERVATION))

        self.cache.invalidate()

        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.cache.stats()["resource_counts"], {})

    def test_invalidate_resource_type(self):
        """Test invalidating the entries of one resource type."""
        observation = make_provider(constants.OBSERVATION)
        combined = TwoSearchQueryBundleProvider(make_provider(), make_provider(constants.OBSERVATION))
        self.cache.put(self.provider)
        self.cache.put(observation)
        self.cache.put(combined)

        self.cache.invalidate(constants.OBSERVATION)

        self.assertIs(self.cache.get(self.provider.identity), self.provider)
        self.assertIsNone(self.cache.get(observation.identity))
        self.assertIsNone(self.cache.get(combined.identity))
        self.assertEqual(self.cache.stats()["resource_counts"], {constants.PATIENT: 1})

    def test_remove(self):
        """Test removing a single entry."""
        self.cache.put(self.provider)
        self.cache.remove(self.provider.identity)
        self.cache.remove(self.provider.identity)

        self.assertIsNone(self.cache.get(self.provider.identity))

    def test_stats(self):
        """Test cache statistics."""
        self.cache.put(self.provider)
        self.cache.put(make_provider(constants.OBSERVATION))

        stats = self.cache.stats()

        self.assertEqual(stats["total_entries"], 2)
        self.assertEqual(stats["expired_entries"], 0)
        self.assertEqual(stats["resource_counts"], {constants.PATIENT: 1, constants.OBSERVATION: 1})
        self.assertTrue(stats["enabled"])
        self.assertEqual(stats["max_size"], 3)
        self.assertEqual(stats["ttl"], 5)
        self.assertGreaterEqual(stats["avg_age_seconds"], 0)

    def test_disabled_cache(self):
        """Test that a disabled cache stores nothing."""
        cache = BundleProviderCache(options=CacheOptions(enabled=False))

        self.assertEqual(cache.put(self.provider), self.provider.identity)
        self.assertIsNone(cache.get(self.provider.identity))
        self.assertEqual(len(cache), 0)

    def test_options_from_search_config(self):
        """Test building options from the search configuration."""
        options = CacheOptions.from_search_config(SearchConfig(paging_cache_size=42, paging_cache_ttl=7))

        self.assertEqual(options.max_size, 42)
        self.assertEqual(options.ttl, 7)
        self.assertEqual(CacheOptions().max_size, constants.PAGING_CACHE_SIZE)

    def test_options_reject_non_positive_size(self):
        """Test that a cache must hold at least one provider."""
        with self.assertRaises(ValidationError):
            CacheOptions(max_size=0)
        with self.assertRaises(ValidationError):
            CacheOptions(ttl=-1)

        cache = BundleProviderCache(options=CacheOptions(max_size=1))
        first, second = make_provider(), make_provider()
        cache.put(first)
        cache.put(second)

        self.assertNotIn(first.identity, cache)
        self.assertIs(cache.get(second.identity), second)


if __name__ == "__main__":
    unittest.main()
