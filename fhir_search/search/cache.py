"""
Cache for live bundle providers.

Providers are parked under their identity so later requests for the next or
previous page of a search can reuse the provider, and with it the identifier
list and count it has already computed.
"""

import threading
import time
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from fhir_search import constants
from fhir_search.config.config import SearchConfig
from fhir_search.search.bundle_provider import BaseBundleProvider
from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)


class CacheEntry(BaseModel):
    """Model for a cache entry."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    provider: BaseBundleProvider
    created_at: float = Field(default_factory=time.time)
    expires_at: Optional[float] = None
    resource_types: Set[str] = Field(default_factory=set)
    last_accessed: float = Field(default_factory=time.time)
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class CacheOptions(BaseModel):
    """Options for the provider cache."""

    enabled: bool = True
    ttl: int = Field(3600, ge=0)  # Time to live in seconds; 0 keeps entries until evicted
    max_size: int = Field(constants.PAGING_CACHE_SIZE, ge=1)

    @classmethod
    def from_search_config(cls, config: SearchConfig) -> "CacheOptions":
        return cls(ttl=config.paging_cache_ttl, max_size=config.paging_cache_size)


class BundleProviderCache:
    """FIFO store of bundle providers keyed by identity."""

    def __init__(self, options: Optional[CacheOptions] = None):
        """
        Initialize the cache.

        Args:
            options: Cache options
        """
        self.options = options or CacheOptions()
        self._cache: Dict[str, CacheEntry] = {}
        self._resource_index: Dict[str, Set[str]] = {}  # Resource type -> identities
        self._lock = threading.RLock()
        logger.info("Bundle provider cache initialized with options: %s", self.options)

    def put(self, provider: BaseBundleProvider, ttl: Optional[int] = None) -> str:
        """
        Store a provider.

        Args:
            provider: Provider to store
            ttl: Time to live in seconds (overrides default)

        Returns:
            The identity the provider is stored under
        """
        identity = provider.identity
        if not self.options.enabled:
            return identity

        cache_ttl = ttl if ttl is not None else self.options.ttl
        now = time.time()
        entry = CacheEntry(
            provider=provider,
            created_at=now,
            expires_at=now + cache_ttl if cache_ttl > 0 else None,
            resource_types=set(provider.resource_types),
            last_accessed=now,
        )

        with self._lock:
            self._remove_entry(identity)
            if len(self._cache) >= self.options.max_size:
                self._cleanup()

            self._cache[identity] = entry
            for resource_type in entry.resource_types:
                self._resource_index.setdefault(resource_type, set()).add(identity)

        logger.debug("Cached bundle provider %s", identity)
        return identity

    def get(self, identity: str) -> Optional[BaseBundleProvider]:
        """
        Get a provider by identity.

        Returns:
            The provider if present and not expired, None otherwise
        """
        if not self.options.enabled:
            return None

        with self._lock:
            entry = self._cache.get(identity)
            if entry is None:
                return None

            now = time.time()
            if entry.is_expired(now):
                logger.debug("Cached bundle provider %s expired", identity)
                self._remove_entry(identity)
                return None

            entry.last_accessed = now
            entry.access_count += 1
            return entry.provider

    def remove(self, identity: str) -> None:
        with self._lock:
            self._remove_entry(identity)

    def invalidate(self, resource_type: Optional[str] = None) -> None:
        """
        Invalidate providers for a specific resource type or all providers.

        Args:
            resource_type: Resource type to invalidate (optional, invalidates all if None)
        """
        with self._lock:
            if resource_type is None:
                self._cache.clear()
                self._resource_index.clear()
                logger.info("Invalidated all cached bundle providers")
                return

            identities = set(self._resource_index.get(resource_type, ()))
            for identity in identities:
                self._remove_entry(identity)

        logger.info("Invalidated %d cached bundle providers for resource type: %s", len(identities), resource_type)

    def _remove_entry(self, identity: str) -> None:
        entry = self._cache.pop(identity, None)
        if entry is None:
            return

        for resource_type in entry.resource_types:
            identities = self._resource_index.get(resource_type)
            if identities is None:
                continue
            identities.discard(identity)
            if not identities:
                del self._resource_index[resource_type]

    def _cleanup(self) -> None:
        """
        Make room for one entry.

        Expired entries go first, then the oldest entries in insertion order.
        """
        now = time.time()
        expired = [identity for identity, entry in self._cache.items() if entry.is_expired(now)]
        for identity in expired:
            self._remove_entry(identity)

        evicted = 0
        while self._cache and len(self._cache) >= self.options.max_size:
            oldest = next(iter(self._cache))
            self._remove_entry(oldest)
            evicted += 1

        logger.debug("Cleaned up %d expired and %d oldest cached bundle providers", len(expired), evicted)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, identity: str) -> bool:
        return identity in self._cache

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        with self._lock:
            now = time.time()
            expired_count = sum(1 for entry in self._cache.values() if entry.is_expired(now))
            resource_counts = {
                resource_type: len(identities)
                for resource_type, identities in self._resource_index.items()
            }

            avg_age = 0.0
            if self._cache:
                avg_age = sum(now - entry.created_at for entry in self._cache.values()) / len(self._cache)

            return {
                "total_entries": len(self._cache),
                "expired_entries": expired_count,
                "resource_counts": resource_counts,
                "avg_age_seconds": avg_age,
                "enabled": self.options.enabled,
                "max_size": self.options.max_size,
                "ttl": self.options.ttl,
            }
