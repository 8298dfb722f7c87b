"""
Tiered caching: a session tier in front of a TTL-bounded persistent tier.
"""
from .core import CacheEntry, CacheTier, CorruptEntry, DataCategory
from .ttl_policies import (
    CACHE_KEYS,
    TTL_CONFIG,
    get_category_for_key,
    get_ttl_for_category,
    get_ttl_for_key,
)
from .stores import KeyValueStore, MemoryStore, SQLStore
from .manager import CacheManager, get_cache_key

__all__ = [
    # Core types
    "CacheEntry",
    "CacheTier",
    "CorruptEntry",
    "DataCategory",
    # TTL policies
    "CACHE_KEYS",
    "TTL_CONFIG",
    "get_category_for_key",
    "get_ttl_for_category",
    "get_ttl_for_key",
    # Stores
    "KeyValueStore",
    "MemoryStore",
    "SQLStore",
    # Manager
    "CacheManager",
    "get_cache_key",
]
