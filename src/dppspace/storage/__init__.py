"""
Storage providers for dppspace contract stores.
"""

from .provider import AbstractStorageProvider, StorageConfig
from .memory_provider import MemoryStorageProvider
from .redis_provider import RedisStorageProvider


def create_storage_provider(config: StorageConfig) -> AbstractStorageProvider:
    """Build the provider named by ``config.backend``."""
    if config.backend == "memory":
        return MemoryStorageProvider(config)
    if config.backend == "redis":
        return RedisStorageProvider(config)
    raise ValueError(f"Unknown storage backend: {config.backend}")


__all__ = [
    "AbstractStorageProvider",
    "StorageConfig",
    "MemoryStorageProvider",
    "RedisStorageProvider",
    "create_storage_provider",
]
