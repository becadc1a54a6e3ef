"""
In-Memory Storage Provider.

Process-local implementation for simulations and tests.
"""

from typing import Optional
import fnmatch

from .provider import AbstractStorageProvider, StorageConfig


class MemoryStorageProvider(AbstractStorageProvider):
    """
    In-memory storage provider.

    Uses a Python dictionary for storage. Data is lost on restart.
    Every operation completes without yielding to the event loop, which
    makes ``set_if_absent`` atomic for asyncio callers.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize in-memory storage."""
        super().__init__(config)
        self._data: dict[str, str] = {}
        self._connected = False

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    # Key-Value Operations

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    async def set_if_absent(self, key: str, value: str) -> bool:
        if key in self._data:
            return False
        self._data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self._data

    # Batch / Pattern Operations

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        return [self._data.get(key) for key in keys]

    async def keys(self, pattern: str) -> list[str]:
        return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
