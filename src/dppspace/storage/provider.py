"""
Abstract Storage Provider Interface.

Defines the contract that contract-store backends must implement.
"""

from abc import ABC, abstractmethod
from typing import Optional
from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Configuration for storage provider."""

    backend: str = Field(default="memory", description="Storage backend type (memory, redis)")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Operation timeout")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")

    # Redis-specific
    redis_host: Optional[str] = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    redis_password: Optional[str] = None
    redis_ssl: bool = False


class AbstractStorageProvider(ABC):
    """
    Abstract storage provider.

    All storage backends must implement this interface.
    Supports:
    - Key-value operations
    - Atomic set-if-absent (write-once records)
    - Pattern listing
    - Async operations
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize storage provider with configuration."""
        self.config = config or StorageConfig()

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy."""

    # Key-Value Operations

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Set value."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set value only if the key does not exist. Returns True if written.

        Must be atomic: of several concurrent callers for the same key,
        exactly one observes True.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    # Batch / Pattern Operations

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        """Get multiple values."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Get keys matching a glob pattern."""
