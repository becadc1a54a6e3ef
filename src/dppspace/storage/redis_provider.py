"""
Redis Storage Provider.

Shared-nothing deployments keep each connector's contract store in its own
Redis database. Write-once settlement maps onto ``SET NX``.
"""

from typing import Optional
import logging

from dppspace.exceptions import StorageError

from .provider import AbstractStorageProvider, StorageConfig

logger = logging.getLogger(__name__)


class RedisStorageProvider(AbstractStorageProvider):
    """
    Redis storage provider.

    Features:
    - Connection pooling
    - Atomic ``set_if_absent`` via ``SET key value NX``

    Requires: redis package (``pip install dppspace[redis]``)
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize Redis storage."""
        super().__init__(config)
        self._client = None
        self._pool = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        try:
            import redis.asyncio as aioredis
        except ImportError:
            raise ImportError(
                "redis package is required for RedisStorageProvider. "
                "Install with: pip install redis"
            )

        pool_kwargs = {}
        if self.config.redis_ssl:
            pool_kwargs["connection_class"] = aioredis.SSLConnection
        self._pool = aioredis.ConnectionPool(
            host=self.config.redis_host,
            port=self.config.redis_port,
            db=self.config.redis_db,
            password=self.config.redis_password,
            max_connections=self.config.pool_size,
            socket_timeout=self.config.timeout_seconds,
            socket_connect_timeout=self.config.timeout_seconds,
            decode_responses=True,
            **pool_kwargs,
        )
        self._client = aioredis.Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except Exception as e:
            raise StorageError(
                f"Cannot reach Redis at {self.config.redis_host}:{self.config.redis_port}"
            ) from e
        logger.info("Connected to Redis at %s:%s", self.config.redis_host, self.config.redis_port)

    async def disconnect(self) -> None:
        """Close connection to Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client:
                await self._client.ping()
                return True
        except Exception:
            logger.debug("Redis health check failed", exc_info=True)
        return False

    def _require_client(self):
        if self._client is None:
            raise StorageError("RedisStorageProvider is not connected")
        return self._client

    # Key-Value Operations

    async def get(self, key: str) -> Optional[str]:
        return await self._require_client().get(key)

    async def set(self, key: str, value: str) -> bool:
        return bool(await self._require_client().set(key, value))

    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self._require_client().set(key, value, nx=True))

    async def delete(self, key: str) -> bool:
        return await self._require_client().delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self._require_client().exists(key) > 0

    # Batch / Pattern Operations

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        return await self._require_client().mget(keys)

    async def keys(self, pattern: str) -> list[str]:
        client = self._require_client()
        return [key async for key in client.scan_iter(match=pattern)]
