"""Redis-backed response and product caches.

Caching is best-effort: when Redis is unreachable every read misses, every
write is skipped and invalidation reports zero keys removed.
"""
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError
from tenacity import retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

PRODUCT_LIST_PATTERN = "products:list:*"
PRODUCT_DETAIL_PATTERN = "product:detail:*"
PRODUCT_CHECKOUT_PATTERN = "product:checkout:*"
ROUTE_PATTERNS = ("cache:GET:/api/products*", "cache:GET:/products*")


def route_cache_key(path: str, query: str = "") -> str:
    """Key for a cached GET response; the query string is hashed."""
    if not query:
        return f"cache:GET:{path}"
    digest = hashlib.md5(query.encode("utf-8")).hexdigest()
    return f"cache:GET:{path}:{digest}"


class Cache:
    """Thin JSON cache over redis.asyncio."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        default_ttl: int = 3600,
        enabled: bool = True,
    ):
        """
        Initialize the cache.

        Args:
            redis_url: Connection URL, used by ``connect`` when no client is given
            client: Pre-built client (tests inject a fake)
            default_ttl: Seconds before cached entries expire
            enabled: When False the cache is a no-op
        """
        self.redis_url = redis_url
        self.client = client
        self.default_ttl = default_ttl
        self.enabled = enabled

    @property
    def available(self) -> bool:
        return self.enabled and self.client is not None

    async def connect(self):
        """Connect to Redis; the cache stays disabled if it cannot."""
        if not self.enabled or self.client is not None:
            return
        try:
            self.client = await self._connect()
            logger.info("Connected to Redis cache")
        except (RedisError, OSError) as e:
            self.client = None
            logger.warning(f"Redis unavailable, caching disabled: {str(e)}")

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=5), reraise=True)
    async def _connect(self) -> aioredis.Redis:
        client = aioredis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        await client.ping()
        return client

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None
            logger.info("Redis cache connection closed")

    async def get(self, key: str) -> Optional[Any]:
        if not self.available:
            return None
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {str(e)}")
            return None
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        if not self.available:
            return
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {str(e)}")

    async def get_or_set(self, key: str, loader: Callable[[], Awaitable[Any]], ttl: Optional[int] = None) -> Any:
        """Return the cached value, loading and storing it on a miss."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def keys_matching(self, pattern: str) -> list[str]:
        if not self.available:
            return []
        return [key async for key in self.client.scan_iter(match=pattern, count=100)]

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys or not self.available:
            return 0
        return await self.client.delete(*keys)

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``."""
        try:
            return await self.delete(await self.keys_matching(pattern))
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for {pattern}: {str(e)}")
            return 0


class ProductCacheInvalidator:
    """Drops cached product listings and details after stock changes."""

    def __init__(self, cache: Cache):
        self.cache = cache

    async def invalidate(self, product_id: Optional[str] = None) -> int:
        """
        Delete cached product entries and return how many keys were removed.

        Every product listing, detail, checkout and route entry goes. A product
        id adds patterns and direct keys specific to that product.
        Never raises; an unreachable cache yields 0.
        """
        return await self.invalidate_many([product_id] if product_id else [])

    async def invalidate_many(self, product_ids: Iterable[str]) -> int:
        """Same as ``invalidate`` for several products in one pass."""
        if not self.cache.available:
            return 0

        product_ids = sorted(set(product_ids))
        patterns = [PRODUCT_LIST_PATTERN, PRODUCT_DETAIL_PATTERN, PRODUCT_CHECKOUT_PATTERN, *ROUTE_PATTERNS]
        keys = set()
        for product_id in product_ids:
            patterns += [f"cache:GET:/api/products/{product_id}*", f"cache:GET:/products/{product_id}*"]
            keys.update((f"product:detail:{product_id}", f"product:checkout:{product_id}"))

        try:
            for pattern in patterns:
                keys.update(await self.cache.keys_matching(pattern))
            deleted = await self.cache.delete(keys)
        except (RedisError, OSError) as e:
            logger.warning(f"Product cache invalidation failed: {str(e)}")
            return 0

        logger.info(
            f"Invalidated {deleted} product cache key(s) "
            f"(products={', '.join(product_ids) or 'all'})"
        )
        return deleted
