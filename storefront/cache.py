import json
import logging
from typing import List, Optional

import redis
from fastapi.encoders import jsonable_encoder

from . import config

logger = logging.getLogger(__name__)


class ProductCache:
    """Public product listings per store, kept in redis.

    Redis being down never fails a request: reads fall through to storage
    and writes are dropped.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl: int = config.PRODUCTS_CACHE_TTL):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: Optional[str]) -> "ProductCache":
        if not url:
            return cls(None)
        return cls(redis.Redis.from_url(url, decode_responses=True))

    @staticmethod
    def key(store_id: int) -> str:
        return f"store:{store_id}:products"

    def get(self, store_id: int) -> Optional[List[dict]]:
        if self.client is None:
            return None
        try:
            cached = self.client.get(self.key(store_id))
        except redis.RedisError as e:
            logger.warning("product cache read failed: %s", e)
            return None
        return json.loads(cached) if cached else None

    def set(self, store_id: int, products) -> None:
        if self.client is None:
            return
        try:
            self.client.set(self.key(store_id), json.dumps(jsonable_encoder(products)), ex=self.ttl)
        except redis.RedisError as e:
            logger.warning("product cache write failed: %s", e)

    def invalidate(self, store_id: int) -> None:
        if self.client is None:
            return
        try:
            self.client.delete(self.key(store_id))
        except redis.RedisError as e:
            logger.warning("product cache invalidation failed: %s", e)
