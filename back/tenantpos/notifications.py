"""
Order event publishing over Redis pub/sub.

Channels:
- orders:tenant:{subdomain} - every order event of a store (staff screens)
- orders:table:{subdomain}:{table_id} - events of one table (customer screens)

Redis is optional. Publishing never raises into an order flow.
"""
import json
import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class OrderEventPublisher:
    def __init__(self, redis_url: str = ""):
        self.redis_url = redis_url
        self._client: redis.Redis | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    def _get_client(self) -> redis.Redis | None:
        if not self.enabled:
            return None
        if self._client is None:
            self._client = redis.from_url(self.redis_url)
        return self._client

    async def publish(self, tenant: str, event: dict, table_id: int | None = None) -> None:
        r = self._get_client()
        if r is None:
            return
        payload = json.dumps(event, default=str)
        try:
            await r.publish(f"orders:tenant:{tenant}", payload)
            if table_id is not None:
                await r.publish(f"orders:table:{tenant}:{table_id}", payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event.get('type')} for tenant {tenant}: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
