from collections.abc import Iterable
from typing import Any
from uuid import UUID

import orjson

from nursery.allocation.adapters.redis import Redis, redis
from nursery.allocation.constants import CACHE_INVALIDATED_CHANNEL, PRODUCT_ATS_KEY
from nursery.config import config


class AtsCache:
    """Redis-backed cache of product available-to-sell views.

    Each entry records the organisation it was computed for and is only
    served back to that organisation.
    """

    def __init__(self, client: Redis, ttl: int) -> None:
        self._client = client
        self._ttl = ttl

    @staticmethod
    def key(product_id: UUID) -> str:
        return PRODUCT_ATS_KEY.format(product_id=product_id)

    async def get(self, product_id: UUID, org_id: UUID | None) -> dict[str, Any] | None:
        raw = await self._client.get(self.key(product_id))
        if raw is None or org_id is None:
            return None
        entry = orjson.loads(raw)
        if entry.get("org_id") != str(org_id):
            return None
        return entry["view"]

    async def set(self, product_id: UUID, org_id: UUID, data: dict[str, Any]) -> None:
        entry = {"org_id": org_id, "view": data}
        await self._client.set(self.key(product_id), orjson.dumps(entry), ex=self._ttl)

    async def invalidate(self, product_ids: Iterable[UUID], paths: Iterable[str] = ()) -> None:
        product_ids = list(product_ids)
        if product_ids:
            await self._client.delete(*(self.key(p) for p in product_ids))
        await self._client.publish(
            CACHE_INVALIDATED_CHANNEL,
            orjson.dumps({"paths": list(paths), "product_ids": product_ids}),
        )


ats_cache = AtsCache(redis, config.ATS_CACHE_TTL_SECONDS)
