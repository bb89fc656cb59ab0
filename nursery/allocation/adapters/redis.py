# redis-py has no runtime generic; subscript only for the type checker
# https://github.com/python/typeshed/issues/8242

from typing import TYPE_CHECKING

from redis.asyncio.client import Redis as Redis_

from nursery.config import config

if TYPE_CHECKING:
    Redis = Redis_[bytes]
else:
    Redis = Redis_


__all__ = ["Redis", "redis"]

redis = Redis.from_url(config.REDIS_DSN)
