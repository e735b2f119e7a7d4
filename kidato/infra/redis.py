"""Process-wide Redis client for the Redis document source.

Modules import ``redis_client`` once; tests point it at fakeredis with
``set_redis_client`` and every holder of the proxy follows the swap.
"""

from __future__ import annotations

import redis.asyncio as redis

from kidato.settings import settings


class RedisProxy:
	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def __getattr__(self, item):
		return getattr(self._client, item)


# Connections open lazily on first command
redis_client: RedisProxy = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
