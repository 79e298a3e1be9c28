import redis.asyncio as redis
from app.core.config import settings

class RedisClient:
    def __init__(self, url: str | None = None):
        self.redis = redis.from_url(url or settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    def channel_key(self, topic: str) -> str:
        return f"{settings.CHANNEL_KEY_PREFIX}:{topic}"

    async def publish(self, topic: str, data: str) -> int:
        return await self.redis.publish(self.channel_key(topic), data)

    def pubsub(self):
        return self.redis.pubsub()

    async def ping(self) -> bool:
        return await self.redis.ping()

    async def close(self):
        await self.redis.aclose()
