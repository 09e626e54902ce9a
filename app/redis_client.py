import redis.asyncio as redis

from app.config import settings


# shared async client; connections are opened lazily on first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
