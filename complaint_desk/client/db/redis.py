from redis.asyncio import Redis

import complaint_desk.config.config as configs

redis_client = Redis.from_url(configs.REDIS_URL, decode_responses=True)
