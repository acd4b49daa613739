import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RedisClient:
    def __init__(self, url: str):
        self.url = url
        self.pool = None

    async def init_pool(self):
        """Initialize Redis connection pool"""
        try:
            self.pool = redis.ConnectionPool.from_url(
                self.url,
                max_connections=50,
                decode_responses=True
            )

            # Test connection
            async with redis.Redis(connection_pool=self.pool) as conn:
                await conn.ping()

            logger.info("Redis pool initialized")
        except Exception as e:
            logger.error("Redis initialization failed", error=str(e))
            raise

    async def close_pool(self):
        """Close Redis connection pool"""
        if self.pool:
            await self.pool.disconnect()
            logger.info("Redis pool closed")

    def get_client(self) -> redis.Redis:
        """Get Redis client from pool"""
        if self.pool is None:
            raise RuntimeError("Redis pool is not initialized")
        return redis.Redis(connection_pool=self.pool)
