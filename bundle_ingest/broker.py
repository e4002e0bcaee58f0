import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from bundle_ingest.config import Settings, settings


def create_redis(cfg: Settings = settings) -> aioredis.Redis:
    """Build the broker connection for the queue.

    Per-command retries are bounded and connection attempts time out, so a
    flaky broker surfaces as an error instead of blocking a caller forever.
    No socket read timeout is set because workers block on BLMOVE.
    """
    options = dict(
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=cfg.redis_connect_timeout,
        health_check_interval=cfg.redis_health_check_interval,
        retry=Retry(ExponentialBackoff(cap=10, base=0.5), retries=cfg.redis_max_retries),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )
    if cfg.redis_url:
        return aioredis.from_url(cfg.redis_url, **options)
    return aioredis.Redis(
        host=cfg.redis_host,
        port=cfg.redis_port,
        username=cfg.redis_username,
        password=cfg.redis_password,
        **options,
    )
