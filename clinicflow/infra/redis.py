"""
Redis Connection Management

Redis connection with retry/backoff and per-key locking for the scheduling
engine. Features graceful degradation and a fail-open strategy: when Redis
is unreachable, in-process locks still serialize work inside this process
and the database unique constraints remain the final authority.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, LockError, TimeoutError, RedisError

from clinicflow.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "clinicflow:v1:"


class RedisConnectionError(Exception):
    """Raised when Redis connection fails after retries."""
    pass


class LockTimeoutError(Exception):
    """Raised when a key lock cannot be acquired within the wait timeout."""

    def __init__(self, key: str):
        super().__init__(f"Timed out waiting for lock on {key}")
        self.key = key


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Features:
    - Connection pooling
    - Automatic retries
    - Timeouts
    - Graceful failure handling
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            # Retry configuration: 3 retries with exponential backoff
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            # Test connection
            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None
        except Exception as e:
            logger.error(f"Unexpected error connecting to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        """Check if Redis is connected."""
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """
    FastAPI dependency that provides Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class KeyLockManager:
    """
    Per-key mutual exclusion for scheduling operations.

    Keys:
    - clinicflow:v1:lock:slot:{doctor}|{date}|{time}
    - clinicflow:v1:lock:appointment:{id}
    - clinicflow:v1:lock:waitlist:{doctor}|{date}
    - clinicflow:v1:lock:memo:{doctor}|{date}
    - clinicflow:v1:lock:doctor-session:{doctor}
    - clinicflow:v1:lock:doctor:{doctor}

    Every key is guarded by an in-process asyncio.Lock. When Redis locks
    are enabled and Redis is reachable, a Redis lock is taken as well so
    several API workers serialize on the same key.

    IMPORTANT: Fails OPEN on Redis errors - the operation proceeds under the
    in-process lock only.
    """

    LOCK_PREFIX = f"{APP_PREFIX}lock:"

    def __init__(
        self,
        use_redis: Optional[bool] = None,
        timeout: Optional[float] = None,
        wait_timeout: Optional[float] = None,
    ):
        self.use_redis = settings.redis_locks_enabled if use_redis is None else use_redis
        self.timeout = timeout or settings.lock_timeout_seconds
        self.wait_timeout = wait_timeout or settings.lock_wait_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _key(self, key: str) -> str:
        """Generate lock key with namespace."""
        return f"{self.LOCK_PREFIX}{key}"

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[list[str]]:
        """
        Hold locks on all keys for the duration of the block.

        Keys are de-duplicated and acquired in sorted order so two
        operations sharing keys cannot deadlock.

        Args:
            *keys: Lock keys

        Yields:
            The sorted key list actually held

        Raises:
            LockTimeoutError: A key could not be acquired in time
        """
        ordered = sorted(set(keys))
        async with AsyncExitStack() as stack:
            for key in ordered:
                await stack.enter_async_context(self._hold_one(key))
            yield ordered

    @asynccontextmanager
    async def _hold_one(self, key: str) -> AsyncIterator[None]:
        local = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(local.acquire(), timeout=self.wait_timeout)
            except asyncio.TimeoutError:
                raise LockTimeoutError(key) from None

            try:
                remote = await self._acquire_remote(key)
                try:
                    yield
                finally:
                    if remote is not None:
                        await self._release_remote(key, remote)
            finally:
                local.release()
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                self._locks.pop(key, None)

    async def _acquire_remote(self, key: str):
        if not self.use_redis:
            return None

        client = await get_redis()
        if client is None:
            logger.warning(f"Redis unavailable - lock on {key} is process-local")
            return None

        lock = client.lock(
            self._key(key),
            timeout=self.timeout,
            blocking_timeout=self.wait_timeout,
        )
        try:
            acquired = await lock.acquire()
        except (ConnectionError, TimeoutError) as e:
            logger.warning(f"Redis lock on {key} bypassed: {e}")
            return None

        if not acquired:
            raise LockTimeoutError(key)
        return lock

    async def _release_remote(self, key: str, lock) -> None:
        try:
            await lock.release()
        except LockError as e:
            # Lock outlived its timeout and was taken over
            logger.warning(f"Redis lock on {key} expired before release: {e}")
        except RedisError as e:
            logger.error(f"Failed to release Redis lock on {key}: {e}")

    def held_keys(self) -> list[str]:
        """Keys currently locked in this process."""
        return sorted(key for key, lock in self._locks.items() if lock.locked())


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
