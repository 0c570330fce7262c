import logging
import time
import uuid
from typing import Optional

import redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

logger = logging.getLogger(__name__)


class RedisCache:
    """Redis-backed counters and distributed locks.

    Connects lazily and degrades gracefully: when Redis is unreachable every
    operation logs a warning and returns a neutral value instead of raising.
    """

    def __init__(self, redis_url: str, password: Optional[str] = None, db: int = 0):
        self._redis_url = redis_url
        self._password = password or None
        self._db = db
        self._client: Optional[redis.Redis] = None
        self._connected = False

    def _connect(self):
        """Connect to Redis server"""
        try:
            client_kwargs = {
                'db': self._db,
                'decode_responses': False,
                'socket_connect_timeout': 2,
                'socket_timeout': 2,
                'retry_on_timeout': False,
                'health_check_interval': 0,
            }
            # Explicit password takes precedence over one embedded in the URL
            if self._password:
                client_kwargs['password'] = self._password
            self._client = redis.from_url(self._redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except RedisConnectionError as e:
            logger.error(f"RedisCache: Failed to connect to Redis - {e}")
            self._connected = False
            self._client = None
        except RedisError as e:
            error_msg = str(e)
            if 'auth' in error_msg.lower() or 'password' in error_msg.lower():
                logger.error(f"RedisCache: Authentication failed - {error_msg}. Check REDIS_PASSWORD or the password in REDIS_URL.")
            else:
                logger.warning(f"RedisCache: Connection test failed - {error_msg}")
            self._connected = False
            self._client = None

    def _ensure_connected(self) -> Optional[redis.Redis]:
        """Return a live client, reconnecting if needed, or None if Redis is down"""
        if self._connected and self._client is not None:
            return self._client
        self._connect()
        return self._client

    def _drop_connection(self):
        self._connected = False
        self._client = None

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        client = self._ensure_connected()
        if client is None:
            return False
        try:
            return bool(client.ping())
        except RedisError:
            self._drop_connection()
            return False

    def incr(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> Optional[int]:
        """
        Atomically increment a counter, setting its TTL when first created.

        Returns:
            The new value after increment, or None if Redis unavailable
        """
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot increment key {key} - Redis not available")
            return None

        try:
            new_value = client.incrby(key, amount)
            if ttl_seconds and new_value == amount:
                client.expire(key, ttl_seconds)
            logger.debug(f"RedisCache: Incremented {key} by {amount} to {new_value}")
            return new_value
        except RedisError as e:
            logger.error(f"RedisCache: Error incrementing key {key}: {e}")
            self._drop_connection()
            return None

    def get_int(self, key: str) -> Optional[int]:
        """Get an integer counter value, None when missing or unavailable"""
        client = self._ensure_connected()
        if client is None:
            return None

        try:
            data = client.get(key)
            if data is None:
                return None
            return int(data.decode('utf-8'))
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"RedisCache: Failed to decode integer for key {key}: {e}")
            return None
        except RedisError as e:
            logger.error(f"RedisCache: Error getting integer key {key}: {e}")
            self._drop_connection()
            return None

    def acquire_lock(self, lock_key: str, timeout_seconds: int = 10, block_seconds: float = 5) -> Optional[str]:
        """
        Acquire a distributed lock using SET NX EX.

        Args:
            lock_key: Unique key for the lock
            timeout_seconds: How long the lock will be held (auto-release)
            block_seconds: How long to wait trying to acquire the lock

        Returns:
            The lock token if acquired, None if another holder kept it

        Raises:
            RedisError: Redis is unavailable, so the lock state is unknown
        """
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot acquire lock {lock_key} - Redis not available")
            raise RedisConnectionError("Redis not available")

        token = str(uuid.uuid4())
        deadline = time.monotonic() + block_seconds
        try:
            while True:
                if client.set(lock_key, token, nx=True, ex=timeout_seconds):
                    logger.debug(f"RedisCache: Lock acquired - {lock_key}")
                    return token
                if time.monotonic() >= deadline:
                    break
                time.sleep(0.05)
        except RedisError as e:
            logger.error(f"RedisCache: Error acquiring lock {lock_key}: {e}")
            self._drop_connection()
            raise

        logger.debug(f"RedisCache: Failed to acquire lock - {lock_key}")
        return None

    def release_lock(self, lock_key: str, token: str):
        """Release a lock, but only if we still own it"""
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot release lock {lock_key} - Redis not available")
            return

        try:
            current = client.get(lock_key)
            if current is not None and current.decode('utf-8') == token:
                client.delete(lock_key)
                logger.debug(f"RedisCache: Lock released - {lock_key}")
            else:
                logger.warning(f"RedisCache: Lock {lock_key} expired before release")
        except RedisError as e:
            logger.error(f"RedisCache: Error releasing lock {lock_key}: {e}")
            self._drop_connection()
