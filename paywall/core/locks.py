import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from redis.exceptions import RedisError

from paywall.core.exceptions import ConcurrentModification
from paywall.core.redis_cache import RedisCache

logger = logging.getLogger(__name__)


class SubscriptionLockManager:
    """
    Serializes subscription mutations per user.

    Always takes an in-process lock; additionally takes a Redis lock when
    Redis is reachable so that several API instances serialize as well.
    If Redis fails while locking, the in-process lock alone is used.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        timeout_seconds: int = 10,
        block_seconds: float = 5,
    ):
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.block_seconds = block_seconds
        # user_id -> [lock, number of threads holding or waiting]
        self._local_locks: Dict[str, List] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._local_locks.get(user_id)
            if entry is None:
                entry = self._local_locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, user_id: str) -> None:
        with self._registry_lock:
            entry = self._local_locks[user_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._local_locks[user_id]

    def _acquire_distributed(self, lock_key: str, user_id: str) -> Optional[str]:
        if self.cache is None or not self.cache.ping():
            return None
        try:
            token = self.cache.acquire_lock(lock_key, self.timeout_seconds, self.block_seconds)
        except RedisError as e:
            logger.warning(f"SubscriptionLockManager: Redis lock unavailable, using local lock - user: {user_id}, {e}")
            return None
        if token is None:
            raise ConcurrentModification(
                "Subscription is being updated by another instance, please retry",
                details={"user_id": user_id},
            )
        return token

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        local = self._checkout(user_id)
        try:
            if not local.acquire(timeout=self.block_seconds):
                raise ConcurrentModification(
                    "Subscription is being updated by another request, please retry",
                    details={"user_id": user_id},
                )
            try:
                lock_key = f"lock:subscription:{user_id}"
                token = self._acquire_distributed(lock_key, user_id)
                try:
                    yield
                finally:
                    if token is not None:
                        self.cache.release_lock(lock_key, token)
            finally:
                local.release()
        finally:
            self._checkin(user_id)
