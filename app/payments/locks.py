"""
Redis-based mutual exclusion for multi-step payment operations.

Row locks (SELECT ... FOR UPDATE) only live as long as a transaction, and
gateway calls must never run inside one. Operations that span a gateway
call, such as issuing a refund, are serialized with a DistributedLock
instead: validation, the gateway call and result handling all happen while
the Redis key is held.

Usage:
    from payments.locks import DistributedLock

    with DistributedLock(f"refund:payment:{payment_id}", ttl=60, timeout=10):
        ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING

from django_redis import get_redis_connection

from payments.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

# Pause between acquisition attempts in blocking mode
POLL_INTERVAL_SECONDS = 0.05


class DistributedLock:
    """
    Redis lock with TTL and token ownership.

    The lock key is set with NX and an expiry, so a crashed worker can never
    hold it forever. Release checks the token in a Lua script, so a worker
    whose lock expired cannot delete a lock now owned by someone else.

    Example:
        lock = DistributedLock("refund:payment:123", ttl=60, timeout=5.0)
        try:
            with lock:
                issue_refund()
        except LockAcquisitionError:
            # Another worker is refunding this payment
            ...

    Args:
        key: Lock identifier (prefixed with "lock:payments:")
        ttl: Seconds before the lock auto-releases
        blocking: If True, acquire() polls until timeout
        timeout: Maximum wait in seconds (blocking mode only)

    Note:
        The TTL must exceed the gateway timeout times the retry budget.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:payments:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: Lock held elsewhere (non-blocking) or not
                acquired within timeout (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis):
                    return True
                time.sleep(POLL_INTERVAL_SECONDS)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """
        Release the lock if this instance holds it.

        Returns:
            True if the key was deleted, False if it was not ours (expired
            and re-acquired elsewhere) or never acquired
        """
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


__all__ = ["DistributedLock"]
