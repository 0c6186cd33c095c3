"""
Distributed Mutex

Key-scoped mutual exclusion across service instances, built on the shared
cache's atomic set-if-absent with expiry.

Key format: {prefix}:loan:lock:{key}   e.g. library:loan:lock:member:42
TTL: lease (default 30s), reclaims locks of crashed or hung holders.
"""

import asyncio
import time
import uuid
from contextlib import contextmanager
from typing import Optional

import structlog

from app.config import settings

logger = structlog.get_logger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock could not be acquired within the wait budget."""

    def __init__(self, key: str, waited_seconds: float, message: Optional[str] = None):
        self.key = key
        self.waited_seconds = waited_seconds

        if message is None:
            message = f"Timeout waiting for lock '{key}' after {waited_seconds:.1f}s"
        super().__init__(message)


def member_lock_key(member_id: int) -> str:
    return f"member:{member_id}"


def new_owner_token() -> str:
    """Fresh opaque token identifying one lock holder."""
    return str(uuid.uuid4())


class DistributedMutex:
    """
    Cross-process mutex with token-checked release.

    acquire() is a single SET NX EX against the shared cache. release()
    deletes only while the stored token is the caller's, so a holder whose
    lease expired cannot delete the lock of the next holder.

    The acquire -> wait -> acquire-once retry policy lives in hold(), not in
    acquire().

    Usage:
        mutex = DistributedMutex(get_cache())
        with mutex.hold(member_lock_key(member_id)):
            ...
    """

    KEY_PREFIX = "loan:lock"

    def __init__(
        self,
        cache,
        lease_seconds: Optional[int] = None,
        wait_timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        namespace: Optional[str] = None
    ):
        """
        Initialize mutex on a shared cache.

        Args:
            cache: Shared cache (RedisCache or MemoryCache).
            lease_seconds: Lock expiry. Defaults to settings.lock_lease_seconds.
            wait_timeout_seconds: Budget for hold()'s wait step.
                                  Defaults to settings.lock_wait_timeout_seconds.
            poll_interval_seconds: Polling interval of wait_for_release().
                                   Defaults to settings.lock_poll_interval_ms.
            namespace: Key namespace. Defaults to settings.cache_key_prefix.
        """
        self.cache = cache
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.lock_lease_seconds
        self.wait_timeout_seconds = (
            wait_timeout_seconds if wait_timeout_seconds is not None
            else settings.lock_wait_timeout_seconds
        )
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None
            else settings.lock_poll_interval_ms / 1000.0
        )
        self.namespace = namespace if namespace is not None else settings.cache_key_prefix
        self.logger = logger.bind(service="distributed_lock")

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{self.KEY_PREFIX}:{key}"

    def acquire(self, key: str, owner_token: str, lease_seconds: Optional[int] = None) -> bool:
        """
        Try to become the holder of key.

        Args:
            key: Lock key, e.g. 'member:42'
            owner_token: Opaque token of this holder
            lease_seconds: Expiry override for this lock

        Returns:
            True if this caller now holds the lock, False if someone else does
        """
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        acquired = self.cache.set_if_absent(self._key(key), owner_token, lease)

        if acquired:
            self.logger.debug("lock_acquired", lock_key=key, lease_seconds=lease)
        else:
            self.logger.debug("lock_busy", lock_key=key)

        return acquired

    def wait_for_release(self, key: str, max_wait_seconds: Optional[float] = None) -> bool:
        """
        Block until key is free or the deadline passes.

        Polls every poll_interval_seconds; never spins.

        Returns:
            True if the lock disappeared, False on timeout
        """
        budget = self.wait_timeout_seconds if max_wait_seconds is None else max_wait_seconds
        deadline = time.monotonic() + budget
        full_key = self._key(key)

        while True:
            if not self.cache.exists(full_key):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning("lock_wait_timeout", lock_key=key, waited_seconds=budget)
                return False
            time.sleep(min(self.poll_interval_seconds, remaining))

    async def async_wait_for_release(self, key: str, max_wait_seconds: Optional[float] = None) -> bool:
        """wait_for_release() for coroutine callers; yields to the loop between polls."""
        budget = self.wait_timeout_seconds if max_wait_seconds is None else max_wait_seconds
        deadline = time.monotonic() + budget
        full_key = self._key(key)

        while True:
            if not self.cache.exists(full_key):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning("lock_wait_timeout", lock_key=key, waited_seconds=budget)
                return False
            await asyncio.sleep(min(self.poll_interval_seconds, remaining))

    def release(self, key: str, owner_token: str) -> bool:
        """
        Release key if owner_token still holds it.

        Returns:
            True if the lock was deleted, False if it had expired or
            belongs to another holder
        """
        released = self.cache.delete_if_equals(self._key(key), owner_token)

        if released:
            self.logger.debug("lock_released", lock_key=key)
        else:
            self.logger.warning("lock_release_skipped", lock_key=key, reason="not_owner_or_expired")

        return released

    def exists(self, key: str) -> bool:
        return self.cache.exists(self._key(key))

    def acquire_or_wait(
        self,
        key: str,
        owner_token: str,
        max_wait_seconds: Optional[float] = None,
        lease_seconds: Optional[int] = None
    ) -> None:
        """
        Acquire key, waiting once for the current holder if it is taken.

        Raises:
            LockTimeoutError: holder did not release in time, or another
                              waiter won the lock after the release
        """
        if self.acquire(key, owner_token, lease_seconds):
            return

        budget = self.wait_timeout_seconds if max_wait_seconds is None else max_wait_seconds

        if not self.wait_for_release(key, budget):
            raise LockTimeoutError(key, budget)

        if not self.acquire(key, owner_token, lease_seconds):
            raise LockTimeoutError(
                key,
                budget,
                message=f"Failed to acquire lock '{key}' after waiting"
            )

    @contextmanager
    def hold(self, key: str, max_wait_seconds: Optional[float] = None, lease_seconds: Optional[int] = None):
        """
        Context manager around acquire_or_wait() and release().

        The lock is released when the block exits, whatever the outcome.

        Yields:
            Owner token of this holder
        """
        owner_token = new_owner_token()
        self.acquire_or_wait(key, owner_token, max_wait_seconds, lease_seconds)
        try:
            yield owner_token
        finally:
            self.release(key, owner_token)

    def __repr__(self) -> str:
        return (
            f"DistributedMutex(namespace='{self.namespace}', "
            f"lease={self.lease_seconds}s, wait={self.wait_timeout_seconds}s)"
        )
