"""Concurrency control for outbound transfers.

Provides per-user locking so the daily cap check and the ledger write of
one request cannot interleave with another request of the same user.
The lock is process local; multi-replica deployments need a database
advisory lock on top.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from payrail.errors import PayrailError

logger = logging.getLogger(__name__)

# Global lock registry: user_id -> asyncio.Lock
_user_locks: dict[str, asyncio.Lock] = {}
# Holders and waiters per user; a lock is dropped when this reaches zero
_lock_refs: dict[str, int] = {}


class LockTimeoutError(PayrailError):
    """Raised when a lock cannot be acquired within the timeout period."""

    status_code = 500


def get_user_lock(user_id: str) -> asyncio.Lock:
    """Get or create the lock for a user.

    No await between lookup and insert, so this is atomic on the event loop.
    """
    return _user_locks.setdefault(user_id, asyncio.Lock())


def _release_ref(user_id: str) -> None:
    remaining = _lock_refs.get(user_id, 1) - 1
    if remaining > 0:
        _lock_refs[user_id] = remaining
        return
    _lock_refs.pop(user_id, None)
    lock = _user_locks.get(user_id)
    if lock is not None and not lock.locked():
        del _user_locks[user_id]


@asynccontextmanager
async def user_transfer_lock(
    user_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "transfer",
) -> AsyncIterator[None]:
    """Hold exclusive access to a user's outbound transfers.

    Example:
        async with user_transfer_lock(user_id, operation="withdraw"):
            limits = await tracker.check_limit(user_id, amount)
            await repo.create_entry(...)
    """
    lock = get_user_lock(user_id)
    _lock_refs[user_id] = _lock_refs.get(user_id, 0) + 1
    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        _release_ref(user_id)
        logger.warning(f"Lock timeout for user {user_id} after {timeout}s: {operation}")
        raise LockTimeoutError(
            "Another transfer for this user is in progress, try again shortly",
            details={"operation": operation, "timeout": timeout},
        )
    except BaseException:
        _release_ref(user_id)
        raise

    logger.debug(f"Lock acquired for user {user_id}: {operation}")
    try:
        yield
    finally:
        lock.release()
        _release_ref(user_id)
        logger.debug(f"Lock released for user {user_id}: {operation}")


def is_user_locked(user_id: str) -> bool:
    lock = _user_locks.get(user_id)
    return lock is not None and lock.locked()


def active_lock_count() -> int:
    """Number of users with a lock held or awaited."""
    return len(_user_locks)


def clear_user_locks() -> None:
    """Clear all user locks (useful for testing)."""
    _user_locks.clear()
    _lock_refs.clear()
