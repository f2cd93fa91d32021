"""Per-key in-memory locks for lifecycle transitions.

Every read-modify-write of an API key or its subscription (activate, renew,
cancel, expire, auto-renew, admin updates) runs under the lock of the owning
``api_key_uid`` so that concurrent requests and the maintenance sweep never
interleave on the same record.

Note: these locks only work within a single process. A multi-instance
deployment needs a shared lock service.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, Optional

from keyhub.core.config import settings
from keyhub.utils.exceptions import LockTimeout
from keyhub.utils.logger import logger


class KeyLockRegistry:
    """Lock map keyed by api_key_uid (single-instance only)"""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def get_lock(self, api_key_uid: str) -> asyncio.Lock:
        """Get or create the lock for a specific key"""
        async with self._registry_lock:
            if api_key_uid not in self._locks:
                self._locks[api_key_uid] = asyncio.Lock()
            return self._locks[api_key_uid]

    @asynccontextmanager
    async def hold(self, api_key_uid: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the lock of ``api_key_uid`` for the duration of the block.

        Raises:
            LockTimeout: the lock could not be acquired within ``timeout`` seconds
        """
        timeout = self.timeout if timeout is None else timeout
        lock = await self.get_lock(api_key_uid)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for lock of key {api_key_uid}")
            raise LockTimeout() from None
        try:
            yield
        finally:
            lock.release()

    async def cleanup(self, api_key_uid: str) -> None:
        """Drop the lock of a deleted key unless someone is holding it"""
        async with self._registry_lock:
            lock = self._locks.get(api_key_uid)
            if lock is not None and not lock.locked():
                self._locks.pop(api_key_uid, None)

    async def cleanup_many(self, api_key_uids: Iterable[str]) -> None:
        for api_key_uid in api_key_uids:
            await self.cleanup(api_key_uid)

    def is_locked(self, api_key_uid: str) -> bool:
        lock = self._locks.get(api_key_uid)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
