import asyncio
import logging
import zlib
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from weakref import WeakValueDictionary

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class DoctorLocks:
    """Serializes writers that touch one doctor's calendar.

    Inside a process an asyncio.Lock per (namespace, doctor) is taken. On
    PostgreSQL a transaction-scoped advisory lock is taken as well, so
    several API processes sharing a database serialize the same way. The
    advisory lock is released by commit/rollback of the caller's session.
    """

    def __init__(self) -> None:
        self._locks: WeakValueDictionary[tuple[str, int], asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, namespace: str, doctor_id: int) -> asyncio.Lock:
        key = (namespace, doctor_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(
        self, session: AsyncSession, namespace: str, doctor_ids: Iterable[int]
    ) -> AsyncIterator[None]:
        # Sorted acquisition so two multi-doctor holders cannot deadlock
        ordered = sorted(set(doctor_ids))
        async with AsyncExitStack() as stack:
            for doctor_id in ordered:
                await stack.enter_async_context(self._lock_for(namespace, doctor_id))
            if session.get_bind().dialect.name == "postgresql":
                for doctor_id in ordered:
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(:ns, :key)"),
                        {"ns": _namespace_key(namespace), "key": doctor_id},
                    )
            logger.debug("Holding %s lock for doctors %s", namespace, ordered)
            yield


def _namespace_key(namespace: str) -> int:
    # pg_advisory_xact_lock(int4, int4): fold the namespace into a signed int4
    return zlib.crc32(namespace.encode()) - 2**31
