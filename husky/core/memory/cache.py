"""
Summary Cache: read-through / write-through cache of per-thread
ConversationState ({last message, summary}) in front of the store.

Writes always go to the authoritative store first, then refresh the cache;
a crash between the two can only leave the cache missing, never ahead.
"""

import asyncio
import json
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from husky.core.config import Settings, get_settings
from husky.core.memory.store import SQLiteStore
from husky.core.models import ConversationState, Message, Summary, Thread

logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: float) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryCacheClient:
    """Process-local cache with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class SummaryCache:
    """
    Read-through / write-through wrapper. Callers must hold the thread's
    session lock for ``put_*`` so updates for one thread never race.
    """

    def __init__(
        self,
        store: SQLiteStore,
        client: Optional[CacheClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.client = client or InMemoryCacheClient()
        self.ttl = self.settings.cache_ttl_seconds

    @staticmethod
    def _key(thread_id: str) -> str:
        return f"husky:thread:{thread_id}"

    # Cache-client failures degrade to a miss; the store stays authoritative.

    async def _read(self, thread_id: str) -> Optional[ConversationState]:
        try:
            raw = await self.client.get(self._key(thread_id))
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Cache read failed for {thread_id}: {e}")
            return None
        return ConversationState.from_dict(json.loads(raw)) if raw else None

    async def _write(self, state: ConversationState) -> None:
        try:
            await self.client.set(
                self._key(state.thread.id), json.dumps(state.to_dict()), self.ttl
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Cache write failed for {state.thread.id}: {e}")
            await self.invalidate(state.thread.id)

    async def invalidate(self, thread_id: str) -> None:
        try:
            await self.client.delete(self._key(thread_id))
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Cache invalidation failed for {thread_id}: {e}")

    # ── Read-through ─────────────────────────────────────────────────

    async def get(self, thread_id: str) -> Optional[ConversationState]:
        """Cached state, loading from the store on a miss. None if no such thread."""
        state = await self._read(thread_id)
        if state is not None:
            return state

        thread = await self.store.get_thread(thread_id)
        if thread is None:
            return None
        last_message, summary = await asyncio.gather(
            self.store.get_last_message(thread_id), self.store.get_summary(thread_id)
        )
        state = ConversationState(thread=thread, last_message=last_message, summary=summary)
        await self._write(state)
        return state

    # ── Write-through ────────────────────────────────────────────────

    async def put_thread(self, thread: Thread) -> ConversationState:
        await self.store.create_thread(thread)
        state = ConversationState(thread=thread)
        await self._write(state)
        return state

    async def put_message(self, message: Message) -> Message:
        await self.store.append_message(message)
        state = await self._read(message.thread_id)
        if state is not None:
            state.last_message = message
            await self._write(state)
        return message

    async def put_summary(self, summary: Summary) -> bool:
        """Returns False when the store kept a wider summary; the cache is then dropped."""
        applied = await self.store.put_summary(summary)
        state = await self._read(summary.thread_id)
        if state is not None:
            if applied:
                state.summary = summary
                state.thread.summary_ref = summary.covered_through_message_id
                await self._write(state)
            else:
                await self.invalidate(summary.thread_id)
        return applied
