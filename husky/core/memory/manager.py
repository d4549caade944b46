"""
Chat Session Manager: thread lifecycle, message ordering and summarization.

Per-thread state machine: New → Active → Summarizing → Active → ...
Every operation on one thread runs under that thread's lock, so a second
turn arriving early waits for the first instead of interleaving with it.
Summarization compresses older messages into the thread's summary; a turn
waits for it up to ``summary_wait_seconds`` and otherwise proceeds with
the previous summary while the new one commits in the background.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from husky.core.config import Settings, get_settings
from husky.core.errors import NotFoundError, PersistenceError, ProviderError
from husky.core.llm.client import LLMGateway
from husky.core.memory.cache import SummaryCache
from husky.core.models import (
    ConversationState,
    Message,
    Role,
    Summary,
    Thread,
    ThreadStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You maintain the running summary of a conversation between a user and "
    "Husky, the directory assistant. Preserve the names of members, teams, "
    "projects, focus areas and events that were discussed, the user's stated "
    "interests and preferences, and any open questions. Write compact prose. "
    "Output ONLY the updated summary."
)


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return max(1, len(text) // 4)


class KeyedLock:
    """Map of per-key asyncio locks, created lazily and dropped when idle."""

    def __init__(self):
        self._locks: Dict[str, List] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ThreadContext:
    """What a turn's prompt may use: the summary plus every later message."""

    summary: Optional[Summary]
    messages: List[Message] = field(default_factory=list)
    summary_updated: bool = False


class ThreadSession:
    """Handle on one thread while its lock is held."""

    def __init__(self, manager: "ChatSessionManager", state: ConversationState, created: bool):
        self.manager = manager
        self.state = state
        self.created = created
        self.current: Optional[Message] = None

    @property
    def thread(self) -> Thread:
        return self.state.thread

    @property
    def thread_id(self) -> str:
        return self.state.thread.id

    def _next_message(self, role: Role, text: str, citations: Tuple[str, ...]) -> Message:
        last = self.state.last_message
        timestamp = utcnow()
        if last is not None and timestamp < last.timestamp:
            timestamp = last.timestamp
        return Message(
            thread_id=self.thread_id,
            role=role,
            text=text,
            timestamp=timestamp,
            position=last.position + 1 if last else 1,
            citations=citations,
        )

    async def _append(self, role: Role, text: str, citations: Iterable[str] = ()) -> Message:
        citations = tuple(citations)
        message = self._next_message(role, text, citations)
        try:
            await self.manager.cache.put_message(message)
        except PersistenceError:
            # A stale cached tail makes the position collide; re-read the
            # store's tail once and try again.
            stored = await self.manager.store.get_last_message(self.thread_id)
            if stored is None or stored.position < message.position:
                raise
            logger.warning(
                f"Cached tail of {self.thread_id} was stale "
                f"(position {message.position - 1}, store has {stored.position})"
            )
            self.state.last_message = stored
            message = self._next_message(role, text, citations)
            await self.manager.cache.put_message(message)
        self.state.last_message = message
        return message

    async def add_user_message(self, text: str) -> Message:
        self.current = await self._append(Role.USER, text)
        return self.current

    async def add_assistant_message(self, text: str, citations: Iterable[str] = ()) -> Message:
        return await self._append(Role.ASSISTANT, text, citations)

    async def context(self) -> ThreadContext:
        return await self.manager.build_context(self)


class ChatSessionManager:
    def __init__(
        self,
        cache: SummaryCache,
        gateway: LLMGateway,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.store = cache.store
        self.gateway = gateway
        self._locks = KeyedLock()
        self._pending: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # ── Thread lifecycle ─────────────────────────────────────────────

    @asynccontextmanager
    async def session(
        self, thread_id: Optional[str], user_id: str
    ) -> AsyncIterator[ThreadSession]:
        """
        Hold a thread exclusively for one turn. Without a thread id a new
        thread is created; an unknown or foreign thread id is NotFoundError.
        """
        created = thread_id is None
        key = thread_id or Thread(user_id=user_id).id
        async with self._locks.acquire(key):
            if created:
                state = await self.cache.put_thread(Thread(user_id=user_id, id=key))
                logger.info(f"Created thread {key} for user {user_id}")
            else:
                state = await self.cache.get(key)
                if state is None or state.thread.user_id != user_id:
                    raise NotFoundError(f"Thread {key} not found")
            yield ThreadSession(self, state, created)

    # Cache fills happen under the thread lock so a slow reader can never
    # install state older than a turn's write.

    async def status(self, thread_id: str) -> ThreadStatus:
        if thread_id in self._pending:
            return ThreadStatus.SUMMARIZING
        async with self._locks.acquire(thread_id):
            if await self.cache.get(thread_id) is not None:
                return ThreadStatus.ACTIVE
        return ThreadStatus.NEW

    async def get_history(
        self, thread_id: str, user_id: str
    ) -> Tuple[Thread, List[Message], Optional[Summary]]:
        async with self._locks.acquire(thread_id):
            state = await self.cache.get(thread_id)
            if state is None or state.thread.user_id != user_id:
                raise NotFoundError(f"Thread {thread_id} not found")
            messages = await self.store.list_messages(thread_id)
        return state.thread, messages, state.summary

    async def list_threads(self, user_id: str) -> List[Thread]:
        return await self.store.list_threads(user_id)

    # ── Context and summarization ────────────────────────────────────

    def _needs_summary(self, uncovered: List[Message]) -> bool:
        if self.settings.summary_trigger == "tokens":
            total = sum(estimate_tokens(m.text) for m in uncovered)
            return total > self.settings.summary_threshold_tokens
        return len(uncovered) > self.settings.summary_threshold_messages

    def _summary_window(self, session: ThreadSession, uncovered: List[Message]) -> List[Message]:
        """Uncovered messages minus the current one and the most recent ones kept raw."""
        candidates = [m for m in uncovered if session.current is None or m.id != session.current.id]
        keep = self.settings.summary_keep_recent
        return candidates[: max(0, len(candidates) - keep)]

    async def build_context(self, session: ThreadSession) -> ThreadContext:
        state = session.state
        thread_id = session.thread_id
        uncovered = await self.store.list_messages(thread_id, state.covered_position)
        summary_updated = False

        if thread_id not in self._pending and self._needs_summary(uncovered):
            window = self._summary_window(session, uncovered)
            if window:
                task = asyncio.create_task(
                    self._summarize(thread_id, state.summary, window)
                )
                self._pending[thread_id] = task
                try:
                    done, _ = await asyncio.wait(
                        {task}, timeout=self.settings.summary_wait_seconds
                    )
                except asyncio.CancelledError:
                    # The turn is gone but its summary still commits.
                    self._spawn(self._commit_later(thread_id, task))
                    raise
                if task in done:
                    self._pending.pop(thread_id, None)
                    summary = task.result()
                    if summary is not None and await self._commit(summary):
                        state.summary = summary
                        summary_updated = True
                else:
                    logger.info(f"Summary for {thread_id} still running; answering with previous summary")
                    self._spawn(self._commit_later(thread_id, task))

        covered = state.covered_position
        history = [
            m
            for m in uncovered
            if m.position > covered and (session.current is None or m.id != session.current.id)
        ]
        return ThreadContext(summary=state.summary, messages=history, summary_updated=summary_updated)

    async def _summarize(
        self, thread_id: str, previous: Optional[Summary], window: List[Message]
    ) -> Optional[Summary]:
        transcript = "\n".join(
            f"{'User' if m.role == Role.USER else 'Husky'}: {m.text}" for m in window
        )
        prompt = (
            f"Previous summary:\n{previous.text if previous else '(none)'}\n\n"
            f"New messages:\n{transcript}\n\n"
            "Write the updated summary."
        )
        try:
            text = await self.gateway.complete(
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.2,
                max_tokens=self.settings.summary_max_tokens,
            )
        except ProviderError as e:
            logger.warning(f"Summarization failed for {thread_id}: {e}")
            return None
        text = (text or "").strip()
        if not text:
            return None
        last = window[-1]
        return Summary(
            thread_id=thread_id,
            text=text,
            covered_through_message_id=last.id,
            covered_through_position=last.position,
            token_count=estimate_tokens(text),
        )

    async def _commit(self, summary: Summary) -> bool:
        """Persist a summary; the caller holds the thread lock."""
        try:
            applied = await self.cache.put_summary(summary)
        except (PersistenceError, NotFoundError) as e:
            logger.warning(f"Could not store summary for {summary.thread_id}: {e}")
            return False
        if applied:
            logger.info(
                f"Summary for {summary.thread_id} now covers messages "
                f"1-{summary.covered_through_position}"
            )
        return applied

    async def _commit_later(self, thread_id: str, task: asyncio.Task) -> None:
        try:
            summary = await task
            if summary is not None:
                async with self._locks.acquire(thread_id):
                    await self._commit(summary)
        finally:
            self._pending.pop(thread_id, None)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background summary commits (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
