"""
Tests for the Response Orchestrator

Tests grounded and ungrounded turns, citations, failure handling,
cancellation, streaming, feedback and history.
"""

import asyncio
import time

import pytest

from conftest import build_stack, feedback_count, make_document
from husky.core.errors import (
    NotFoundError,
    PermanentProviderError,
    TransientProviderError,
    ValidationError,
)
from husky.core.models import Role, SourceType
from husky.core.orchestrator import NO_GROUNDING_INSTRUCTION


async def seed_directory(index):
    await index.upsert(
        make_document(SourceType.MEMBER, "ada", [1.0, 0.0, 0.0, 0.0], "Ada Lovelace")
    )
    await index.upsert(
        make_document(SourceType.PROJECT, "carbon", [0.9, 0.1, 0.0, 0.0], "Carbon Ledger")
    )


# ----------------------------------------------------------------------
# Chat turns
# ----------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_grounded_answer_with_citations(self, orchestrator, index, provider, store):
        await seed_directory(index)
        provider.answer = "Ada Lovelace leads climate work [1], see also [2]."

        result = await orchestrator.chat("Who is working on climate tech?", "u1")

        assert result.grounded is True
        assert result.citations == ["member:ada", "project:carbon"]
        assert result.actions == [
            {
                "type": "member",
                "name": "Ada Lovelace",
                "link": "https://directory.plnetwork.io/members/ada",
            },
            {
                "type": "project",
                "name": "Carbon Ledger",
                "link": "https://directory.plnetwork.io/projects/carbon",
            },
        ]
        system = provider.chat_calls[-1][0]["content"]
        assert "[1] Member: Ada Lovelace" in system
        assert "[2] Project: Carbon Ledger" in system

        messages = await store.list_messages(result.thread_id)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT]
        assert messages[1].id == result.message_id
        assert messages[1].citations == ("member:ada", "project:carbon")

    @pytest.mark.asyncio
    async def test_only_markers_used_are_cited(self, orchestrator, index, provider):
        await seed_directory(index)
        provider.answer = "The Carbon Ledger project [2] fits. [7] is not a record."

        result = await orchestrator.chat("climate projects?", "u1")

        assert result.citations == ["project:carbon"]
        assert [a["type"] for a in result.actions] == ["project"]

    @pytest.mark.asyncio
    async def test_ungrounded_answer(self, orchestrator, provider):
        provider.answer = "I could not find matching records in the directory."

        result = await orchestrator.chat("Who plays jazz piano?", "u1")

        assert result.grounded is False
        assert result.citations == []
        assert result.actions == []
        assert NO_GROUNDING_INSTRUCTION in provider.chat_calls[-1][0]["content"]

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades_to_ungrounded(self, orchestrator, index, provider):
        await seed_directory(index)
        provider.embed_errors = [PermanentProviderError("embedding model unavailable")]

        result = await orchestrator.chat("Who is working on climate tech?", "u1")

        assert result.grounded is False
        assert result.answer == "Here is what I found."

    @pytest.mark.asyncio
    async def test_history_flows_into_prompt(self, orchestrator, provider):
        first = await orchestrator.chat("My name is Sam.", "u1")

        await orchestrator.chat("What is my name?", "u1", first.thread_id)

        prompt = provider.chat_calls[-1]
        assert [m["role"] for m in prompt] == ["system", "user", "assistant", "user"]
        assert prompt[1]["content"] == "My name is Sam."
        assert prompt[-1]["content"] == "What is my name?"

    @pytest.mark.asyncio
    async def test_empty_completion_gets_fallback(self, orchestrator, provider):
        provider.answer = "   "

        result = await orchestrator.chat("hello", "u1")

        assert result.answer == "I was unable to generate an answer."

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message, user_id",
        [("", "u1"), ("   ", "u1"), ("hello", ""), ("x" * 4001, "u1"), (None, "u1")],
    )
    async def test_invalid_input(self, orchestrator, store, message, user_id):
        with pytest.raises(ValidationError):
            await orchestrator.chat(message, user_id)

        assert await store.list_threads("u1") == []

    @pytest.mark.asyncio
    async def test_unknown_thread(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.chat("hello", "u1", "no-such-thread")


# ----------------------------------------------------------------------
# Failure and cancellation
# ----------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_timeouts_leave_no_assistant_message(
        self, make_settings, provider
    ):
        settings = make_settings(LLM_TIMEOUT_SECONDS=0.05, LLM_MAX_ATTEMPTS=3)
        sessions, orchestrator = build_stack(settings, provider)
        first = await orchestrator.chat("hello", "u1")
        provider.complete_delay = 1.0

        with pytest.raises(TransientProviderError) as exc_info:
            await orchestrator.chat("are you there?", "u1", first.thread_id)

        assert exc_info.value.retryable is True
        assert len(provider.chat_calls) == 1 + 3
        messages = await sessions.store.list_messages(first.thread_id)
        assert [(m.role, m.text) for m in messages[2:]] == [(Role.USER, "are you there?")]

    @pytest.mark.asyncio
    async def test_cancelled_turn_persists_no_answer(self, orchestrator, provider, store):
        first = await orchestrator.chat("hello", "u1")
        provider.complete_delay = 0.5

        task = asyncio.create_task(orchestrator.chat("slow one", "u1", first.thread_id))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        messages = await store.list_messages(first.thread_id)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.USER]

        # The thread is usable again once the cancelled turn let go of it
        provider.complete_delay = 0.0
        result = await orchestrator.chat("still there?", "u1", first.thread_id)
        assert result.answer == "Here is what I found."

    @pytest.mark.asyncio
    async def test_queued_turns_do_not_starve_other_threads(self, make_settings, provider):
        settings = make_settings(CHAT_MAX_CONCURRENCY=2, INGESTION_CONCURRENCY=1)
        sessions, orchestrator = build_stack(settings, provider)
        busy = await orchestrator.chat("hello", "u1")
        provider.complete_delay = 0.3

        slow = asyncio.create_task(orchestrator.chat("slow", "u1", busy.thread_id))
        queued = asyncio.create_task(orchestrator.chat("queued", "u1", busy.thread_id))
        await asyncio.sleep(0.05)
        provider.complete_delay = 0.0

        started = time.monotonic()
        other = await orchestrator.chat("unrelated", "u2")
        elapsed = time.monotonic() - started

        assert elapsed < 0.15
        assert other.answer == "Here is what I found."
        await asyncio.gather(slow, queued)
        messages = await sessions.store.list_messages(busy.thread_id)
        assert [m.text for m in messages[2::2]] == ["slow", "queued"]


# ----------------------------------------------------------------------
# Streaming
# ----------------------------------------------------------------------


class TestChatStream:
    @pytest.mark.asyncio
    async def test_stream_tokens_then_done(self, orchestrator, provider, store):
        events = [e async for e in orchestrator.chat_stream("hello", "u1")]

        tokens = [data for kind, data in events if kind == "token"]
        kind, result = events[-1]
        assert kind == "done"
        assert "".join(tokens) == "Here is what I found."
        assert result.answer == "Here is what I found."
        messages = await store.list_messages(result.thread_id)
        assert messages[-1].text == "Here is what I found."
        assert messages[-1].id == result.message_id

    @pytest.mark.asyncio
    async def test_abandoned_stream_persists_nothing(self, orchestrator, provider, store):
        first = await orchestrator.chat("hello", "u1")

        stream = orchestrator.chat_stream("tell me more", "u1", first.thread_id)
        kind, _ = await stream.__anext__()
        assert kind == "token"
        await stream.aclose()

        assert provider.streams_closed == 1
        messages = await store.list_messages(first.thread_id)
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.USER]

    @pytest.mark.asyncio
    async def test_stream_validation(self, orchestrator):
        with pytest.raises(ValidationError):
            async for _ in orchestrator.chat_stream("", "u1"):
                pass


# ----------------------------------------------------------------------
# Feedback and history
# ----------------------------------------------------------------------


class TestFeedbackAndHistory:
    @pytest.mark.asyncio
    async def test_submit_feedback(self, orchestrator, store):
        result = await orchestrator.chat("hello", "u1")

        accepted = await orchestrator.submit_feedback(
            result.thread_id, result.message_id, "u1", 5, "spot on"
        )

        assert accepted is True
        assert feedback_count(store, result.message_id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, True, "5"])
    async def test_rating_out_of_range(self, orchestrator, rating):
        result = await orchestrator.chat("hello", "u1")

        with pytest.raises(ValidationError):
            await orchestrator.submit_feedback(
                result.thread_id, result.message_id, "u1", rating
            )

    @pytest.mark.asyncio
    async def test_feedback_on_unknown_message(self, orchestrator):
        result = await orchestrator.chat("hello", "u1")

        with pytest.raises(NotFoundError):
            await orchestrator.submit_feedback(result.thread_id, "missing", "u1", 4)
        with pytest.raises(NotFoundError):
            await orchestrator.submit_feedback(result.thread_id, result.message_id, "u2", 4)

    @pytest.mark.asyncio
    async def test_get_history(self, orchestrator):
        first = await orchestrator.chat("hello", "u1")
        await orchestrator.chat("again", "u1", first.thread_id)

        history = await orchestrator.get_history(first.thread_id, "u1")

        assert history["thread"]["id"] == first.thread_id
        assert [m["position"] for m in history["messages"]] == [1, 2, 3, 4]
        assert history["summary"] is None

    @pytest.mark.asyncio
    async def test_list_threads(self, orchestrator):
        first = await orchestrator.chat("hello", "u1")
        await orchestrator.chat("hi", "u2")

        listing = await orchestrator.list_threads("u1")

        assert [t["id"] for t in listing["threads"]] == [first.thread_id]
        with pytest.raises(ValidationError):
            await orchestrator.list_threads(" ")
