"""
Tests for the HTTP API (FastAPI TestClient).
"""

import json

import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from conftest import FakeProvider
from husky.api import server
from husky.core.errors import PermanentProviderError
from husky.core.ingestion.directory_source import DirectoryEntity, InMemoryDirectorySource
from husky.core.models import SourceType


@pytest.fixture
def directory():
    return InMemoryDirectorySource(
        [
            DirectoryEntity(
                SourceType.MEMBER,
                "ada",
                {"name": "Ada Lovelace", "bio": "Builds climate models"},
            ),
            DirectoryEntity(
                SourceType.TEAM,
                "helix",
                {"name": "Helix Labs", "shortDescription": "Biotech research"},
            ),
        ]
    )


@pytest.fixture
def api(monkeypatch, make_settings, directory):
    """TestClient over a freshly wired SystemState with a fake provider."""
    provider = FakeProvider()
    state = server.SystemState()
    state.initialize(
        make_settings(LLM_TIMEOUT_SECONDS=0.05), provider=provider, source=directory
    )
    monkeypatch.setattr(server, "state", state)
    # sse-starlette keeps a module-level exit event bound to the first event loop
    AppStatus.should_exit_event = None
    with TestClient(server.app) as client:
        client.provider = provider
        yield client


def sse_payloads(response):
    return [
        json.loads(line[len("data:"):].strip())
        for line in response.text.splitlines()
        if line.startswith("data:")
    ]


class TestHealthAndIngest:
    def test_health(self, api):
        response = api.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["initialized"] is True
        assert body["provider"] == "fake"
        assert body["circuit"] == "closed"
        assert body["documents"] == 0

    def test_deep_health_checks_embeddings(self, api):
        assert api.get("/api/health", params={"deep": "true"}).json()["embedding"] is True

        api.provider.embed_errors = [PermanentProviderError("bad key")]
        body = api.get("/api/health", params={"deep": "true"}).json()

        assert body["embedding"] is False
        assert body["status"] == "degraded"

    def test_ingest(self, api):
        response = api.post("/api/ingest")

        assert response.status_code == 200
        assert response.json()["processed"] == 2
        assert api.get("/api/health").json()["documents"] == 2

        again = api.post("/api/ingest").json()
        assert (again["processed"], again["skipped"]) == (0, 2)


class TestChatEndpoint:
    def test_chat_round_trip(self, api):
        api.post("/api/ingest")
        api.provider.answer = "Ada Lovelace builds climate models [1]."

        response = api.post(
            "/api/chat", json={"message": "Who works on climate?", "userId": "u1"}
        )

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {
            "threadId",
            "messageId",
            "answer",
            "citations",
            "summaryUpdated",
            "grounded",
            "actions",
        }
        assert body["citations"] == ["member:ada"]
        assert body["grounded"] is True
        assert body["actions"][0]["link"].endswith("/members/ada")

        follow_up = api.post(
            "/api/chat",
            json={"threadId": body["threadId"], "message": "Thanks!", "userId": "u1"},
        )
        assert follow_up.json()["threadId"] == body["threadId"]

    def test_empty_message_is_invalid(self, api):
        response = api.post("/api/chat", json={"message": "  ", "userId": "u1"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert response.json()["retryable"] is False

    def test_missing_user_is_invalid(self, api):
        response = api.post("/api/chat", json={"message": "hello"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unknown_thread_is_404(self, api):
        response = api.post(
            "/api/chat", json={"threadId": "nope", "message": "hello", "userId": "u1"}
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_provider_timeout_is_retryable(self, api):
        api.provider.complete_delay = 1.0

        response = api.post("/api/chat", json={"message": "hello", "userId": "u1"})

        assert response.status_code == 503
        assert response.json()["error"] == "try_again"
        assert response.json()["retryable"] is True


class TestStreamEndpoint:
    def test_stream_events(self, api):
        response = api.post("/api/chat/stream", json={"message": "hello", "userId": "u1"})

        assert response.status_code == 200
        payloads = sse_payloads(response)
        tokens = [p["content"] for p in payloads if p["type"] == "token"]
        assert "".join(tokens) == "Here is what I found."
        assert payloads[-1]["type"] == "done"
        assert payloads[-1]["answer"] == "Here is what I found."

    def test_stream_rejects_invalid_input(self, api):
        response = api.post("/api/chat/stream", json={"message": "", "userId": "u1"})

        assert response.status_code == 400

    def test_stream_reports_errors_as_events(self, api):
        response = api.post(
            "/api/chat/stream",
            json={"threadId": "nope", "message": "hello", "userId": "u1"},
        )

        payloads = sse_payloads(response)
        assert payloads == [
            {
                "type": "error",
                "error": "not_found",
                "retryable": False,
                "detail": "Thread nope not found",
            }
        ]


class TestFeedbackAndHistory:
    def test_feedback_and_history(self, api):
        chat = api.post("/api/chat", json={"message": "hello", "userId": "u1"}).json()

        feedback = api.post(
            "/api/feedback",
            json={
                "threadId": chat["threadId"],
                "messageId": chat["messageId"],
                "userId": "u1",
                "rating": 4,
                "comment": "helpful",
            },
        )
        assert feedback.status_code == 200
        assert feedback.json() == {"accepted": True}

        history = api.get(f"/api/threads/{chat['threadId']}", params={"userId": "u1"})
        assert history.status_code == 200
        assert [m["role"] for m in history.json()["messages"]] == ["user", "assistant"]

    def test_feedback_rating_out_of_range(self, api):
        chat = api.post("/api/chat", json={"message": "hello", "userId": "u1"}).json()

        response = api.post(
            "/api/feedback",
            json={
                "threadId": chat["threadId"],
                "messageId": chat["messageId"],
                "userId": "u1",
                "rating": 9,
            },
        )

        assert response.status_code == 400

    def test_history_of_foreign_thread(self, api):
        chat = api.post("/api/chat", json={"message": "hello", "userId": "u1"}).json()

        response = api.get(f"/api/threads/{chat['threadId']}", params={"userId": "u2"})

        assert response.status_code == 404

    def test_list_threads(self, api):
        chat = api.post("/api/chat", json={"message": "hello", "userId": "u1"}).json()
        api.post("/api/chat", json={"message": "hello", "userId": "u2"})

        response = api.get("/api/threads", params={"userId": "u1"})

        assert response.status_code == 200
        assert [t["id"] for t in response.json()["threads"]] == [chat["threadId"]]
        assert api.get("/api/threads").status_code == 400
