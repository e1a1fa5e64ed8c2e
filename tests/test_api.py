"""Test suite for the API endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from recall_chat.api.app import (
    app,
    get_completion_client,
    get_memory_store,
    get_repository,
    get_scope_locks,
    get_settings,
    get_task_runner,
)
from recall_chat.services.chat import APOLOGY_ERROR
from recall_chat.domain.errors import CompletionUnavailable

from .conftest import FakeCompletionClient


@pytest_asyncio.fixture
async def api(settings, repository, store, locks, runner):
    """Point the app at fresh in-memory collaborators and a fake model."""
    client = FakeCompletionClient()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_memory_store] = lambda: store
    app.dependency_overrides[get_scope_locks] = lambda: locks
    app.dependency_overrides[get_task_runner] = lambda: runner
    app.dependency_overrides[get_completion_client] = lambda: client
    yield client
    app.dependency_overrides.clear()
    await runner.shutdown(timeout=1)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_create_chat(api):
    """Test creating a new chat."""
    async with _client() as client:
        response = await client.post("/chats", json={"title": "Trip planning"})
        assert response.status_code == 201
        data = response.json()
        assert data["title"] == "Trip planning"
        assert "id" in data
        assert "created_at" in data


@pytest.mark.asyncio
async def test_create_chat_defaults_title(api):
    async with _client() as client:
        response = await client.post("/chats")
        assert response.status_code == 201
        assert response.json()["title"] == "New Chat"


@pytest.mark.asyncio
async def test_system_message_hidden_from_transcript(api):
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]

        visible = (await client.get(f"/chats/{chat_id}/messages")).json()
        assert visible == []

        everything = (await client.get(f"/chats/{chat_id}/messages?include_system=true")).json()
        assert [m["role"] for m in everything] == ["system"]


@pytest.mark.asyncio
async def test_list_rename_and_delete_chat(api):
    async with _client() as client:
        for title in ["one", "two", "three"]:
            await client.post("/chats", json={"title": title})

        chats = (await client.get("/chats")).json()
        assert len(chats) == 3

        chat_id = chats[0]["id"]
        response = await client.patch(f"/chats/{chat_id}", json={"title": "renamed"})
        assert response.status_code == 200
        assert response.json()["title"] == "renamed"

        response = await client.delete(f"/chats/{chat_id}")
        assert response.status_code == 204
        assert (await client.get(f"/chats/{chat_id}")).status_code == 404
        assert (await client.get(f"/chats/{chat_id}/messages")).status_code == 404


@pytest.mark.asyncio
async def test_error_handling(api):
    """Test error handling in various scenarios."""
    async with _client() as client:
        response = await client.get("/chats/invalid-uuid")
        assert response.status_code == 422

        chat_id = (await client.post("/chats")).json()["id"]
        response = await client.post(f"/chats/{chat_id}/messages", json={"invalid_field": "test"})
        assert response.status_code == 422

        response = await client.get("/chats/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

        response = await client.post(
            "/chats/00000000-0000-0000-0000-000000000000/messages", json={"content": "hi"}
        )
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_post_message_returns_updated_transcript(api):
    api.default_reply = "Hello! How can I help you?"
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]

        response = await client.post(
            f"/chats/{chat_id}/messages", json={"content": "Hello, I'm testing the chat"}
        )
        assert response.status_code == 200
        data = response.json()
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert data["messages"][0]["content"] == "Hello, I'm testing the chat"
        assert data["messages"][1]["content"] == "Hello! How can I help you?"
        assert data["debug"] is None


@pytest.mark.asyncio
async def test_blank_message_rerenders_chat(api):
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]
        await client.post(f"/chats/{chat_id}/messages", json={"content": "first"})

        response = await client.post(f"/chats/{chat_id}/messages", json={"content": "   "})
        assert response.status_code == 422
        data = response.json()
        assert "empty" in data["detail"]
        assert [m["content"] for m in data["messages"]] == ["first", "Happy to help!"]


@pytest.mark.asyncio
async def test_completion_outage_still_replies(api):
    api.replies = [CompletionUnavailable("down")]
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]
        response = await client.post(f"/chats/{chat_id}/messages", json={"content": "Are you there?"})
        assert response.status_code == 200
        messages = response.json()["messages"]
        assert messages[-1]["role"] == "assistant"
        assert messages[-1]["content"] == APOLOGY_ERROR


@pytest.mark.asyncio
async def test_debug_flag_exposes_diagnostics(api):
    api.default_reply = "Sure."
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]
        response = await client.post(
            f"/chats/{chat_id}/messages?debug=true", json={"content": "Tell me something"}
        )
        data = response.json()
        assert data["debug"]["raw_response"] == "Sure."
        assert data["debug"]["response_format"] == "text"
        assert "DEBUG" not in data["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_memories_flow_through_endpoints(api, runner):
    api.default_reply = "Nice to meet you John! Pizza is delicious."
    api.extraction = (
        '{"memories": ['
        '{"content": "Name is John", "category": "name", "importance": "high", "type": "user"},'
        '{"content": "Is hungry right now", "category": "events", "importance": "low"}'
        "]}"
    )
    headers = {"X-Session-Id": "s-1", "X-User-Id": "u-1"}
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]
        await client.post(
            f"/chats/{chat_id}/messages",
            json={"content": "Hi, my name is John and I love pizza"},
            headers=headers,
        )
        await runner.join()

        overview = (await client.get("/memories", headers=headers)).json()
        assert overview["stats"] == {"user_memory_count": 1, "session_memory_count": 1}
        assert overview["user_memories"][0]["content"] == "Name is John"

        stats = (await client.get("/memories/statistics", headers=headers)).json()
        assert stats["session_memory_count"] == 1

        found = (await client.get("/memories/search", params={"q": "Name is John"}, headers=headers)).json()
        assert found["user_memories"][0]["record"]["content"] == "Name is John"

        other = (await client.get("/memories", headers={"X-Session-Id": "s-2"})).json()
        assert other["stats"] == {"user_memory_count": 0, "session_memory_count": 0}

        response = await client.delete("/memories/session", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        stats = (await client.get("/memories/statistics", headers=headers)).json()
        assert stats == {"user_memory_count": 1, "session_memory_count": 0}


@pytest.mark.asyncio
async def test_export_and_import_memories(api):
    source = {"X-Session-Id": "session-a", "X-User-Id": "user-a"}
    target = {"X-Session-Id": "session-z", "X-User-Id": "user-z"}
    async with _client() as client:
        payload = {
            "user_memories": [
                {"content": "Enjoys bouldering", "category": "preferences", "importance": "medium"}
            ],
            "session_memories": [],
        }
        response = await client.post("/memories/import", json=payload, headers=source)
        assert response.status_code == 200
        assert response.json()["imported"] == 1

        exported = (await client.get("/memories/export", headers=source)).json()
        assert [m["content"] for m in exported["user_memories"]] == ["Enjoys bouldering"]

        response = await client.post("/memories/import", json=exported, headers=target)
        assert response.json()["imported"] == 1

        response = await client.post("/memories/import", json=["nope"], headers=target)
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_clear_unknown_scope_is_rejected(api):
    async with _client() as client:
        response = await client.delete("/memories/everything")
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_health_and_metrics(api):
    async with _client() as client:
        assert (await client.get("/up")).json() == {"status": "ok"}
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "requests_total" in response.text
