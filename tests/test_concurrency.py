"""Test suite for concurrent operations."""

import asyncio

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
from recall_chat.services.extraction import EXTRACTION_SYSTEM_PROMPT

from .conftest import FakeCompletionClient


class SlowCompletionClient(FakeCompletionClient):
    """Yields to the event loop before answering, so requests interleave."""

    async def complete(self, system_prompt, history, options=None) -> str:
        await asyncio.sleep(0.01)
        return await super().complete(system_prompt, history, options)


@pytest_asyncio.fixture
async def api(settings, repository, store, locks, runner):
    client = SlowCompletionClient()
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
async def test_concurrent_chats(api):
    """Test handling multiple concurrent chats."""
    async with _client() as client:
        responses = await asyncio.gather(*[client.post("/chats") for _ in range(10)])

        assert all(r.status_code == 201 for r in responses)
        chat_ids = [r.json()["id"] for r in responses]
        assert len(set(chat_ids)) == 10


@pytest.mark.asyncio
async def test_concurrent_messages(api):
    """Every concurrent user message gets exactly one assistant reply."""
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]

        responses = await asyncio.gather(
            *[
                client.post(f"/chats/{chat_id}/messages", json={"content": f"Message {i}"})
                for i in range(5)
            ]
        )
        assert all(r.status_code == 200 for r in responses)

        messages = (await client.get(f"/chats/{chat_id}/messages")).json()
        assert len(messages) == 10
        roles = [m["role"] for m in messages]
        assert roles.count("user") == 5
        assert roles.count("assistant") == 5
        contents = {m["content"] for m in messages if m["role"] == "user"}
        assert contents == {f"Message {i}" for i in range(5)}


@pytest.mark.asyncio
async def test_concurrent_error_handling(api):
    """Test error handling under concurrent load."""
    async with _client() as client:
        bad_ids = [f"00000000-0000-0000-0000-{i:012d}" for i in range(5)]
        responses = await asyncio.gather(*[client.get(f"/chats/{chat_id}") for chat_id in bad_ids])
        assert all(r.status_code == 404 for r in responses)


class CountingExtractionClient(SlowCompletionClient):
    """Every extraction call yields two fresh session memories."""

    def __init__(self) -> None:
        super().__init__()
        self.extractions = 0

    async def complete(self, system_prompt, history, options=None) -> str:
        if system_prompt == EXTRACTION_SYSTEM_PROMPT:
            self.extractions += 1
            n = self.extractions
            self.extraction = (
                '{"memories": ['
                f'{{"content": "milestone{n}a", "category": "events"}},'
                f'{{"content": "milestone{n}b", "category": "events"}}'
                "]}"
            )
        return await super().complete(system_prompt, history, options)


@pytest.mark.asyncio
async def test_concurrent_extractions_respect_session_capacity(api, runner, settings):
    """Background extractions racing on one session never overshoot its capacity."""
    client = CountingExtractionClient()
    app.dependency_overrides[get_completion_client] = lambda: client

    headers = {"X-Session-Id": "busy-session"}
    async with _client() as http:
        chat_ids = [(await http.post("/chats")).json()["id"] for _ in range(4)]
        await asyncio.gather(
            *[
                http.post(f"/chats/{chat_id}/messages", json={"content": f"turn {i}"}, headers=headers)
                for i, chat_id in enumerate(chat_ids)
                for _ in range(2)
            ]
        )
        await runner.join()

        assert client.extractions == 8
        stats = (await http.get("/memories/statistics", headers=headers)).json()
        assert stats["session_memory_count"] == settings.max_session_memories


@pytest.mark.asyncio
async def test_high_concurrency_load(api):
    """Test system under high concurrent load."""
    async with _client() as client:
        chat_id = (await client.post("/chats")).json()["id"]

        num_requests = 30
        batch_size = 10
        for start in range(0, num_requests, batch_size):
            responses = await asyncio.gather(
                *[
                    client.post(f"/chats/{chat_id}/messages", json={"content": f"What's {i} plus {i}?"})
                    for i in range(start, start + batch_size)
                ]
            )
            assert all(r.status_code == 200 for r in responses)

        messages = (await client.get(f"/chats/{chat_id}/messages")).json()
        assert len(messages) == num_requests * 2
