from __future__ import annotations

import asyncio
import json

import httpx

from eddez.api_client import BackendClient, SessionStore
from eddez.errors import ApiError
from eddez.defaults import DEFAULT_KNOWLEDGE_BASE
from eddez.knowledge import KB_UPDATED, KnowledgeStore, KnowledgeUpdatesListener, default_knowledge, websocket_url
from eddez.schemas import ChatSession, KnowledgeItem

FRESH = [KnowledgeItem(id="9", topic="New", content="fresh", button_name="Go", button_url="https://a.com/go")]


def test_store_starts_with_seeded_entries():
    store = KnowledgeStore(lambda: None)

    assert [i.topic for i in store.items()] == ["Shipping Policy", "Return Policy", "Working Hours"]
    assert store.items() == default_knowledge()
    assert [i.id for i in store.items()] == [entry["id"] for entry in DEFAULT_KNOWLEDGE_BASE]


def test_refresh_swaps_snapshot_and_notifies():
    async def fetch():
        return FRESH

    store = KnowledgeStore(fetch, initial=[])
    seen = []
    store.subscribe(seen.append)

    before = store.items()
    asyncio.run(store.refresh())

    assert before == ()
    assert store.items() == tuple(FRESH)
    assert seen == [tuple(FRESH)]
    assert store.button_urls() == {"https://a.com/go"}


def test_failed_refresh_keeps_previous_snapshot():
    async def fetch():
        raise ApiError("down", status_code=503)

    store = KnowledgeStore(fetch, initial=FRESH)
    seen = []
    store.subscribe(seen.append)

    asyncio.run(store.refresh())

    assert store.items() == tuple(FRESH)
    assert seen == []


def test_listener_refreshes_only_on_kb_updated():
    calls = []

    async def fetch():
        calls.append(1)
        return FRESH

    listener = KnowledgeUpdatesListener("ws://test/ws", KnowledgeStore(fetch, initial=[]))

    async def _run():
        return [
            await listener.handle_message(json.dumps({"type": KB_UPDATED})),
            await listener.handle_message(json.dumps({"type": "SOMETHING_ELSE"})),
            await listener.handle_message("not json"),
            await listener.handle_message("[1, 2]"),
        ]

    assert asyncio.run(_run()) == [True, False, False, False]
    assert calls == [1]
    assert listener.store.items() == tuple(FRESH)


def test_websocket_url():
    assert websocket_url("http://localhost:7860") == "ws://localhost:7860/ws"
    assert websocket_url("https://eddez.example.com/") == "wss://eddez.example.com/ws"


def test_backend_client_round_trips_over_http():
    saved = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/api/knowledge-base":
            return httpx.Response(200, json=[{"id": "1", "topic": "t", "content": "c", "buttonName": "", "buttonUrl": ""}])
        if request.method == "GET" and request.url.path == "/api/sessions":
            assert request.url.params["user"] == "u@x.com"
            return httpx.Response(
                200,
                json=[
                    {"id": "a", "title": "Older", "createdAt": 1, "messages": []},
                    {"id": "b", "title": "Newer", "createdAt": 2, "messages": []},
                ],
            )
        if request.method == "POST" and request.url.path == "/api/sessions":
            saved.update(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        if request.method == "DELETE":
            return httpx.Response(403, json={"detail": "Forbidden"})
        return httpx.Response(404, json={"success": False, "error": "API Endpoint Not Found"})

    async def _run():
        async with BackendClient(httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")) as backend:
            kb = await backend.get_knowledge_base()
            store = SessionStore(backend)
            sessions = await store.list("u@x.com")
            await store.save("u@x.com", ChatSession(id="c", title="T", created_at=3))
            try:
                await store.delete("u@x.com", "c")
            except ApiError as e:
                delete_error = e
            return kb, sessions, delete_error

    kb, sessions, delete_error = asyncio.run(_run())

    assert kb[0].button_url is None
    assert [s.id for s in sessions] == ["b", "a"]
    assert saved == {"user": "u@x.com", "session": {"id": "c", "title": "T", "messages": [], "createdAt": 3}}
    assert delete_error.status_code == 403
    assert delete_error.detail == "Forbidden"


def test_backend_client_quotes_path_segments_and_loads_chat_config():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.raw_path)
        if request.url.path == "/api/chat-config":
            return httpx.Response(
                200,
                json={
                    "system_prompt_template": "Data: {{context}}",
                    "required_placeholders": ["context"],
                    "llm": {"models": ["m1"], "temperature": 0.3},
                    "chat": {"history_limit": 6},
                },
            )
        return httpx.Response(200, json={"success": True})

    async def _run():
        async with BackendClient(httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")) as backend:
            await backend.delete_session("u@x.com", "a/b c")
            return await backend.get_chat_config()

    config = asyncio.run(_run())

    assert paths[0] == b"/api/sessions/u%40x.com/a%2Fb%20c"
    assert config.system_prompt_template == "Data: {{context}}"
    assert config.llm["models"] == ["m1"]
    assert config.chat == {"history_limit": 6}
