from __future__ import annotations

import asyncio
from dataclasses import replace

import httpx

from eddez.api_client import BackendClient
from eddez.cli import _handle_command, build_controller, render_message
from eddez.conversation import ConversationController
from eddez.interpreter import interpret
from eddez.knowledge import KnowledgeStore
from eddez.schemas import ChatConfig, ChatSession, Message, User


def test_render_user_message_status():
    assert render_message(Message(id="1", role="user", content="hi", status="sent")) == "you> hi"
    assert "failed" in render_message(Message(id="1", role="user", content="hi", status="error"))


def test_render_assistant_reply(return_policy_kb):
    raw = "See https://a.com/faq for more. [ACTION_BUTTON:Start a return|https://a.com/return] [ACTION_SUPPORT_BUTTON]"
    msg = Message(id="2", role="assistant", content=raw, reply=interpret(raw, return_policy_kb))

    out = render_message(msg, support_url="https://wa.me/1")

    assert out.splitlines() == [
        "bot> See <https://a.com/faq> for more.",
        "     [Start a return] https://a.com/return",
        "     [Contact human support] https://wa.me/1",
    ]


class _NoopSessions:
    def __init__(self):
        self.deleted = []

    async def list(self, user):
        return []

    async def save(self, user, session):
        pass

    async def delete(self, user, session_id):
        self.deleted.append(session_id)


def test_commands_drive_controller(capsys, return_policy_kb):
    async def fetch():
        return return_policy_kb

    sessions = _NoopSessions()
    controller = ConversationController(None, sessions, KnowledgeStore(fetch, initial=return_policy_kb), template="{{context}}")
    controller.set_user(User(email="u@x.com", name="U"))
    saved = ChatSession(id="s1", title="Shipping", created_at=1, messages=[Message(id="m", role="user", content="q", status="sent")])
    controller._commit(replace(controller.state, sessions=(saved,)))

    async def _run():
        results = [await _handle_command("/open 1", controller)]
        results.append(await _handle_command("/delete 1", controller))
        results.append(await _handle_command("/open 7", controller))
        results.append(await _handle_command("/quit", controller))
        return results

    assert asyncio.run(_run()) == [True, True, True, False]
    out = capsys.readouterr().out
    assert "you> q" in out
    assert "(deleted 'Shipping')" in out
    assert "Unknown chat number" in out
    assert sessions.deleted == ["s1"]
    assert controller.state.sessions == ()


def test_build_controller_uses_server_chat_config(return_policy_kb):
    config = ChatConfig(
        system_prompt_template="Answer from: {{context}}",
        llm={"models": ["m-primary", "m-backup"], "temperature": 0.4, "max_tokens": 50},
        chat={"history_limit": 6, "title_max_words": 3},
    )
    backend = BackendClient(httpx.AsyncClient(base_url="http://test"))

    controller = build_controller(backend, KnowledgeStore(lambda: None, initial=return_policy_kb), config)

    assert [e.model for e in controller.gateway.endpoints] == ["m-primary", "m-backup"]
    assert controller.gateway.endpoints[0].temperature == 0.4
    assert controller.template == "Answer from: {{context}}"
    assert controller.required_placeholders == ["context"]
    assert controller.history_limit == 6
    assert controller.title_max_words == 3
    asyncio.run(backend.aclose())
