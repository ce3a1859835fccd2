from __future__ import annotations

import pytest

from eddez.prompting import (
    PromptTemplateError,
    build_system_prompt,
    compose_chat_messages,
    compose_title_messages,
    history_turns,
    render_knowledge_context,
    render_template,
)
from eddez.schemas import KnowledgeItem, Message, UserSettings

TEMPLATE = "You are {{assistant_name}}.\n{{tone}}\n{{language}}\nDATA:\n{{context}}"


def test_render_template_requires_placeholders():
    with pytest.raises(PromptTemplateError):
        render_template("no context here", {"context": "x"}, required_placeholders=["context"])


def test_render_template_replaces_all_occurrences():
    assert render_template("{{a}} and {{a}}", {"a": 1}) == "1 and 1"


def test_knowledge_context_links_buttons_only_for_complete_pairs(return_policy_kb):
    ctx = render_knowledge_context(return_policy_kb)

    assert "### ENTRY 1:\n**TOPIC:** Return Policy\n**CONTENT:** Items can be returned within 30 days." in ctx
    assert "**LINKED ACTION:** [ACTION_BUTTON:Start a return|https://a.com/return]" in ctx
    assert ctx.count("LINKED ACTION") == 1
    assert "### ENTRY 2:" in ctx


def test_empty_knowledge_renders_no_data():
    assert render_knowledge_context([]) == "No Data."


def test_button_directive_comes_only_from_knowledge():
    prompt = build_system_prompt(TEMPLATE, [KnowledgeItem(id="1", topic="t", content="c")], UserSettings())

    assert "[ACTION_BUTTON:" not in prompt


def test_tone_and_language_directives():
    casual_urdu = build_system_prompt(TEMPLATE, [], UserSettings(tone="casual", language="roman_urdu"))
    default = build_system_prompt(TEMPLATE, [], UserSettings())

    assert "Tone: Friendly, casual." in casual_urdu
    assert "ROMAN URDU ONLY" in casual_urdu
    assert "Tone: Professional, direct." in default
    assert "LANGUAGE: Answer primarily in English." in default
    assert default.startswith("You are Eddez.")


def test_history_skips_failed_and_in_flight_messages():
    history = [
        Message(id="1", role="user", content="hi", status="sent"),
        Message(id="2", role="assistant", content="hello"),
        Message(id="3", role="user", content="broken", status="error"),
        Message(id="4", role="user", content="pending", status="sending"),
    ]

    assert history_turns(history, exclude_id="4") == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


def test_compose_chat_messages_shape(return_policy_kb):
    history = [
        Message(id="1", role="user", content="hi", status="sent"),
        Message(id="2", role="assistant", content="hello"),
    ]

    messages = compose_chat_messages("Return policy?", return_policy_kb, history, UserSettings(), template=TEMPLATE)

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[-1] == {"role": "user", "content": "Return policy?"}
    assert "Return Policy" in messages[0]["content"]


def test_compose_chat_messages_history_limit():
    history = [Message(id=str(i), role="user", content=f"m{i}", status="sent") for i in range(5)]

    messages = compose_chat_messages("q", [], history, UserSettings(), template=TEMPLATE, history_limit=2)

    assert [m["content"] for m in messages[1:]] == ["m3", "m4", "q"]


def test_title_prompt_mentions_word_limit():
    messages = compose_title_messages("Where is my order?", max_words=4)

    assert len(messages) == 1
    assert "max 4 words" in messages[0]["content"]
    assert "Where is my order?" in messages[0]["content"]
