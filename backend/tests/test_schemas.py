from __future__ import annotations

import pytest
from pydantic import ValidationError

from eddez.schemas import ChatSession, KnowledgeItem, Message, SessionUpsertRequest


def test_knowledge_item_accepts_camel_case_and_blank_buttons():
    item = KnowledgeItem.model_validate({"id": "1", "topic": "t", "content": "c", "buttonName": " ", "buttonUrl": ""})

    assert item.button_name is None
    assert item.button_url is None
    assert not item.has_button


def test_knowledge_item_rejects_half_a_button():
    with pytest.raises(ValidationError):
        KnowledgeItem.model_validate({"id": "1", "topic": "t", "content": "c", "buttonName": "Go"})


def test_knowledge_item_dumps_with_aliases():
    item = KnowledgeItem(id="1", topic="t", content="c", button_name="Go", button_url="https://x.com")

    assert item.model_dump(by_alias=True) == {
        "id": "1",
        "topic": "t",
        "content": "c",
        "buttonName": "Go",
        "buttonUrl": "https://x.com",
    }


def test_chat_session_rejects_duplicate_message_ids():
    with pytest.raises(ValidationError):
        ChatSession(
            id="s",
            title="t",
            created_at=1,
            messages=[
                Message(id="m", role="user", content="a", status="sent"),
                Message(id="m", role="assistant", content="b"),
            ],
        )


def test_session_upsert_accepts_email_key():
    req = SessionUpsertRequest.model_validate(
        {"email": "a@b.c", "session": {"id": "s", "title": "t", "createdAt": 5, "messages": []}}
    )

    assert req.user == "a@b.c"
    assert req.session.created_at == 5
