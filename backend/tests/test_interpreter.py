from __future__ import annotations

from eddez.interpreter import interpret, requests_human, split_segments, tokenize, validate_button
from eddez.schemas import ActionButton, KnowledgeItem, TextSegment, UrlSegment


def test_listed_button_is_shown(return_policy_kb):
    reply = interpret("You can return it. [ACTION_BUTTON:View|https://a.com/return]", return_policy_kb)

    assert reply.dynamic_button == ActionButton(name="View", url="https://a.com/return")
    assert reply.text == "You can return it."


def test_unlisted_button_is_suppressed_but_text_kept(return_policy_kb):
    reply = interpret("You can return it. [ACTION_BUTTON:View|https://evil.com]", return_policy_kb)

    assert reply.dynamic_button is None
    assert reply.text == "You can return it."
    assert "evil.com" not in reply.text


def test_button_url_compared_trimmed_and_name_ignored():
    kb = [KnowledgeItem(id="1", topic="t", content="c", button_name="Track", button_url="  https://a.com/track ")]

    reply = interpret("[ACTION_BUTTON:Totally different label| https://a.com/track ]", kb)

    assert reply.dynamic_button is not None
    assert reply.dynamic_button.url == "https://a.com/track"


def test_url_prefix_match_is_not_enough(return_policy_kb):
    assert not validate_button(ActionButton(name="x", url="https://a.com/return/../admin"), return_policy_kb)
    assert not validate_button(ActionButton(name="x", url="https://a.com/retur"), return_policy_kb)
    assert not validate_button(ActionButton(name="x", url=""), return_policy_kb)


def test_support_marker_is_stripped():
    reply = interpret("Let me connect you. [ACTION_SUPPORT_BUTTON]", [])

    assert reply.wants_human_support is True
    assert reply.text == "Let me connect you."


def test_human_request_in_query_escalates_even_when_covered(return_policy_kb):
    reply = interpret("Returns are accepted within 30 days.", return_policy_kb, query="I want to talk to a human")

    assert reply.wants_human_support is True


def test_plain_question_does_not_escalate(return_policy_kb):
    reply = interpret("Returns are accepted within 30 days.", return_policy_kb, query="What's your return policy?")

    assert reply.wants_human_support is False


def test_requests_human_phrases():
    assert requests_human("I want to talk to a human")
    assert requests_human("Can I speak to an agent?")
    assert requests_human("can I speak with someone please")
    assert requests_human("Give me your WhatsApp")
    assert requests_human("real person!!")
    assert not requests_human("how long does shipping take?")


def test_unterminated_directive_stays_plain_text(return_policy_kb):
    raw = "Click [ACTION_BUTTON:View|https://a.com/return for details"

    reply = interpret(raw, return_policy_kb)

    assert reply.dynamic_button is None
    assert reply.text == raw


def test_only_first_button_is_a_candidate(return_policy_kb):
    raw = "A [ACTION_BUTTON:Evil|https://evil.com] B [ACTION_BUTTON:View|https://a.com/return]"

    reply = interpret(raw, return_policy_kb)

    assert reply.dynamic_button is None
    assert reply.text == "A  B"


def test_tokenize_tags_every_piece():
    tokens = tokenize("Hi [ACTION_SUPPORT_BUTTON] there [ACTION_BUTTON:Go|https://x.com]")

    assert [t.kind for t in tokens] == ["text", "support", "text", "button"]
    assert tokens[3].name == "Go"
    assert tokens[3].url == "https://x.com"
    assert "".join(t.value for t in tokens) == "Hi [ACTION_SUPPORT_BUTTON] there [ACTION_BUTTON:Go|https://x.com]"


def test_segments_split_on_urls():
    segments = split_segments("See https://x.com/a for info")

    assert segments == [TextSegment(text="See "), UrlSegment(url="https://x.com/a"), TextSegment(text=" for info")]
    assert "".join(s.text if isinstance(s, TextSegment) else s.url for s in segments) == "See https://x.com/a for info"


def test_segments_edge_cases():
    assert split_segments("") == []
    assert split_segments("http://a.b") == [UrlSegment(url="http://a.b")]
    assert split_segments("a\nhttps://b.c/d?e=f\ng") == [
        TextSegment(text="a\n"),
        UrlSegment(url="https://b.c/d?e=f"),
        TextSegment(text="\ng"),
    ]


def test_interpret_never_raises_on_garbage():
    for raw in ("", "[", "]]][[[", "[ACTION_BUTTON:", "[ACTION_BUTTON:|]", "[ACTION_SUPPORT_BUTTON"):
        reply = interpret(raw, [])
        assert reply.dynamic_button is None


def test_topic_words_alone_do_not_escalate():
    assert not requests_human("Can I ship my order through a customs agent?")
    assert not requests_human("Is this product safe for humans?")
    assert not requests_human("Do your agents ship internationally?")


def test_covered_question_mentioning_agents_keeps_plain_answer(return_policy_kb):
    reply = interpret(
        "Yes, customs agents can receive returns.",
        return_policy_kb,
        query="Can a customs agent handle my return?",
    )

    assert reply.wants_human_support is False
