"""Parse raw model output into something safe to render.

Two stages: `tokenize` finds directive markers, `validate_button` checks a
proposed action button against the knowledge base. `interpret` ties them
together and splits the leftover prose into text and URL segments.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Literal

from .logging_utils import get_logger
from .prompting import SUPPORT_MARKER
from .schemas import ActionButton, InterpretedReply, KnowledgeItem, Segment, TextSegment, UrlSegment

log = get_logger(__name__)

TokenKind = Literal["text", "support", "button"]

_DIRECTIVE_RE = re.compile(
    rf"(?P<support>{re.escape(SUPPORT_MARKER)})"
    r"|(?P<button>\[ACTION_BUTTON:(?P<name>[^|\]\n]*)\|(?P<url>[^\]\n]*)\])"
)
_URL_RE = re.compile(r"https?://[^\s]+")
_HUMAN_REQUEST_RE = re.compile(
    r"\b(?:talk|speak|chat)\s+(?:to|with)\s+(?:an?\s+|your\s+)?"
    r"(?:human|agent|representative|person|someone|somebody|support)\b"
    r"|\b(?:real|live)\s+(?:person|human|agent)\b"
    r"|\bwhats\s?app\b"
    r"|\bcontact\s+support\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str
    name: str | None = None
    url: str | None = None


def tokenize(text: str) -> list[Token]:
    """Split text into prose and directive tokens.

    Anything that does not match a complete directive (for example an
    unterminated ``[ACTION_BUTTON:...``) stays in the prose.
    """
    tokens: list[Token] = []
    pos = 0
    for m in _DIRECTIVE_RE.finditer(text or ""):
        if m.start() > pos:
            tokens.append(Token("text", text[pos : m.start()]))
        if m.group("support"):
            tokens.append(Token("support", m.group(0)))
        else:
            tokens.append(Token("button", m.group(0), name=m.group("name"), url=m.group("url")))
        pos = m.end()
    if pos < len(text or ""):
        tokens.append(Token("text", text[pos:]))
    return tokens


def validate_button(candidate: ActionButton, knowledge: Iterable[KnowledgeItem]) -> bool:
    # Only the URL is trusted; the label the model chose does not matter.
    url = candidate.url.strip()
    if not url:
        return False
    return any(item.button_url is not None and item.button_url.strip() == url for item in knowledge)


def split_segments(text: str) -> list[Segment]:
    segments: list[Segment] = []
    pos = 0
    for m in _URL_RE.finditer(text):
        if m.start() > pos:
            segments.append(TextSegment(text=text[pos : m.start()]))
        segments.append(UrlSegment(url=m.group(0)))
        pos = m.end()
    if pos < len(text):
        segments.append(TextSegment(text=text[pos:]))
    return segments


def requests_human(query: str) -> bool:
    return bool(_HUMAN_REQUEST_RE.search(query or ""))


def interpret(raw: str, knowledge: Iterable[KnowledgeItem], *, query: str | None = None) -> InterpretedReply:
    # An explicit ask for a person escalates even if the model answered instead.
    wants_support = requests_human(query or "")
    candidate: ActionButton | None = None
    prose: list[str] = []

    for token in tokenize(raw or ""):
        if token.kind == "support":
            wants_support = True
        elif token.kind == "button":
            # At most one button per reply; further directives are dropped.
            if candidate is None:
                candidate = ActionButton(name=str(token.name or "").strip(), url=str(token.url or "").strip())
        else:
            prose.append(token.value)

    button: ActionButton | None = None
    if candidate is not None:
        if validate_button(candidate, list(knowledge)):
            button = candidate
        else:
            log.warning("Suppressed action button with unlisted URL: %r", candidate.url)

    text = "".join(prose).strip()
    return InterpretedReply(wants_human_support=wants_support, dynamic_button=button, segments=split_segments(text))
