from __future__ import annotations

from typing import Any, Iterable, Sequence

from .config import ASSISTANT_NAME
from .schemas import KnowledgeItem, Message, UserSettings

SUPPORT_MARKER = "[ACTION_SUPPORT_BUTTON]"
BUTTON_PREFIX = "[ACTION_BUTTON:"


class PromptTemplateError(RuntimeError):
    pass


def render_template(template: str, variables: dict[str, Any], required_placeholders: list[str] | None = None) -> str:
    required_placeholders = required_placeholders or []

    missing = [p for p in required_placeholders if f"{{{{{p}}}}}" not in template]
    if missing:
        raise PromptTemplateError(
            "System prompt template missing required placeholders: " + ", ".join(f"{{{{{m}}}}}" for m in missing)
        )

    out = template
    for key, value in variables.items():
        out = out.replace(f"{{{{{key}}}}}", str(value))
    return out


def button_directive(name: str, url: str) -> str:
    return f"{BUTTON_PREFIX}{name}|{url}]"


def render_knowledge_context(items: Sequence[KnowledgeItem]) -> str:
    if not items:
        return "No Data."

    blocks: list[str] = []
    for i, item in enumerate(items, start=1):
        entry = f"### ENTRY {i}:\n**TOPIC:** {item.topic}\n**CONTENT:** {item.content}"
        # The only place a button directive is ever handed to the model.
        if item.has_button:
            entry += f"\n**LINKED ACTION:** {button_directive(str(item.button_name), str(item.button_url))}"
        blocks.append(entry)
    return "\n\n".join(blocks)


def tone_instruction(settings: UserSettings) -> str:
    if settings.tone == "casual":
        return "Tone: Friendly, casual."
    return "Tone: Professional, direct."


_ROMAN_URDU_DIRECTIVE = """**CRITICAL LANGUAGE RULE (ROMAN URDU ONLY):**
1. **WHAT TO DO:** You MUST speak Urdu but write it using **ENGLISH ALPHABETS** (Roman Urdu).
   - Correct Example: "Apka order 3 din mein mil jayega."
   - Correct Example: "Shipping bilkul free hai."

2. **WHAT NOT TO DO:**
   - **DO NOT** write in Urdu Script (like: "آپ کا آرڈر"). This is strictly FORBIDDEN.
   - **DO NOT** write in standard English (like: "Your order will arrive...").
   - **DO NOT** mix scripts. Only use English letters to spell Urdu words.

3. **TRANSLATION:**
   - Read the Data provided in English.
   - Mentally translate the answer into Roman Urdu.
   - Output ONLY the Roman Urdu translation."""


def language_directive(settings: UserSettings) -> str:
    if settings.language == "roman_urdu":
        return _ROMAN_URDU_DIRECTIVE
    return "LANGUAGE: Answer primarily in English."


def build_system_prompt(
    template: str,
    knowledge: Sequence[KnowledgeItem],
    settings: UserSettings,
    *,
    required_placeholders: list[str] | None = None,
    assistant_name: str = ASSISTANT_NAME,
) -> str:
    return render_template(
        template,
        variables={
            "assistant_name": assistant_name,
            "context": render_knowledge_context(knowledge),
            "tone": tone_instruction(settings),
            "language": language_directive(settings),
        },
        required_placeholders=required_placeholders if required_placeholders is not None else ["context"],
    )


def history_turns(history: Iterable[Message], *, exclude_id: str | None = None) -> list[dict[str, str]]:
    """Replayable turns: failed sends and the message being sent are left out."""
    turns: list[dict[str, str]] = []
    for m in history:
        if m.status == "error" or m.id == exclude_id:
            continue
        turns.append({"role": m.role, "content": m.content})
    return turns


def compose_chat_messages(
    query: str,
    knowledge: Sequence[KnowledgeItem],
    history: Iterable[Message],
    settings: UserSettings,
    *,
    template: str,
    exclude_id: str | None = None,
    history_limit: int = 0,
    required_placeholders: list[str] | None = None,
) -> list[dict[str, str]]:
    system_prompt = build_system_prompt(template, knowledge, settings, required_placeholders=required_placeholders)
    turns = history_turns(history, exclude_id=exclude_id)
    if history_limit > 0:
        turns = turns[-history_limit:]
    return [{"role": "system", "content": system_prompt}, *turns, {"role": "user", "content": query}]


def compose_title_messages(first_message: str, *, max_words: int = 4) -> list[dict[str, str]]:
    return [
        {
            "role": "user",
            "content": f'Generate a title (max {max_words} words) for: "{first_message}". No quotes.',
        }
    ]
