from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

Role = Literal["admin", "user"]
MessageRole = Literal["user", "assistant"]
MessageStatus = Literal["sending", "sent", "error"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionButton(BaseModel):
    name: str
    url: str


class TextSegment(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class UrlSegment(BaseModel):
    kind: Literal["url"] = "url"
    url: str


Segment = Annotated[Union[TextSegment, UrlSegment], Field(discriminator="kind")]


class InterpretedReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wants_human_support: bool = Field(default=False, alias="wantsHumanSupport")
    dynamic_button: ActionButton | None = Field(default=None, alias="dynamicButton")
    segments: list[Segment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(s.text if isinstance(s, TextSegment) else s.url for s in self.segments)


class Message(BaseModel):
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=_utc_now)
    # Only user messages carry a delivery status.
    status: MessageStatus | None = None
    reply: InterpretedReply | None = None


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    title: str
    messages: list[Message] = Field(default_factory=list)
    created_at: int = Field(alias="createdAt")

    @model_validator(mode="after")
    def _unique_message_ids(self) -> "ChatSession":
        seen: set[str] = set()
        for m in self.messages:
            if m.id in seen:
                raise ValueError(f"Duplicate message id in session: {m.id}")
            seen.add(m.id)
        return self


class KnowledgeItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    topic: str
    content: str
    button_name: str | None = Field(default=None, alias="buttonName")
    button_url: str | None = Field(default=None, alias="buttonUrl")

    @field_validator("button_name", "button_url", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def _button_both_or_neither(self) -> "KnowledgeItem":
        if (self.button_name is None) != (self.button_url is None):
            raise ValueError("buttonName and buttonUrl must be set together (or both left empty)")
        return self

    @property
    def has_button(self) -> bool:
        return bool(self.button_name and self.button_url)


class UserSettings(BaseModel):
    tone: Literal["casual", "normal", "professional"] = "normal"
    language: Literal["english", "roman_urdu"] = "english"
    theme: Literal["light", "dark"] = "light"


class User(BaseModel):
    email: str
    name: str
    role: Role = "user"


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class SignupRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)


class AuthResponse(BaseModel):
    success: bool = True
    user: User


class SessionUpsertRequest(BaseModel):
    user: str = Field(min_length=1, validation_alias=AliasChoices("user", "email"))
    session: ChatSession


class SettingsUpdateRequest(BaseModel):
    user: str = Field(min_length=1, validation_alias=AliasChoices("user", "email"))
    settings: UserSettings


class ChatTurn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: list[ChatTurn] = Field(min_length=1)
    temperature: float = 0.1
    max_tokens: int = Field(default=1024, ge=1)
    top_p: float = 0.8


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: int


class OkResponse(BaseModel):
    success: bool = True


class AdminConfigUpdateRequest(BaseModel):
    settings: dict[str, Any]


class AdminConfigResponse(BaseModel):
    defaults: dict[str, Any]
    settings: dict[str, Any]
    effective: dict[str, Any]


class ChatConfig(BaseModel):
    """The effective server settings a chat client builds its pipeline from."""

    system_prompt_template: str = Field(min_length=1)
    required_placeholders: list[str] = Field(default_factory=lambda: ["context"])
    llm: dict[str, Any] = Field(default_factory=dict)
    chat: dict[str, Any] = Field(default_factory=dict)
