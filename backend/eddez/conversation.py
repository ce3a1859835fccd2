"""Conversation state machine and the turn pipeline around it.

State lives in one immutable `AppState`. Every change goes through a pure
transition function that returns a new state; the controller swaps the
reference in a single assignment and then runs side effects (model calls,
persistence) against the state it produced. Observers never see a
half-applied update.

Per user message: ``sending -> sent`` or ``sending -> error``, and
``error -> sending`` on retry with the same id. A ``sent`` message is final.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence

from .config import DEFAULT_SESSION_TITLE
from .errors import EddezError, InvalidTransitionError, OfflineError
from .interpreter import interpret
from .knowledge import KnowledgeStore
from .logging_utils import get_logger
from .model_gateway import ModelGateway
from .prompting import compose_chat_messages
from .schemas import ChatSession, KnowledgeItem, Message, User, UserSettings

log = get_logger(__name__)


class SessionPersistence(Protocol):
    async def list(self, user: str) -> list[ChatSession]: ...

    async def save(self, user: str, session: ChatSession) -> None: ...

    async def delete(self, user: str, session_id: str) -> None: ...


class SettingsPersistence(Protocol):
    async def load(self, user: str) -> UserSettings: ...

    async def save(self, user: str, settings: UserSettings) -> None: ...


@dataclass(frozen=True)
class AppState:
    user: User | None = None
    sessions: tuple[ChatSession, ...] = ()
    current_session_id: str | None = None
    # Allocated for a brand-new conversation; only becomes a session on success.
    pending_session_id: str | None = None
    messages: tuple[Message, ...] = ()
    settings: UserSettings = field(default_factory=UserSettings)
    knowledge: tuple[KnowledgeItem, ...] = ()
    online: bool = True
    is_thinking: bool = False

    @property
    def active_session_id(self) -> str | None:
        return self.current_session_id or self.pending_session_id

    def find_message(self, message_id: str) -> Message | None:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def find_session(self, session_id: str | None) -> ChatSession | None:
        if not session_id:
            return None
        for s in self.sessions:
            if s.id == session_id:
                return s
        return None


# --- pure transitions ---


def begin_turn(
    state: AppState,
    *,
    message_id: str,
    text: str,
    timestamp: datetime,
    new_session_id: str,
    retry: bool = False,
) -> AppState:
    if state.is_thinking:
        raise InvalidTransitionError("A turn is already in flight")

    if retry:
        existing = state.find_message(message_id)
        if existing is None:
            raise InvalidTransitionError(f"Unknown message: {message_id}")
        if existing.status != "error":
            raise InvalidTransitionError(f"Only failed messages can be retried (status={existing.status})")
        messages = tuple(m.model_copy(update={"status": "sending"}) if m.id == message_id else m for m in state.messages)
    else:
        if state.find_message(message_id) is not None:
            raise InvalidTransitionError(f"Duplicate message id: {message_id}")
        msg = Message(id=message_id, role="user", content=text, timestamp=timestamp, status="sending")
        messages = (*state.messages, msg)

    pending = state.pending_session_id
    if state.current_session_id is None and pending is None:
        pending = new_session_id
    return replace(state, messages=messages, pending_session_id=pending, is_thinking=True)


def fail_turn(state: AppState, *, message_id: str) -> AppState:
    messages = tuple(m.model_copy(update={"status": "error"}) if m.id == message_id else m for m in state.messages)
    return replace(state, messages=messages, is_thinking=False)


def is_first_turn(state: AppState) -> bool:
    return state.find_session(state.current_session_id) is None


def upsert_session(sessions: Sequence[ChatSession], session: ChatSession) -> tuple[ChatSession, ...]:
    out = list(sessions)
    for i, s in enumerate(out):
        if s.id == session.id:
            out[i] = session
            return tuple(out)
    return (session, *out)


def complete_turn(
    state: AppState,
    *,
    message_id: str,
    assistant: Message,
    title: str | None,
    created_at_ms: int,
) -> tuple[AppState, ChatSession]:
    session_id = state.active_session_id
    if session_id is None:
        raise InvalidTransitionError("No session to complete the turn in")
    current = state.find_message(message_id)
    if current is None or current.status != "sending":
        raise InvalidTransitionError(f"Message {message_id} is not in flight")

    messages = tuple(m.model_copy(update={"status": "sent"}) if m.id == message_id else m for m in state.messages)
    messages = (*messages, assistant)

    existing = state.find_session(session_id)
    if existing is not None:
        session = ChatSession(id=session_id, title=existing.title, messages=list(messages), created_at=existing.created_at)
    else:
        session = ChatSession(
            id=session_id,
            title=title or DEFAULT_SESSION_TITLE,
            messages=list(messages),
            created_at=created_at_ms,
        )

    new_state = replace(
        state,
        messages=messages,
        sessions=upsert_session(state.sessions, session),
        current_session_id=session_id,
        pending_session_id=None,
        is_thinking=False,
    )
    return new_state, session


def _require_idle(state: AppState, action: str) -> None:
    if state.is_thinking:
        raise InvalidTransitionError(f"Cannot {action} while a turn is in flight")


def new_chat(state: AppState) -> AppState:
    _require_idle(state, "start a new chat")
    return replace(state, current_session_id=None, pending_session_id=None, messages=())


def select_session(state: AppState, session_id: str) -> AppState:
    _require_idle(state, "switch sessions")
    session = state.find_session(session_id)
    if session is None:
        raise InvalidTransitionError(f"Unknown session: {session_id}")
    return replace(state, current_session_id=session.id, pending_session_id=None, messages=tuple(session.messages))


def remove_session(state: AppState, session_id: str) -> AppState:
    _require_idle(state, "delete a session")
    sessions = tuple(s for s in state.sessions if s.id != session_id)
    state = replace(state, sessions=sessions)
    if state.current_session_id == session_id:
        state = new_chat(state)
    return state


def with_user_data(state: AppState, *, user: User, sessions: Sequence[ChatSession], settings: UserSettings) -> AppState:
    ordered = tuple(sorted(sessions, key=lambda s: s.created_at, reverse=True))
    return new_chat(replace(state, user=user, sessions=ordered, settings=settings))


# --- controller ---


def _new_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


StateListener = Callable[[AppState], None]


class ConversationController:
    def __init__(
        self,
        gateway: ModelGateway,
        sessions: SessionPersistence,
        knowledge: KnowledgeStore,
        *,
        template: str,
        settings_store: SettingsPersistence | None = None,
        state: AppState | None = None,
        required_placeholders: list[str] | None = None,
        history_limit: int = 0,
        title_max_words: int = 4,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.gateway = gateway
        self.sessions = sessions
        self.settings_store = settings_store
        self.knowledge = knowledge
        self.template = template
        self.required_placeholders = required_placeholders
        self.history_limit = history_limit
        self.title_max_words = title_max_words
        self._id_factory = id_factory
        self._clock = clock
        self._listeners: list[StateListener] = []
        self._state = state or AppState()
        if not self._state.knowledge:
            self._state = replace(self._state, knowledge=knowledge.items())
        knowledge.subscribe(self._on_knowledge)

    @property
    def state(self) -> AppState:
        return self._state

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _commit(self, new_state: AppState) -> AppState:
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)
        return new_state

    def _on_knowledge(self, items: tuple[KnowledgeItem, ...]) -> None:
        self._commit(replace(self._state, knowledge=items))

    def _require_user(self) -> User:
        if self._state.user is None:
            raise InvalidTransitionError("No user is logged in")
        return self._state.user

    def set_user(self, user: User | None) -> None:
        _require_idle(self._state, "change user")
        if user is None:
            self._commit(AppState(knowledge=self._state.knowledge, online=self._state.online))
        else:
            self._commit(new_chat(replace(self._state, user=user)))

    def set_online(self, online: bool) -> None:
        self._commit(replace(self._state, online=bool(online)))

    # --- turns ---

    async def send(self, text: str) -> Message:
        text = str(text or "").strip()
        if not text:
            raise InvalidTransitionError("Cannot send an empty message")
        return await self._run_turn(self._id_factory(), text, retry=False)

    async def retry(self, message_id: str) -> Message:
        msg = self._state.find_message(message_id)
        if msg is None:
            raise InvalidTransitionError(f"Unknown message: {message_id}")
        return await self._run_turn(message_id, msg.content, retry=True)

    async def _run_turn(self, message_id: str, text: str, *, retry: bool) -> Message:
        user = self._require_user()
        # Optimistic update lands before any network activity.
        snapshot = self._commit(
            begin_turn(
                self._state,
                message_id=message_id,
                text=text,
                timestamp=self._clock(),
                new_session_id=self._id_factory(),
                retry=retry,
            )
        )

        try:
            if not snapshot.online:
                raise OfflineError("No internet connection")
            messages = compose_chat_messages(
                text,
                snapshot.knowledge,
                snapshot.messages,
                snapshot.settings,
                template=self.template,
                exclude_id=message_id,
                history_limit=self.history_limit,
                required_placeholders=self.required_placeholders,
            )
            raw = await self.gateway.complete(messages)
            reply = interpret(raw, snapshot.knowledge, query=text)
        except EddezError as e:
            log.warning("Chat turn failed (%s): %s", type(e).__name__, e)
            return self._fail(message_id)
        except Exception:
            log.exception("Chat turn failed unexpectedly")
            return self._fail(message_id)

        title = None
        if is_first_turn(snapshot):
            title = await self._title_for(text)

        assistant = Message(id=self._id_factory(), role="assistant", content=raw, timestamp=self._clock(), reply=reply)
        try:
            new_state, session = complete_turn(
                self._state,
                message_id=message_id,
                assistant=assistant,
                title=title,
                created_at_ms=int(time.time() * 1000),
            )
        except InvalidTransitionError as e:
            log.error("Could not finish turn for message %s: %s", message_id, e)
            return self._fail(message_id)
        self._commit(new_state)
        await self._persist(user, session)
        return self._final_message(message_id)

    async def _title_for(self, text: str) -> str:
        try:
            return await self.gateway.generate_title(text, max_words=self.title_max_words)
        except Exception:
            # A missing title never costs the user their answer.
            log.warning("Title generation failed; using %r", DEFAULT_SESSION_TITLE, exc_info=True)
            return DEFAULT_SESSION_TITLE

    def _fail(self, message_id: str) -> Message:
        self._commit(fail_turn(self._state, message_id=message_id))
        return self._final_message(message_id)

    def _final_message(self, message_id: str) -> Message:
        msg = self._state.find_message(message_id)
        if msg is None:
            raise InvalidTransitionError(f"Message {message_id} is no longer in the conversation")
        return msg

    async def _persist(self, user: User, session: ChatSession) -> None:
        try:
            await self.sessions.save(user.email, session)
        except Exception:
            # The turn already succeeded locally; the next successful save carries it.
            log.exception("Failed to persist session %s", session.id)

    # --- sessions and settings ---

    async def load_user_data(self) -> AppState:
        user = self._require_user()
        _require_idle(self._state, "reload user data")
        try:
            sessions = await self.sessions.list(user.email)
        except Exception:
            log.exception("Failed to load sessions for %s", user.email)
            sessions = []
        settings = self._state.settings
        if self.settings_store is not None:
            try:
                settings = await self.settings_store.load(user.email)
            except Exception:
                log.exception("Failed to load settings for %s", user.email)
                settings = UserSettings()
        return self._commit(with_user_data(self._state, user=user, sessions=sessions, settings=settings))

    def new_chat(self) -> AppState:
        return self._commit(new_chat(self._state))

    def select_session(self, session_id: str) -> AppState:
        return self._commit(select_session(self._state, session_id))

    async def delete_session(self, session_id: str) -> AppState:
        user = self._require_user()
        _require_idle(self._state, "delete a session")
        await self.sessions.delete(user.email, session_id)
        return self._commit(remove_session(self._state, session_id))

    async def update_settings(self, settings: UserSettings) -> AppState:
        user = self._require_user()
        state = self._commit(replace(self._state, settings=settings))
        if self.settings_store is not None:
            await self.settings_store.save(user.email, settings)
        return state
