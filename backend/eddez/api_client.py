from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from .config import API_URL
from .errors import ApiError
from .logging_utils import get_logger
from .schemas import ChatConfig, ChatSession, KnowledgeItem, User, UserSettings

log = get_logger(__name__)


def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if not resp.is_error:
        return
    detail: Any = None
    try:
        body = resp.json()
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error")
    except ValueError:
        detail = resp.text[:200] or None
    raise ApiError(f"{what} failed ({resp.status_code}): {detail or 'no detail'}", status_code=resp.status_code, detail=detail)


class BackendClient:
    """Typed access to the backend's REST surface.

    One shared httpx client carries the login cookie for every call,
    including the model gateway's chat-completion requests.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, *, base_url: str = API_URL, timeout_s: float = 30.0):
        self.http = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout_s))
        self.user: User | None = None

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def health(self) -> bool:
        try:
            resp = await self.http.get("/api/health")
        except httpx.HTTPError as e:
            log.warning("Server health check failed: %s", e)
            return False
        return resp.status_code == 200

    async def login(self, email: str, password: str) -> User:
        resp = await self.http.post("/api/auth/login", json={"email": email, "password": password})
        _raise_for_status(resp, "Login")
        self.user = User.model_validate(resp.json()["user"])
        return self.user

    async def signup(self, email: str, password: str, name: str) -> User:
        resp = await self.http.post("/api/auth/signup", json={"email": email, "password": password, "name": name})
        _raise_for_status(resp, "Signup")
        self.user = User.model_validate(resp.json()["user"])
        return self.user

    async def logout(self) -> None:
        resp = await self.http.post("/api/auth/logout")
        _raise_for_status(resp, "Logout")
        self.user = None

    async def get_knowledge_base(self) -> list[KnowledgeItem]:
        resp = await self.http.get("/api/knowledge-base")
        _raise_for_status(resp, "Knowledge base fetch")
        return [KnowledgeItem.model_validate(x) for x in resp.json()]

    async def get_chat_config(self) -> ChatConfig:
        resp = await self.http.get("/api/chat-config")
        _raise_for_status(resp, "Chat config fetch")
        return ChatConfig.model_validate(resp.json())

    async def list_sessions(self, user: str) -> list[ChatSession]:
        resp = await self.http.get("/api/sessions", params={"user": user})
        _raise_for_status(resp, "Session list")
        sessions = [ChatSession.model_validate(x) for x in resp.json()]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def save_session(self, user: str, session: ChatSession) -> None:
        body = {"user": user, "session": session.model_dump(by_alias=True, mode="json")}
        resp = await self.http.post("/api/sessions", json=body)
        _raise_for_status(resp, "Session save")

    async def delete_session(self, user: str, session_id: str) -> None:
        resp = await self.http.delete(f"/api/sessions/{quote(user, safe='')}/{quote(session_id, safe='')}")
        _raise_for_status(resp, "Session delete")

    async def get_settings(self, user: str) -> UserSettings:
        resp = await self.http.get("/api/settings", params={"user": user})
        _raise_for_status(resp, "Settings fetch")
        return UserSettings.model_validate(resp.json())

    async def save_settings(self, user: str, settings: UserSettings) -> None:
        resp = await self.http.post("/api/settings", json={"user": user, "settings": settings.model_dump(mode="json")})
        _raise_for_status(resp, "Settings save")


class SessionStore:
    """Per-user session persistence as the conversation controller sees it."""

    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend

    async def list(self, user: str) -> list[ChatSession]:
        return await self.backend.list_sessions(user)

    async def save(self, user: str, session: ChatSession) -> None:
        await self.backend.save_session(user, session)

    async def delete(self, user: str, session_id: str) -> None:
        await self.backend.delete_session(user, session_id)


class SettingsStore:
    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend

    async def load(self, user: str) -> UserSettings:
        return await self.backend.get_settings(user)

    async def save(self, user: str, settings: UserSettings) -> None:
        await self.backend.save_settings(user, settings)
