from __future__ import annotations

import time
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from . import app_db
from .auth import (
    Principal,
    apply_login_cookie,
    create_login_session,
    ensure_bootstrap_admin,
    logout_session,
    register_user,
    require_login,
    require_owner_or_admin,
    require_role,
    resolve_auth,
)
from .config import UPSTREAM_TIMEOUT_S
from .errors import ConfigurationError, UpstreamError
from .events import Broadcaster
from .knowledge import KB_UPDATED
from .logging_utils import get_logger
from .settings import SettingsError, ensure_defaults, get_settings_bundle, llm_section, update_settings
from .upstream import forward_chat_completion
from .schemas import (
    AdminConfigResponse,
    AdminConfigUpdateRequest,
    AuthResponse,
    ChatCompletionRequest,
    ChatConfig,
    ChatSession,
    HealthResponse,
    KnowledgeItem,
    LoginRequest,
    OkResponse,
    SessionUpsertRequest,
    SettingsUpdateRequest,
    SignupRequest,
    User,
    UserSettings,
)

log = get_logger(__name__)

app = FastAPI(title="eddez-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

broadcaster = Broadcaster()


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    ensure_defaults()
    ensure_bootstrap_admin()


@app.middleware("http")
async def _log_requests(request: Request, call_next: Any) -> Any:
    log.info("%s %s", request.method, request.url.path)
    return await call_next(request)


@app.get("/", response_class=PlainTextResponse)
def root() -> str:
    return "Eddez backend is running."


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(timestamp=int(time.time() * 1000))


# --- auth ---


@app.post("/api/auth/login", response_model=AuthResponse)
def auth_login(req: LoginRequest, response: Response) -> AuthResponse:
    principal, token = create_login_session(email=req.email, password=req.password)
    apply_login_cookie(response, token)
    return AuthResponse(user=principal.to_user())


@app.post("/api/auth/signup", response_model=AuthResponse)
def auth_signup(req: SignupRequest, response: Response) -> AuthResponse:
    principal, token = register_user(email=req.email, password=req.password, name=req.name)
    apply_login_cookie(response, token)
    return AuthResponse(user=principal.to_user())


@app.post("/api/auth/logout", response_model=OkResponse)
def auth_logout(request: Request, response: Response) -> OkResponse:
    logout_session(request, response)
    return OkResponse()


@app.get("/api/auth/me", response_model=User)
def auth_me(principal: Principal = Depends(resolve_auth)) -> User:
    require_login(principal)
    return principal.to_user()


# --- chat completion proxy ---


@app.post("/api/chat-completion")
async def chat_completion(req: ChatCompletionRequest, principal: Principal = Depends(resolve_auth)) -> Any:
    require_login(principal)
    try:
        llm_cfg = llm_section(get_settings_bundle()["effective"])
        timeout_s = float(llm_cfg.get("timeout_s", UPSTREAM_TIMEOUT_S) or UPSTREAM_TIMEOUT_S)
    except SettingsError:
        log.exception("Settings error; using default upstream timeout")
        timeout_s = UPSTREAM_TIMEOUT_S

    try:
        return await forward_chat_completion(req.model_dump(mode="json"), timeout_s=timeout_s)
    except ConfigurationError as e:
        log.error("Chat proxy misconfigured: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    except UpstreamError as e:
        log.exception("Chat proxy error")
        return JSONResponse(status_code=502, content={"error": str(e)})


# --- knowledge base ---


@app.get("/api/knowledge-base", response_model=list[KnowledgeItem], response_model_exclude_none=True)
def knowledge_base_list() -> list[dict[str, Any]]:
    return app_db.list_knowledge_items()


@app.post("/api/knowledge-base", response_model=OkResponse)
async def knowledge_base_replace(items: list[KnowledgeItem], principal: Principal = Depends(resolve_auth)) -> OkResponse:
    require_role(principal, {"admin"})
    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        raise HTTPException(status_code=400, detail="Knowledge base entry ids must be unique")
    app_db.replace_knowledge_items([item.model_dump(by_alias=True, exclude_none=True) for item in items])
    delivered = await broadcaster.broadcast({"type": KB_UPDATED})
    log.info("Knowledge base replaced by %s (%d entries, notified %d clients)", principal.email, len(items), delivered)
    return OkResponse()


# --- sessions ---


@app.get("/api/sessions", response_model=list[ChatSession])
def sessions_list(user: str, principal: Principal = Depends(resolve_auth)) -> list[dict[str, Any]]:
    owner = require_owner_or_admin(principal, user)
    return app_db.list_chat_sessions(owner)


@app.post("/api/sessions", response_model=OkResponse)
def sessions_upsert(req: SessionUpsertRequest, principal: Principal = Depends(resolve_auth)) -> OkResponse:
    owner = require_owner_or_admin(principal, req.user, admin_allowed=False)
    app_db.upsert_chat_session(owner, req.session.model_dump(by_alias=True, mode="json"))
    return OkResponse()


@app.delete("/api/sessions/{user}/{session_id}", response_model=OkResponse)
def sessions_delete(user: str, session_id: str, principal: Principal = Depends(resolve_auth)) -> OkResponse:
    owner = require_owner_or_admin(principal, user, admin_allowed=False)
    app_db.delete_chat_session(owner, session_id)
    return OkResponse()


# --- per-user settings ---


@app.get("/api/settings", response_model=UserSettings)
def settings_get(user: str, principal: Principal = Depends(resolve_auth)) -> UserSettings:
    owner = require_owner_or_admin(principal, user)
    stored = app_db.get_user_settings(owner)
    if not stored:
        return UserSettings()
    return UserSettings.model_validate(stored)


@app.post("/api/settings", response_model=OkResponse)
def settings_save(req: SettingsUpdateRequest, principal: Principal = Depends(resolve_auth)) -> OkResponse:
    owner = require_owner_or_admin(principal, req.user, admin_allowed=False)
    app_db.set_user_settings(owner, req.settings.model_dump(mode="json"))
    return OkResponse()


# --- chat pipeline config ---


@app.get("/api/chat-config", response_model=ChatConfig)
def chat_config(principal: Principal = Depends(resolve_auth)) -> ChatConfig:
    require_login(principal)
    try:
        effective = get_settings_bundle()["effective"]
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return ChatConfig(
        system_prompt_template=str(effective.get("system_prompt_template") or ""),
        required_placeholders=[str(p) for p in effective.get("required_placeholders") or ["context"]],
        llm=llm_section(effective),
        chat=effective.get("chat") if isinstance(effective.get("chat"), dict) else {},
    )


# --- admin ---


@app.get("/api/users", response_model=list[User])
def users_list(principal: Principal = Depends(resolve_auth)) -> list[dict[str, Any]]:
    require_role(principal, {"admin"})
    return app_db.list_users()


@app.get("/api/admin/config", response_model=AdminConfigResponse)
def admin_get_config(principal: Principal = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(principal, {"admin"})
    try:
        return get_settings_bundle()
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.post("/api/admin/config", response_model=AdminConfigResponse)
def admin_update_config(req: AdminConfigUpdateRequest, principal: Principal = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(principal, {"admin"})
    if "system_prompt_template" in req.settings:
        tmpl = req.settings.get("system_prompt_template")
        if not isinstance(tmpl, str) or not tmpl.strip():
            raise HTTPException(status_code=400, detail="system_prompt_template must be a non-empty string")
        if "{{context}}" not in tmpl:
            raise HTTPException(status_code=400, detail="system_prompt_template must include required placeholder {{context}}")
    if "llm" in req.settings and not isinstance(req.settings.get("llm"), dict):
        raise HTTPException(status_code=400, detail="llm must be an object")
    try:
        return update_settings(req.settings)
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e


# --- push channel ---


@app.websocket("/ws")
async def push_channel(ws: WebSocket) -> None:
    await broadcaster.connect(ws)
    try:
        # Server-to-client only; inbound frames are read to notice disconnects.
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)


@app.api_route("/api/{path:path}", methods=["GET", "POST", "DELETE"], include_in_schema=False)
def api_not_found(path: str, request: Request) -> JSONResponse:
    log.info("404 Not Found: %s /api/%s", request.method, path)
    return JSONResponse(status_code=404, content={"success": False, "error": "API Endpoint Not Found"})
