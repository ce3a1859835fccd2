from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys

import httpx

from .api_client import BackendClient, SessionStore, SettingsStore
from .config import API_URL, SUPPORT_URL
from .conversation import AppState, ConversationController
from .errors import ApiError, InvalidTransitionError
from .knowledge import KnowledgeStore, KnowledgeUpdatesListener, websocket_url
from .logging_utils import configure_logging, get_logger
from .model_gateway import ModelGateway, default_endpoints
from .schemas import ChatConfig, Message, UrlSegment, UserSettings

log = get_logger(__name__)

HELP = """Commands:
  /new              start a new chat
  /sessions         list saved chats
  /open N           open chat N from /sessions
  /delete N         delete chat N from /sessions
  /retry            resend the last failed message
  /tone T           casual | normal | professional
  /lang L           english | roman_urdu
  /kb               show knowledge base topics
  /quit             exit"""


def render_message(msg: Message, *, support_url: str = SUPPORT_URL) -> str:
    if msg.role == "user":
        marker = {"sending": " …", "error": " (failed, /retry to resend)"}.get(msg.status or "", "")
        return f"you> {msg.content}{marker}"

    reply = msg.reply
    if reply is None:
        return f"bot> {msg.content}"
    body = "".join(f"<{s.url}>" if isinstance(s, UrlSegment) else s.text for s in reply.segments)
    lines = [f"bot> {body}"]
    if reply.dynamic_button is not None:
        lines.append(f"     [{reply.dynamic_button.name}] {reply.dynamic_button.url}")
    if reply.wants_human_support:
        lines.append(f"     [Contact human support] {support_url}")
    return "\n".join(lines)


def _last_failed(state: AppState) -> Message | None:
    for m in reversed(state.messages):
        if m.role == "user" and m.status == "error":
            return m
    return None


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def _handle_command(line: str, controller: ConversationController) -> bool:
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()
    state = controller.state

    if cmd == "/quit":
        return False
    if cmd == "/new":
        controller.new_chat()
        print("(new chat)")
    elif cmd == "/sessions":
        if not state.sessions:
            print("(no saved chats)")
        for i, s in enumerate(state.sessions, start=1):
            mark = "*" if s.id == state.current_session_id else " "
            print(f"{mark}{i:>3}. {s.title} ({len(s.messages)} messages)")
    elif cmd in ("/open", "/delete"):
        try:
            session = state.sessions[int(arg) - 1]
        except (ValueError, IndexError):
            print("Unknown chat number; see /sessions")
            return True
        if cmd == "/open":
            controller.select_session(session.id)
            for m in controller.state.messages:
                print(render_message(m))
        else:
            await controller.delete_session(session.id)
            print(f"(deleted '{session.title}')")
    elif cmd == "/retry":
        failed = _last_failed(state)
        if failed is None:
            print("(nothing to retry)")
            return True
        await _send(controller, failed.id, retry=True)
    elif cmd in ("/tone", "/lang"):
        key = "tone" if cmd == "/tone" else "language"
        try:
            updated = UserSettings.model_validate({**state.settings.model_dump(), key: arg})
        except ValueError as e:
            print(f"Invalid value: {e}")
            return True
        await controller.update_settings(updated)
        print(f"({key} = {arg})")
    elif cmd == "/kb":
        for item in state.knowledge:
            print(f"- {item.topic}")
    else:
        print(HELP)
    return True


async def _send(controller: ConversationController, text_or_id: str, *, retry: bool = False) -> None:
    msg = await (controller.retry(text_or_id) if retry else controller.send(text_or_id))
    if msg.status == "error":
        print(render_message(msg))
        return
    print(render_message(controller.state.messages[-1]))


def build_controller(backend: BackendClient, knowledge: KnowledgeStore, config: ChatConfig) -> ConversationController:
    """Wire the chat pipeline from the server's effective settings."""
    return ConversationController(
        ModelGateway(backend.http, default_endpoints(config.llm)),
        SessionStore(backend),
        knowledge,
        settings_store=SettingsStore(backend),
        template=config.system_prompt_template,
        required_placeholders=config.required_placeholders,
        history_limit=int(config.chat.get("history_limit", 0) or 0),
        title_max_words=int(config.chat.get("title_max_words", 4) or 4),
    )


async def _chat(args: argparse.Namespace) -> int:
    async with BackendClient(base_url=args.api_url) as backend:
        online = await backend.health()
        if not online:
            log.warning("Backend at %s is not reachable; messages will fail until it is", args.api_url)
        try:
            if args.signup:
                user = await backend.signup(args.email, args.password, args.signup)
            else:
                user = await backend.login(args.email, args.password)
        except ApiError as e:
            print(f"Login failed: {e}", file=sys.stderr)
            return 1
        try:
            config = await backend.get_chat_config()
        except ApiError as e:
            print(f"Could not load chat configuration: {e}", file=sys.stderr)
            return 2

        knowledge = KnowledgeStore(backend.get_knowledge_base)
        await knowledge.refresh()

        controller = build_controller(backend, knowledge, config)
        controller.set_user(user)
        await controller.load_user_data()

        listener_task: asyncio.Task[None] | None = None
        if not args.no_push:
            listener = KnowledgeUpdatesListener(websocket_url(args.api_url), knowledge)
            listener_task = asyncio.create_task(listener.run())

        print(f"Hi {user.name}. Type a message, or /help.")
        try:
            while True:
                line = await _read_line("> ")
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    if line.startswith("/"):
                        if not await _handle_command(line, controller):
                            break
                        continue
                    controller.set_online(await backend.health())
                    await _send(controller, line)
                except (ApiError, InvalidTransitionError) as e:
                    print(f"! {e}")
        finally:
            if listener_task is not None:
                listener_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await listener_task
            try:
                await backend.logout()
            except (ApiError, httpx.HTTPError) as e:
                log.warning("Logout failed: %s", e)
    return 0


def chat_main() -> int:
    ap = argparse.ArgumentParser(description="Terminal client for the Eddez support chat.")
    ap.add_argument("--api-url", type=str, default=API_URL, help="Backend base URL")
    ap.add_argument("--email", type=str, required=True, help="Account email")
    ap.add_argument("--password", type=str, required=True, help="Account password")
    ap.add_argument("--signup", type=str, default="", metavar="NAME", help="Create the account with this display name first")
    ap.add_argument("--no-push", action="store_true", help="Do not follow knowledge base updates over the push channel")
    ap.add_argument("--log-level", type=str, default="WARNING", help="Logging level")
    args = ap.parse_args()

    configure_logging(args.log_level)
    try:
        return asyncio.run(_chat(args))
    except KeyboardInterrupt:
        return 130


def serve_main() -> int:
    import uvicorn

    ap = argparse.ArgumentParser(description="Run the Eddez backend.")
    ap.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    ap.add_argument("--port", type=int, default=7860, help="Bind port")
    ap.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = ap.parse_args()

    uvicorn.run("eddez.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    raise SystemExit(chat_main())
