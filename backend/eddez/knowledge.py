from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, Sequence

import websockets
from websockets.exceptions import WebSocketException

from .defaults import DEFAULT_KNOWLEDGE_BASE
from .logging_utils import get_logger
from .schemas import KnowledgeItem

log = get_logger(__name__)

KB_UPDATED = "KB_UPDATED"

KnowledgeFetcher = Callable[[], Awaitable[Sequence[KnowledgeItem]]]
KnowledgeCallback = Callable[[tuple[KnowledgeItem, ...]], None]


def default_knowledge() -> tuple[KnowledgeItem, ...]:
    return tuple(KnowledgeItem.model_validate(item) for item in DEFAULT_KNOWLEDGE_BASE)


class KnowledgeStore:
    """Read-side view of the knowledge base.

    The snapshot is an immutable tuple swapped in one assignment, so a turn
    that grabbed it keeps a consistent view while a refresh runs.
    """

    def __init__(self, fetch: KnowledgeFetcher, initial: Sequence[KnowledgeItem] | None = None) -> None:
        self._fetch = fetch
        self._items: tuple[KnowledgeItem, ...] = tuple(initial) if initial is not None else default_knowledge()
        self._subscribers: list[KnowledgeCallback] = []
        self._refresh_lock = asyncio.Lock()

    def items(self) -> tuple[KnowledgeItem, ...]:
        return self._items

    def button_urls(self) -> set[str]:
        return {item.button_url.strip() for item in self._items if item.button_url}

    def subscribe(self, callback: KnowledgeCallback) -> None:
        self._subscribers.append(callback)

    async def refresh(self) -> tuple[KnowledgeItem, ...]:
        async with self._refresh_lock:
            try:
                fetched = tuple(await self._fetch())
            except Exception:
                log.warning("Knowledge base fetch failed; keeping %d cached entries", len(self._items), exc_info=True)
                return self._items
            self._items = fetched
            log.info("Knowledge base refreshed (%d entries)", len(fetched))
        for cb in list(self._subscribers):
            cb(fetched)
        return fetched


def websocket_url(api_url: str) -> str:
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        return "wss://" + base[len("https://") :] + "/ws"
    if base.startswith("http://"):
        return "ws://" + base[len("http://") :] + "/ws"
    return base + "/ws"


class KnowledgeUpdatesListener:
    """Follows the push channel and re-fetches the knowledge base on KB_UPDATED."""

    def __init__(self, url: str, store: KnowledgeStore, *, reconnect_delay_s: float = 3.0) -> None:
        self.url = url
        self.store = store
        self.reconnect_delay_s = reconnect_delay_s

    async def handle_message(self, raw: str | bytes) -> bool:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Ignoring malformed push frame: %r", raw[:120] if raw else raw)
            return False
        if not isinstance(data, dict) or data.get("type") != KB_UPDATED:
            return False
        log.info("Received knowledge base update")
        await self.store.refresh()
        return True

    async def run(self) -> None:
        while True:
            try:
                async with websockets.connect(self.url) as ws:
                    log.info("Push channel connected: %s", self.url)
                    async for raw in ws:
                        await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException) as e:
                log.warning("Push channel dropped (%s); reconnecting in %.1fs", e, self.reconnect_delay_s)
            await asyncio.sleep(self.reconnect_delay_s)
