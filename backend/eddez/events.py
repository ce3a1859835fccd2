from __future__ import annotations

import json
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .logging_utils import get_logger

log = get_logger(__name__)


class Broadcaster:
    """Fan-out of server events to every connected push-channel client.

    All access happens on the server's event loop, so the client set needs no lock.
    """

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        log.info("Push client connected (%d total)", len(self._clients))

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)
        log.info("Push client disconnected (%d total)", len(self._clients))

    async def broadcast(self, event: dict[str, Any]) -> int:
        payload = json.dumps(event, ensure_ascii=False)
        delivered = 0
        for ws in list(self._clients):
            if ws.application_state != WebSocketState.CONNECTED:
                self._clients.discard(ws)
                continue
            try:
                await ws.send_text(payload)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                log.warning("Dropping push client after send failure: %s", e)
                self._clients.discard(ws)
        return delivered
