from __future__ import annotations

from typing import Any

import httpx

from .config import MISSING_KEY_MESSAGE, UPSTREAM_BASE_URL, UPSTREAM_TIMEOUT_S, upstream_api_key
from .errors import ConfigurationError, UpstreamError
from .logging_utils import get_logger

log = get_logger(__name__)


def _error_message(data: Any, status_code: int) -> str:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
    return f"Upstream API Error: {status_code}"


async def forward_chat_completion(
    payload: dict[str, Any],
    *,
    base_url: str = UPSTREAM_BASE_URL,
    timeout_s: float = UPSTREAM_TIMEOUT_S,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Relay one chat-completion request to the provider with the server-side key."""
    api_key = upstream_api_key()
    if not api_key:
        raise ConfigurationError(MISSING_KEY_MESSAGE)

    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.post(f"{base_url}/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Upstream request timed out after {timeout_s:.1f}s ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            msg = str(e).strip() or repr(e)
            raise UpstreamError(f"Upstream request failed ({type(e).__name__}): {msg}") from e

    try:
        data = resp.json()
    except ValueError:
        data = None

    if resp.is_error:
        message = _error_message(data, resp.status_code)
        log.warning("Upstream rejected model=%s status=%s: %s", payload.get("model"), resp.status_code, message)
        raise UpstreamError(message)
    if not isinstance(data, dict):
        raise UpstreamError(f"Unexpected upstream response shape: {resp.text[:200]}")
    return data
