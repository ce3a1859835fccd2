from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from .config import DEFAULT_SESSION_TITLE, FALLBACK_MODEL, PRIMARY_MODEL
from .errors import ConfigurationError, EddezError, UpstreamError
from .logging_utils import get_logger
from .prompting import compose_title_messages

log = get_logger(__name__)

CHAT_COMPLETION_PATH = "/api/chat-completion"
NO_RESPONSE = "No response."

_TITLE_QUOTES_RE = re.compile(r"^[\"']|[\"']$")


@dataclass(frozen=True)
class ModelEndpoint:
    model: str
    temperature: float = 0.1
    max_tokens: int = 1024
    top_p: float = 0.8

    def payload(self, messages: Sequence[dict[str, Any]]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": list(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }


def default_endpoints(llm_cfg: dict[str, Any] | None = None) -> list[ModelEndpoint]:
    llm_cfg = llm_cfg or {}
    models = [str(m).strip() for m in llm_cfg.get("models") or [] if str(m).strip()]
    if not models:
        models = [PRIMARY_MODEL, FALLBACK_MODEL]
    return [
        ModelEndpoint(
            model=m,
            temperature=float(llm_cfg.get("temperature", 0.1)),
            max_tokens=int(llm_cfg.get("max_tokens", 1024)),
            top_p=float(llm_cfg.get("top_p", 0.8)),
        )
        for m in models
    ]


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if isinstance(err, str) and err.strip():
            return err.strip()
    return f"API Error: {resp.status_code}"


def _classify(resp: httpx.Response) -> EddezError:
    message = _error_text(resp)
    if resp.status_code == 500 and "missing api key" in message.lower():
        return ConfigurationError(message)
    return UpstreamError(message)


def extract_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return NO_RESPONSE
    if not isinstance(content, str) or not content:
        return NO_RESPONSE
    return content


class ModelGateway:
    """Sends a composed message list through the backend proxy.

    Endpoints are tried in order, once each, with the identical message list.
    The first success wins; when all fail the classified error is raised.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoints: Sequence[ModelEndpoint] | None = None,
        *,
        path: str = CHAT_COMPLETION_PATH,
    ) -> None:
        self.client = client
        self.endpoints = list(endpoints) if endpoints else default_endpoints()
        if not self.endpoints:
            raise ValueError("ModelGateway needs at least one endpoint")
        self.path = path

    async def _attempt(self, endpoint: ModelEndpoint, messages: Sequence[dict[str, Any]]) -> str:
        try:
            resp = await self.client.post(self.path, json=endpoint.payload(messages))
        except httpx.HTTPError as e:
            msg = str(e).strip() or repr(e)
            raise UpstreamError(f"Chat request failed ({type(e).__name__}): {msg}") from e

        if resp.is_error:
            raise _classify(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"Unexpected chat response: {resp.text[:200]}") from e
        return extract_content(data)

    async def complete(self, messages: Sequence[dict[str, Any]]) -> str:
        config_error: ConfigurationError | None = None
        last_error: EddezError | None = None
        for i, endpoint in enumerate(self.endpoints):
            try:
                return await self._attempt(endpoint, messages)
            except (ConfigurationError, UpstreamError) as e:
                if isinstance(e, ConfigurationError):
                    config_error = e
                last_error = e
                if i + 1 < len(self.endpoints):
                    log.warning("Model %s failed (%s); switching to %s", endpoint.model, e, self.endpoints[i + 1].model)
                else:
                    log.error("Model %s failed (%s); no endpoints left", endpoint.model, e)

        # A missing credential explains every failure in the chain.
        if config_error is not None:
            raise config_error
        if last_error is None:
            raise UpstreamError("No model endpoints configured")
        raise last_error

    async def generate_title(self, first_message: str, *, max_words: int = 4) -> str:
        try:
            text = await self.complete(compose_title_messages(first_message, max_words=max_words))
        except Exception:
            log.warning("Title generation failed; using default title", exc_info=True)
            return DEFAULT_SESSION_TITLE
        if text == NO_RESPONSE:
            return DEFAULT_SESSION_TITLE
        title = _TITLE_QUOTES_RE.sub("", text.strip()).strip()
        return title or DEFAULT_SESSION_TITLE
