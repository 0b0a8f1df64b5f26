from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import httpx
import nh3
from markdown_it import MarkdownIt

from chatkeep.logging import get_logger
from chatkeep.storage.models import User

logger = get_logger(__name__)

CHAT_ERROR_TEXT = "Sorry, I encountered an error. Please try again."
# Turns kept besides the system prompt
MAX_HISTORY_MESSAGES = 40


class ChatBackendError(Exception):
    """The assistant backend could not produce a reply."""


class ChatBackend(Protocol):
    async def complete(self, messages: List[Dict[str, str]]) -> str: ...

    async def close(self) -> None: ...


class StubChatBackend:
    """Deterministic reply used when no LLM API key is configured."""

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        last_user = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return f"(offline assistant) You said: {last_user}"

    async def close(self) -> None:
        return None


class OpenAIChatBackend:
    """Chat completions over an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        max_tokens: int = 500,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": self.max_tokens,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "chat_completion_api_error",
                status_code=e.response.status_code,
                model=self.model,
            )
            raise ChatBackendError(f"completion failed: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error("chat_completion_timeout", model=self.model, error=str(e))
            raise ChatBackendError("completion timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "chat_completion_transport_error",
                api_base=self.base_url,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ChatBackendError("failed to reach completion service") from e
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ChatBackendError("unexpected completion payload") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def build_chat_backend(
    api_key: Optional[str],
    *,
    base_url: str,
    model: str,
    timeout_seconds: float,
    max_tokens: int,
) -> ChatBackend:
    if not api_key:
        logger.warning("chat_backend_no_api_key", fallback="stub")
        return StubChatBackend()
    return OpenAIChatBackend(
        api_key,
        base_url=base_url,
        model=model,
        timeout_seconds=timeout_seconds,
        max_tokens=max_tokens,
    )


# Markup a rendered reply may keep; everything else is stripped
ALLOWED_MESSAGE_TAGS = {
    "p", "br", "strong", "em", "code", "pre", "blockquote", "ul", "ol", "li",
    "h1", "h2", "h3", "h4", "h5", "h6", "span",
}
ALLOWED_MESSAGE_ATTRIBUTES = {"*": {"class"}}

_markdown = MarkdownIt("commonmark", {"html": False, "breaks": True, "xhtmlOut": False})


def render_message_html(text: str) -> str:
    """Render message markdown to sanitized HTML.

    Falls back to escaped plain text with ``<br>`` line breaks when rendering
    fails.
    """
    try:
        return nh3.clean(
            _markdown.render(text or ""),
            tags=ALLOWED_MESSAGE_TAGS,
            attributes=ALLOWED_MESSAGE_ATTRIBUTES,
        )
    except Exception as exc:
        logger.warning("message_render_failed", error_type=type(exc).__name__, error=str(exc))
        return html.escape(text or "").replace("\n", "<br>")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def bot_payload(text: str) -> dict:
    return {"text": text, "html": render_message_html(text), "timestamp": _timestamp()}


class ChatConnection:
    """State owned by one authenticated socket for as long as it is open.

    The user snapshot is taken at handshake time and is not refreshed: a
    logout elsewhere does not affect a connection that is already open.
    """

    def __init__(
        self,
        user: User,
        token: str,
        backend: ChatBackend,
        *,
        assistant_name: str = "Keeper",
    ) -> None:
        self.user = user
        self.token = token
        self.backend = backend
        self.assistant_name = assistant_name
        self.history: List[Dict[str, str]] = []
        self.system_prompt = (
            f"You are {assistant_name}, a helpful AI assistant. The user you're "
            f"chatting with is {user.first_name} {user.last_name}. Respond in a "
            "friendly and informative way."
        )

    def welcome(self) -> dict:
        return bot_payload(
            f"Hello {self.user.first_name}! I'm {self.assistant_name}, your AI "
            "assistant. How can I help you today?"
        )

    def messages(self) -> List[Dict[str, str]]:
        return [{"role": "system", "content": self.system_prompt}, *self.history]

    async def reply(self, text: str) -> dict:
        """Append ``text`` to the history and return the assistant's answer."""
        self.history.append({"role": "user", "content": text})
        try:
            answer = await self.backend.complete(self.messages())
        except ChatBackendError as exc:
            logger.warning("chat_reply_failed", user_id=self.user.id, error=str(exc))
            self.history.pop()
            return bot_payload(CHAT_ERROR_TEXT)
        self.history.append({"role": "assistant", "content": answer})
        if len(self.history) > MAX_HISTORY_MESSAGES:
            self.history = self.history[-MAX_HISTORY_MESSAGES:]
        return bot_payload(answer)

    def close(self) -> None:
        self.history.clear()
