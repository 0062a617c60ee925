import logging
import re
import threading
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from openai import AsyncOpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 2048

DEFAULT_SYSTEM_PROMPT = """You are an intelligent research assistant. You help users analyze and understand academic papers and documents.

When answering questions:
- Be concise but thorough
- Cite specific parts of the document when relevant
- Use markdown formatting for better readability (headers, lists, bold, code blocks)
- If you don't have enough information to answer, say so clearly
- Provide actionable insights when possible"""

_KNOWN_SUFFIXES = ("/chat/completions", "/responses", "/embeddings", "/files")
_VERSION_RE = re.compile(r"/v\d+(?:beta)?\b")


class LLMError(Exception):
    """Base class for chat-completion failures."""


class LLMConfigError(LLMError):
    """Raised when no endpoint or key is configured."""


class LLMRequestError(LLMError):
    """Raised when the backend rejects or fails a request."""


@dataclass
class LLMSettings:
    api_base: str = ""
    api_key: str = ""
    model: str = DEFAULT_MODEL
    system_prompt: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "LLMSettings":
        return cls(
            api_base=str(values.get("OPENAI_API_BASE") or ""),
            api_key=str(values.get("OPENAI_API_KEY") or ""),
            model=str(values.get("CHATMARK_MODEL") or DEFAULT_MODEL),
            system_prompt=str(values.get("CHATMARK_SYSTEM_PROMPT") or ""),
            temperature=parse_number(
                values.get("CHATMARK_TEMPERATURE"), float, DEFAULT_TEMPERATURE
            ),
            max_tokens=parse_number(
                values.get("CHATMARK_MAX_TOKENS"), int, DEFAULT_MAX_TOKENS
            ),
        )


def parse_number(value: Any, cast: Callable[[Any], Any], default: Any) -> Any:
    """Convert a stored preference with ``cast``; blank or malformed gives ``default``."""
    if value is None or str(value).strip() == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed numeric preference %r", value)
        return default


class CancelToken:
    """Cooperative cancellation flag shared between a request and a stream."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CancelRegistry:
    """In-flight streams per document id; a new stream supersedes the old."""

    def __init__(self):
        self._tokens: dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    def start(self, document_id: str) -> CancelToken:
        token = CancelToken()
        with self._lock:
            previous = self._tokens.get(document_id)
            if previous is not None:
                previous.cancel()
            self._tokens[document_id] = token
        return token

    def cancel(self, document_id: str) -> bool:
        with self._lock:
            token = self._tokens.pop(document_id, None)
        if token is None:
            return False
        token.cancel()
        return True

    def finish(self, document_id: str, token: CancelToken) -> None:
        with self._lock:
            if self._tokens.get(document_id) is token:
                del self._tokens[document_id]


def resolve_base_url(base: str) -> str:
    """Normalize a configured endpoint into an SDK base URL.

    Accepts a bare host, a versioned base, or a full endpoint URL such as
    ``.../v1/chat/completions`` and returns the versioned base.
    """
    cleaned = base.strip().rstrip("/")
    if not cleaned:
        return ""
    for suffix in _KNOWN_SUFFIXES:
        if cleaned.endswith(suffix):
            return cleaned[: -len(suffix)]
    if _VERSION_RE.search(cleaned):
        return cleaned
    return f"{cleaned}/v1"


def uses_max_completion_tokens(model: str) -> bool:
    name = model.lower()
    return name.startswith("gpt-5") or name.startswith("o") or "reasoning" in name


def build_messages(
    prompt: str,
    context: str = "",
    history: Optional[List[dict]] = None,
    system_prompt: str = "",
) -> List[dict]:
    messages: List[dict] = [
        {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT}
    ]
    if context:
        messages.append({"role": "system", "content": f"Document Context:\n{context}"})
    for message in history or []:
        messages.append({"role": message["role"], "content": message.get("content") or ""})
    messages.append({"role": "user", "content": prompt})
    return messages


def _get_client(settings: LLMSettings) -> AsyncOpenAI:
    if not settings.api_base and not settings.api_key:
        raise LLMConfigError("API base URL or API key is missing in preferences")

    # Never shared: each request runs on its own short-lived event loop.
    return AsyncOpenAI(
        # Local OpenAI-compatible servers accept any key.
        api_key=settings.api_key or "EMPTY",
        base_url=resolve_base_url(settings.api_base) or None,
    )


def _request_kwargs(settings: LLMSettings, messages: List[dict]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": settings.model,
        "messages": messages,
        "temperature": settings.temperature,
    }
    if uses_max_completion_tokens(settings.model):
        kwargs["max_completion_tokens"] = settings.max_tokens
    else:
        kwargs["max_tokens"] = settings.max_tokens
    return kwargs


async def complete(messages: List[dict], settings: LLMSettings) -> str:
    """
    Non-streaming chat completion that returns the full reply text.
    """
    client = _get_client(settings)
    started = time.time()
    try:
        response = await client.chat.completions.create(**_request_kwargs(settings, messages))
    except OpenAIError as exc:
        logger.exception("AI backend error: %s", exc)
        raise LLMRequestError(str(exc)) from exc
    finally:
        await client.close()

    content = ""
    if response.choices:
        content = response.choices[0].message.content or ""
    elapsed = time.time() - started
    logger.info("Model %s completed %s chars in %.2fs", settings.model, len(content), elapsed)
    return content


async def stream(
    messages: List[dict],
    settings: LLMSettings,
    cancel: CancelToken | None = None,
) -> AsyncIterator[str]:
    """
    Async generator that yields streamed chunks of assistant text.

    Stops quietly once ``cancel`` is set; chunks already yielded stand.
    """
    client = _get_client(settings)
    started = time.time()
    total_chars = 0
    try:
        response = await client.chat.completions.create(
            stream=True, **_request_kwargs(settings, messages)
        )
        async for chunk in response:
            if cancel is not None and cancel.cancelled:
                logger.info("Stream for model %s cancelled", settings.model)
                await response.close()
                break
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                total_chars += len(delta)
                yield delta
    except OpenAIError as exc:
        logger.exception("AI backend error: %s", exc)
        raise LLMRequestError(str(exc)) from exc
    finally:
        elapsed = time.time() - started
        await client.close()
        logger.info(
            "Model %s streamed %s chars in %.2fs", settings.model, total_chars, elapsed
        )
