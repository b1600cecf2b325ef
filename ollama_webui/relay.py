from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .llm import OllamaClient, OllamaError
from .settings import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .storage import Conversation, Message, RecordStore

logger = logging.getLogger("webui.relay")

STREAM_ERROR_MESSAGE = "Failed to generate response"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def content_frame(fragment: str) -> Dict[str, Any]:
    return {"content": fragment, "done": False}


def done_frame() -> Dict[str, Any]:
    return {"content": "", "done": True}


def error_frame(message: str = STREAM_ERROR_MESSAGE) -> Dict[str, Any]:
    return {"error": message}


def format_sse(frame: Dict[str, Any]) -> str:
    return f"data: {json.dumps(frame)}\n\n"


@dataclass
class ChatOptions:
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    system_prompt: Optional[str] = None


def _setting_field(store: RecordStore, key: str, field: str) -> Any:
    setting = store.get_setting(key)
    if setting is None or not isinstance(setting.value, dict):
        return None
    return setting.value.get(field)


def _number_setting(
    store: RecordStore,
    key: str,
    field: str,
    cast: Callable[[Any], Any],
    default: Any,
    minimum: float,
    maximum: float = float("inf"),
) -> Any:
    # Setting values are opaque, so a hand-edited one may not be a usable number.
    value = _setting_field(store, key, field)
    if value is None:
        return default
    try:
        number = None if isinstance(value, bool) else cast(value)
    except (TypeError, ValueError, OverflowError):
        number = None
    if number is None or not minimum <= number <= maximum:
        logger.warning("Ignoring stored %s setting %r, using %r", key, value, default)
        return default
    return number


def resolve_options(
    store: RecordStore,
    conversation: Conversation,
    *,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> ChatOptions:
    """
    Fill in whatever the request left out from stored settings, then defaults.
    """
    if temperature is None:
        temperature = _number_setting(
            store, "temperature", "temperature", float, DEFAULT_TEMPERATURE, 0.0, 2.0
        )
    if max_tokens is None:
        max_tokens = _number_setting(store, "max_tokens", "max_tokens", int, DEFAULT_MAX_TOKENS, 1)
    system_prompt = _setting_field(store, "system_prompt", "prompt")
    return ChatOptions(
        model=model or conversation.model,
        temperature=float(temperature),
        max_tokens=int(max_tokens),
        system_prompt=system_prompt if isinstance(system_prompt, str) and system_prompt.strip() else None,
    )


def build_history(messages: Sequence[Message], system_prompt: Optional[str] = None) -> List[Dict[str, str]]:
    history: List[Dict[str, str]] = []
    if system_prompt:
        history.append({"role": "system", "content": system_prompt})
    history.extend({"role": message.role, "content": message.content} for message in messages)
    return history


class StreamRelay:
    """
    Bridges one chat request to one server-sent-event stream.

    Fragments are forwarded as soon as they arrive. The assistant reply is
    stored once, only after Ollama finishes; on failure the partial reply is
    dropped and a single error frame closes the stream.
    """

    def __init__(self, client: OllamaClient, store: RecordStore) -> None:
        self.client = client
        self.store = store

    def open(self, conversation_id: str, options: ChatOptions) -> Iterator[str]:
        # History is read now, before any byte of the response is sent.
        history = build_history(self.store.get_messages(conversation_id), options.system_prompt)
        logger.info(
            "Streaming chat for %s (model=%s, %d messages in context)",
            conversation_id,
            options.model,
            len(history),
        )
        return self._relay(conversation_id, history, options)

    def _relay(
        self,
        conversation_id: str,
        history: List[Dict[str, str]],
        options: ChatOptions,
    ) -> Iterator[str]:
        accumulated: List[str] = []
        fragments = self.client.stream_chat(
            options.model,
            history,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        try:
            for fragment in fragments:
                accumulated.append(fragment)
                yield format_sse(content_frame(fragment))
            message = self.store.create_message(
                conversation_id=conversation_id,
                role="assistant",
                content="".join(accumulated),
            )
        except OllamaError as exc:
            logger.warning("Chat stream for %s failed: %s", conversation_id, exc)
            yield format_sse(error_frame())
            return
        except Exception:
            logger.exception("Chat stream for %s failed unexpectedly", conversation_id)
            yield format_sse(error_frame())
            return
        finally:
            close = getattr(fragments, "close", None)
            if callable(close):
                close()
        logger.info(
            "Stored assistant message %s for %s (%d chars)",
            message.id,
            conversation_id,
            len(message.content),
        )
        yield format_sse(done_frame())
