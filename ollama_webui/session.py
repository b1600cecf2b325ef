"""
Client side of the chat: a thin HTTP wrapper around the server API plus the
controller that drives one chat turn at a time for a conversation view.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union
from urllib.parse import quote

import requests

from .llm import iter_lines
from .settings import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .storage import build_title

STATE_IDLE = "idle"
STATE_SUBMITTING = "submitting"
STATE_STREAMING = "streaming"

logger = logging.getLogger("webui.session")


class ChatApiError(RuntimeError):
    """Raised when the chat server answers with an error status or drops a stream."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def iter_sse_frames(chunks: Iterable[Union[bytes, str]]) -> Iterator[Dict[str, Any]]:
    """
    Decode `data:` events from a server-sent-event byte stream into dicts.

    Comments and unknown fields are ignored; an event whose data is not a
    JSON object is skipped.
    """
    data_lines: List[str] = []

    def _emit() -> Iterator[Dict[str, Any]]:
        payload = "\n".join(data_lines)
        data_lines.clear()
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable event: %.80s", payload)
            return
        if isinstance(frame, dict):
            yield frame

    for line in iter_lines(chunks):
        if not line:
            if data_lines:
                yield from _emit()
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
    if data_lines:
        yield from _emit()


class ChatStream:
    """
    Iterator over the frames of one chat response.

    `close()` may be called at any time, also while another frame is pending;
    the iterator then simply ends.
    """

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._frames = iter_sse_frames(response.iter_content(chunk_size=None))
        self.closed = False

    def __iter__(self) -> "ChatStream":
        return self

    def __next__(self) -> Dict[str, Any]:
        if self.closed:
            raise StopIteration
        try:
            return next(self._frames)
        except (requests.RequestException, OSError, ValueError) as exc:
            if self.closed:
                raise StopIteration from None
            raise ChatApiError(f"Chat stream interrupted: {exc}") from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._response.close()


class ChatApi:
    """
    Minimal HTTP client for the chat server's JSON API.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:5000",
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
        stream_timeout: Tuple[float, float] = (10, 120),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.stream_timeout = stream_timeout

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("error"):
                message = body["error"]
            else:
                message = response.text or response.reason
            response.close()
            raise ChatApiError(f"{method} {path} failed: {message}", response.status_code)
        return response

    def health(self) -> bool:
        return bool(self._request("GET", "/api/health").json().get("ollama"))

    def list_conversations(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/conversations").json()

    def create_conversation(self, title: str, model: str) -> Dict[str, Any]:
        return self._request("POST", "/api/conversations", json={"title": title, "model": model}).json()

    def update_conversation(self, conversation_id: str, **changes: Any) -> Dict[str, Any]:
        return self._request("PATCH", f"/api/conversations/{conversation_id}", json=changes).json()

    def delete_conversation(self, conversation_id: str) -> None:
        self._request("DELETE", f"/api/conversations/{conversation_id}")

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/api/conversations/{conversation_id}/messages").json()

    def create_message(self, conversation_id: str, role: str, content: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/api/conversations/{conversation_id}/messages",
            json={"role": role, "content": content},
        ).json()

    def stream_chat(
        self,
        conversation_id: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatStream:
        payload = {"model": model, "temperature": temperature, "max_tokens": max_tokens}
        response = self._request(
            "POST",
            f"/api/conversations/{conversation_id}/chat",
            json={key: value for key, value in payload.items() if value is not None},
            headers={"Accept": "text/event-stream"},
            stream=True,
            timeout=self.stream_timeout,
        )
        return ChatStream(response)

    def list_models(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/models").json()

    def pull_model(self, name: str) -> bool:
        return bool(self._request("POST", "/api/models/pull", json={"name": name}).json().get("success"))

    def delete_model(self, name: str) -> None:
        self._request("DELETE", f"/api/models/{quote(name, safe=':')}")

    def list_settings(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/settings").json()

    def update_setting(self, key: str, value: Any) -> Dict[str, Any]:
        return self._request("PUT", f"/api/settings/{quote(key, safe='')}", json={"value": value}).json()


class ChatSession:
    """
    Drives the chat view for one conversation at a time.

    Each turn moves `idle -> submitting -> streaming -> idle`. While streaming,
    fragments collect in `streaming_text`, kept apart from the committed
    `messages`; once the server reports `done` the committed list is reloaded
    from the server. On an error frame the partial text is dropped and only the
    user's message stays visible.

    Switching conversation or starting a new chat abandons the running stream:
    frames that still arrive for it are never applied.
    """

    def __init__(
        self,
        api: ChatApi,
        *,
        model: Optional[str] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        listener: Optional[Callable[["ChatSession"], None]] = None,
    ) -> None:
        self.api = api
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.listener = listener
        self.state = STATE_IDLE
        self.conversation_id: Optional[str] = None
        self.conversations: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []
        self.models: List[Dict[str, Any]] = []
        self.streaming_text = ""
        self.error: Optional[str] = None
        self._generation = 0
        self._active_stream: Optional[ChatStream] = None

    @property
    def is_streaming(self) -> bool:
        return self.state == STATE_STREAMING

    def _notify(self) -> None:
        if self.listener is not None:
            self.listener(self)

    def refresh_conversations(self) -> List[Dict[str, Any]]:
        self.conversations = self.api.list_conversations()
        self._notify()
        return self.conversations

    def refresh_models(self) -> List[Dict[str, Any]]:
        try:
            models = self.api.list_models()
        except (ChatApiError, requests.RequestException) as exc:
            # Keep whatever list we had.
            logger.warning("Model refresh failed: %s", exc)
            return self.models
        self.models = models
        if self.model is None and models:
            self.model = models[0]["name"]
        self._notify()
        return self.models

    def open_conversation(self, conversation_id: str) -> None:
        self.cancel()
        self.conversation_id = conversation_id
        self.error = None
        self.messages = self.api.list_messages(conversation_id)
        conversation = next(
            (item for item in self.conversations if item.get("id") == conversation_id),
            None,
        )
        if conversation and conversation.get("model"):
            self.model = conversation["model"]
        self._notify()

    def new_conversation(self) -> None:
        self.cancel()
        self.conversation_id = None
        self.messages = []
        self.error = None
        self._notify()

    def delete_conversation(self, conversation_id: str) -> None:
        self.api.delete_conversation(conversation_id)
        if conversation_id == self.conversation_id:
            self.new_conversation()
        self.refresh_conversations()

    def select_model(self, model: str) -> None:
        self.model = model
        if self.conversation_id is not None and not self.is_streaming:
            self.api.update_conversation(self.conversation_id, model=model)
            self.refresh_conversations()
        self._notify()

    def cancel(self) -> None:
        """
        Stop applying frames from the running stream, if any.
        """
        self._generation += 1
        stream, self._active_stream = self._active_stream, None
        if stream is not None:
            stream.close()
            logger.info("Abandoned stream for %s", self.conversation_id)
        if self.state != STATE_IDLE:
            self.state = STATE_IDLE
            self.streaming_text = ""
            self._notify()

    def submit(self, prompt: str) -> bool:
        """
        Run one chat turn. Returns True when an assistant reply was committed.

        Empty prompts and prompts sent while a turn is running are ignored.
        """
        text = (prompt or "").strip()
        if not text or self.state != STATE_IDLE:
            return False
        if not self.model:
            self.error = "No model selected"
            self._notify()
            return False
        self._generation += 1
        token = self._generation
        self.state = STATE_SUBMITTING
        self.error = None
        self._notify()

        try:
            if self.conversation_id is None:
                conversation = self.api.create_conversation(build_title(text), self.model)
                self.conversation_id = conversation["id"]
                self.messages = []
                self.refresh_conversations()
            conversation_id = self.conversation_id
            message = self.api.create_message(conversation_id, "user", text)
            if token != self._generation:
                return False
            self.messages.append(message)
            self.state = STATE_STREAMING
            self.streaming_text = ""
            self._notify()
            stream = self.api.stream_chat(
                conversation_id,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except (ChatApiError, requests.RequestException) as exc:
            if token == self._generation:
                self._fail(str(exc))
            return False
        if token != self._generation:
            stream.close()
            return False
        self._active_stream = stream
        return self._consume(stream, token, conversation_id)

    def _consume(self, stream: ChatStream, token: int, conversation_id: str) -> bool:
        try:
            for frame in stream:
                if token != self._generation:
                    return False
                if "error" in frame:
                    logger.warning("Chat stream for %s failed: %s", conversation_id, frame["error"])
                    self._fail(str(frame["error"]))
                    return False
                if frame.get("done"):
                    self._finish(conversation_id)
                    return True
                content = frame.get("content")
                if content:
                    self.streaming_text += content
                    self._notify()
            if token == self._generation:
                self._fail("Stream ended before the reply was complete")
            return False
        except (ChatApiError, requests.RequestException) as exc:
            if token == self._generation:
                self._fail(str(exc))
            return False
        finally:
            stream.close()
            if self._active_stream is stream:
                self._active_stream = None

    def _finish(self, conversation_id: str) -> None:
        # The stored assistant message replaces the streamed text.
        self.messages = self.api.list_messages(conversation_id)
        self.streaming_text = ""
        self.state = STATE_IDLE
        self.conversations = self.api.list_conversations()
        self._notify()

    def _fail(self, message: str) -> None:
        self.streaming_text = ""
        self.state = STATE_IDLE
        self.error = message
        self._notify()
