from __future__ import annotations

import codecs
import contextlib
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import requests

from .settings import DEFAULT_BASE_URL

logger = logging.getLogger("webui.ollama")


class OllamaError(RuntimeError):
    """Raised when the Ollama backend fails or rejects a streaming chat."""


class LineDecoder:
    """
    Incremental splitter for newline-delimited byte streams.

    Network reads rarely line up with line boundaries, so the unterminated tail
    of each chunk is held back and prefixed to the next one.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._residual = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        parts = (self._residual + text).split("\n")
        self._residual = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> List[str]:
        tail = self._residual + self._decoder.decode(b"", final=True)
        self._residual = ""
        return [tail.rstrip("\r")] if tail else []


def iter_lines(chunks: Iterable[Union[bytes, str]]) -> Iterator[str]:
    decoder = LineDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


def decode_ndjson(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """
    Parse JSON objects from lines, skipping blanks and anything malformed.
    """
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed line from Ollama: %.80s", line)
            continue
        if isinstance(data, dict):
            yield data


def iter_chat_fragments(chunks: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """
    Turn raw `/api/chat` response chunks into content fragments.

    Stops at the first object flagged `done`, or when the chunks run out.
    """
    for data in decode_ndjson(iter_lines(chunks)):
        if data.get("error"):
            raise OllamaError(str(data["error"]))
        message = data.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if content:
            yield content
        if data.get("done"):
            return


class OllamaClient:
    """
    Minimal HTTP client for the Ollama REST API.

    Catalog and health calls fail soft; only `stream_chat` propagates errors.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 10,
        stream_connect_timeout: float = 10,
        stream_idle_timeout: float = 60,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.stream_connect_timeout = stream_connect_timeout
        self.stream_idle_timeout = stream_idle_timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def list_models(self) -> List[Dict[str, Any]]:
        try:
            response = self.session.get(self._url("/api/tags"), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Error fetching models from %s: %s", self.base_url, exc)
            return []
        models = data.get("models") if isinstance(data, dict) else None
        results: List[Dict[str, Any]] = []
        for item in models or []:
            if isinstance(item, dict) and item.get("name"):
                results.append({"name": item["name"], "size": item.get("size")})
        return results

    def pull_model(self, name: str) -> bool:
        # Ollama streams pull progress; acceptance is all we report, so the
        # body is never read.
        try:
            response = self.session.post(
                self._url("/api/pull"),
                json={"name": name},
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Error pulling model %s: %s", name, exc)
            return False
        with contextlib.closing(response):
            accepted = response.ok
        if not accepted:
            logger.warning("Ollama rejected pull of %s with %s", name, response.status_code)
        return accepted

    def delete_model(self, name: str) -> bool:
        try:
            response = self.session.delete(
                self._url("/api/delete"),
                json={"name": name},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Error deleting model %s: %s", name, exc)
            return False
        if not response.ok:
            logger.warning("Ollama rejected delete of %s with %s", name, response.status_code)
        return response.ok

    def check_health(self) -> bool:
        try:
            response = self.session.get(self._url("/api/tags"), timeout=self.timeout)
        except requests.RequestException:
            return False
        return response.ok

    def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[str]:
        """
        Yield content fragments of a streaming chat completion.

        The request is opened lazily on the first `next()`. Transport failures,
        idle-read timeouts and non-success statuses raise `OllamaError`.
        """
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        payload = {
            "model": model,
            "messages": messages,
            "stream": True,
            "options": options,
        }
        url = self._url("/api/chat")
        try:
            response = self.session.post(
                url,
                json=payload,
                stream=True,
                timeout=(self.stream_connect_timeout, self.stream_idle_timeout),
            )
        except requests.RequestException as exc:
            raise OllamaError(f"Could not reach Ollama at {url}: {exc}") from exc
        with contextlib.closing(response):
            if response.status_code >= 400:
                raise OllamaError(
                    f"Ollama returned {response.status_code}: {response.text[:200]}"
                )
            try:
                yield from iter_chat_fragments(response.iter_content(chunk_size=None))
            except requests.RequestException as exc:
                raise OllamaError(f"Ollama stream interrupted: {exc}") from exc
