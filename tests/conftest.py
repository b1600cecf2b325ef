import asyncio
import sys
from json import dumps
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ollama_webui.llm import OllamaError  # noqa: E402
from ollama_webui.main import create_app  # noqa: E402
from ollama_webui.storage import RecordStore  # noqa: E402


class InlineClient(requests.Session):
    """
    requests.Session that calls an ASGI app in-process instead of the network.

    Responses are fully buffered, so streamed bodies arrive as one chunk.
    """

    def __init__(self, app: Any, base_url: str = "http://testserver") -> None:
        super().__init__()
        self.app = app
        self.base_url = base_url

    def request(self, method, url, params=None, data=None, headers=None, json=None, **kwargs):  # type: ignore[override]
        if not url.startswith("http"):
            url = self.base_url + url
        parsed = urlparse(url)
        path = parsed.path or "/"
        header_pairs = [(b"accept", b"*/*")]
        body = data or b""
        if json is not None:
            body = dumps(json)
            header_pairs.append((b"content-type", b"application/json"))
        if isinstance(body, str):
            body = body.encode("utf-8")
        for key, value in (headers or {}).items():
            header_pairs.append((key.lower().encode("latin-1"), str(value).encode("latin-1")))
        header_pairs.append((b"content-length", str(len(body)).encode("latin-1")))
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method.upper(),
            "scheme": parsed.scheme or "http",
            "path": unquote(path),
            "raw_path": path.encode("utf-8"),
            "root_path": "",
            "query_string": parsed.query.encode("utf-8"),
            "headers": header_pairs,
            "server": (parsed.hostname or "testserver", parsed.port or 80),
            "client": ("testclient", 50000),
        }
        request_messages = [
            {
                "type": "http.request",
                "body": body,
                "more_body": False,
            }
        ]

        async def receive() -> dict:
            if request_messages:
                return request_messages.pop(0)
            # The client never disconnects; wait until the app stops listening.
            await asyncio.Event().wait()
            return {"type": "http.disconnect"}

        collected: List[dict] = []

        async def send(message: dict) -> None:
            collected.append(message)

        asyncio.run(self.app(scope, receive, send))

        status = 500
        response_headers = requests.structures.CaseInsensitiveDict()
        chunks: List[bytes] = []
        for message in collected:
            if message["type"] == "http.response.start":
                status = message["status"]
                for header_key, header_value in message.get("headers", []):
                    response_headers[header_key.decode("latin-1")] = header_value.decode("latin-1")
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
        response = requests.Response()
        response.status_code = status
        response._content = b"".join(chunks)
        response._content_consumed = True
        response.url = url
        response.reason = ""
        response.headers = response_headers
        if "content-type" in response_headers:
            response.encoding = requests.utils.get_encoding_from_headers(response_headers)
        return response


class FakeOllama:
    """
    Stand-in for OllamaClient with scripted catalog and chat behaviour.
    """

    def __init__(self) -> None:
        self.models: List[Dict[str, Any]] = []
        self.healthy = True
        self.accept = True
        self.fragments: List[str] = []
        self.fail_after: Optional[int] = None
        self.calls: List[tuple] = []

    def check_health(self) -> bool:
        return self.healthy

    def list_models(self) -> List[Dict[str, Any]]:
        return [dict(item) for item in self.models]

    def pull_model(self, name: str) -> bool:
        self.calls.append(("pull", name))
        return self.accept

    def delete_model(self, name: str) -> bool:
        self.calls.append(("delete", name))
        return self.accept

    def stream_chat(self, model, messages, *, temperature=None, max_tokens=None) -> Iterable[str]:
        self.calls.append(("chat", model, list(messages), temperature, max_tokens))
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index >= self.fail_after:
                raise OllamaError("connection reset by peer")
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise OllamaError("connection reset by peer")


@pytest.fixture()
def store() -> RecordStore:
    return RecordStore()


@pytest.fixture()
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture()
def http_session(store: RecordStore, fake_ollama: FakeOllama):
    app = create_app({"ollama": {"base_url": "http://fake"}, "debug": True}, store=store, client=fake_ollama)
    client = InlineClient(app)
    try:
        yield client, client.base_url
    finally:
        client.close()
