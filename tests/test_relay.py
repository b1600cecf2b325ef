import json
from typing import Any, Dict, List

import pytest

from ollama_webui.catalog import format_size, sync_catalog
from ollama_webui.relay import (
    ChatOptions,
    StreamRelay,
    build_history,
    format_sse,
    resolve_options,
)
from ollama_webui.storage import RecordStore


def _decode(events: List[str]) -> List[Dict[str, Any]]:
    frames = []
    for event in events:
        assert event.startswith("data: ") and event.endswith("\n\n")
        frames.append(json.loads(event[len("data: "):]))
    return frames


def _start(store: RecordStore, prompt: str = "hi"):
    conversation = store.create_conversation(title=prompt, model="llama3")
    store.create_message(conversation_id=conversation.id, role="user", content=prompt)
    return conversation


def test_format_sse() -> None:
    assert format_sse({"content": "a", "done": False}) == 'data: {"content": "a", "done": false}\n\n'


def test_successful_stream_persists_one_assistant_message(store: RecordStore, fake_ollama) -> None:
    conversation = _start(store)
    fake_ollama.fragments = ["Hel", "lo"]
    relay = StreamRelay(fake_ollama, store)

    frames = _decode(list(relay.open(conversation.id, ChatOptions(model="llama3"))))

    assert frames == [
        {"content": "Hel", "done": False},
        {"content": "lo", "done": False},
        {"content": "", "done": True},
    ]
    assistant = [message for message in store.get_messages(conversation.id) if message.role == "assistant"]
    assert len(assistant) == 1
    assert assistant[0].content == "Hello"


def test_failed_stream_persists_nothing(store: RecordStore, fake_ollama) -> None:
    conversation = _start(store)
    fake_ollama.fragments = ["Par", "tial"]
    fake_ollama.fail_after = 1
    relay = StreamRelay(fake_ollama, store)

    frames = _decode(list(relay.open(conversation.id, ChatOptions(model="llama3"))))

    assert frames[0] == {"content": "Par", "done": False}
    assert frames[-1] == {"error": "Failed to generate response"}
    assert not any(frame.get("done") for frame in frames)
    assert [message.role for message in store.get_messages(conversation.id)] == ["user"]


def test_history_is_loaded_before_streaming(store: RecordStore, fake_ollama) -> None:
    conversation = _start(store, "first question")
    store.create_message(conversation_id=conversation.id, role="assistant", content="first answer")
    store.create_message(conversation_id=conversation.id, role="user", content="second question")
    fake_ollama.fragments = ["ok"]
    relay = StreamRelay(fake_ollama, store)
    options = ChatOptions(model="mistral", temperature=0.1, max_tokens=32, system_prompt="Be brief.")

    list(relay.open(conversation.id, options))

    _, model, messages, temperature, max_tokens = fake_ollama.calls[0]
    assert model == "mistral"
    assert (temperature, max_tokens) == (0.1, 32)
    assert messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "first answer"},
        {"role": "user", "content": "second question"},
    ]


def test_closing_stream_early_discards_partial_reply(store: RecordStore, fake_ollama) -> None:
    conversation = _start(store)
    fake_ollama.fragments = ["a", "b", "c"]
    stream = StreamRelay(fake_ollama, store).open(conversation.id, ChatOptions(model="llama3"))

    next(stream)
    stream.close()

    assert [message.role for message in store.get_messages(conversation.id)] == ["user"]


def test_resolve_options_uses_stored_settings(store: RecordStore) -> None:
    conversation = store.create_conversation(title="t", model="llama3")

    defaults = resolve_options(store, conversation)
    assert defaults == ChatOptions(
        model="llama3",
        temperature=0.7,
        max_tokens=1024,
        system_prompt="You are a helpful AI assistant.",
    )

    store.set_setting("temperature", {"temperature": 0.25})
    store.set_setting("system_prompt", {"prompt": "  "})
    tuned = resolve_options(store, conversation, model="mistral", max_tokens=128)
    assert tuned == ChatOptions(model="mistral", temperature=0.25, max_tokens=128, system_prompt=None)


@pytest.mark.parametrize(
    "temperature, max_tokens",
    [
        ("warm", "plenty"),
        (5, 0),
        (-0.5, -10),
        (True, None),
        ([0.3], {"n": 10}),
        ("nan", 2.5e400),
    ],
)
def test_resolve_options_ignores_unusable_stored_numbers(store: RecordStore, temperature, max_tokens) -> None:
    conversation = store.create_conversation(title="t", model="llama3")
    store.set_setting("temperature", {"temperature": temperature})
    store.set_setting("max_tokens", {"max_tokens": max_tokens})

    options = resolve_options(store, conversation)

    assert (options.temperature, options.max_tokens) == (0.7, 1024)


def test_resolve_options_accepts_numeric_strings(store: RecordStore) -> None:
    conversation = store.create_conversation(title="t", model="llama3")
    store.set_setting("temperature", {"temperature": "1.5"})
    store.set_setting("max_tokens", {"max_tokens": "64"})

    options = resolve_options(store, conversation)

    assert (options.temperature, options.max_tokens) == (1.5, 64)


def test_build_history_without_system_prompt(store: RecordStore) -> None:
    conversation = _start(store, "hello")
    assert build_history(store.get_messages(conversation.id)) == [{"role": "user", "content": "hello"}]


def test_format_size() -> None:
    assert format_size(None) is None
    assert format_size(0) is None
    assert format_size(4661224676) == "4.3GB"
    assert format_size(2 * 1024 ** 3) == "2GB"


def test_sync_catalog_upserts_and_keeps_stale_models(store: RecordStore, fake_ollama) -> None:
    store.create_or_update_model(name="old-model", size="1GB")
    fake_ollama.models = [{"name": "llama3:8b", "size": 4661224676}, {"name": "old-model", "size": None}]

    models = sync_catalog(fake_ollama, store)

    assert [model.name for model in models] == ["llama3:8b", "old-model"]
    assert models[0].size == "4.3GB"
    assert models[1].size == "1GB"

    fake_ollama.models = []
    assert [model.name for model in sync_catalog(fake_ollama, store)] == ["llama3:8b", "old-model"]
    assert len(store.get_models()) == 2
