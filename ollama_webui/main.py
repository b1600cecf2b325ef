from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
import uvicorn

from .catalog import sync_catalog
from .errors import APIError, NotFoundError, install_error_handlers
from .llm import OllamaClient
from .relay import SSE_HEADERS, StreamRelay, resolve_options
from .schemas import (
    ChatRequest,
    ConversationCreate,
    ConversationUpdate,
    MessageCreate,
    ModelPull,
    SettingUpdate,
)
from .settings import ConfigManager, config_path_from_env
from .storage import RecordStore


def _configure_logging(log_file: Optional[str], level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("webui")
    if logger.handlers:
        return logger
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file or "stderr")
    return logger


logger = logging.getLogger("webui")


def _load_config() -> Dict[str, Any]:
    return ConfigManager(config_path_from_env()).config


def _build_store(config: Dict[str, Any]) -> RecordStore:
    journal = (config.get("storage") or {}).get("journal")
    return RecordStore(Path(journal) if journal else None)


def _build_client(config: Dict[str, Any]) -> OllamaClient:
    ollama = config["ollama"]
    return OllamaClient(
        ollama["base_url"],
        timeout=ollama.get("request_timeout", 10),
        stream_connect_timeout=ollama.get("stream_connect_timeout", 10),
        stream_idle_timeout=ollama.get("stream_idle_timeout", 60),
    )


def create_app(
    config: Optional[Dict[str, Any]] = None,
    *,
    store: Optional[RecordStore] = None,
    client: Optional[OllamaClient] = None,
) -> FastAPI:
    """
    Wire the record store, the Ollama client and the stream relay into an app.

    Anything not passed in is built from `config` (or the config file).
    """
    if config is None:
        config = _load_config()
    store = store if store is not None else _build_store(config)
    client = client if client is not None else _build_client(config)
    relay = StreamRelay(client, store)

    app = FastAPI(title="Ollama WebUI")
    app.state.store = store
    app.state.client = client
    install_error_handlers(app, debug=bool(config.get("debug")))

    def _require_conversation(conversation_id: str):
        conversation = store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    @app.get("/api/health")
    def health() -> Dict[str, bool]:
        return {"ollama": client.check_health()}

    # Conversations

    @app.get("/api/conversations")
    def list_conversations() -> List[Dict[str, Any]]:
        return [item.to_dict() for item in store.get_conversations()]

    @app.post("/api/conversations", status_code=status.HTTP_201_CREATED)
    def create_conversation(payload: ConversationCreate) -> Dict[str, Any]:
        conversation = store.create_conversation(title=payload.title, model=payload.model)
        logger.info("Created conversation %s (%s)", conversation.id, conversation.model)
        return conversation.to_dict()

    @app.patch("/api/conversations/{conversation_id}")
    def update_conversation(conversation_id: str, payload: ConversationUpdate) -> Dict[str, Any]:
        conversation = store.update_conversation(
            conversation_id, title=payload.title, model=payload.model
        )
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation.to_dict()

    @app.delete("/api/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_conversation(conversation_id: str) -> Response:
        if not store.delete_conversation(conversation_id):
            raise NotFoundError("Conversation not found")
        logger.info("Deleted conversation %s", conversation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Messages

    @app.get("/api/conversations/{conversation_id}/messages")
    def list_messages(conversation_id: str) -> List[Dict[str, Any]]:
        _require_conversation(conversation_id)
        return [item.to_dict() for item in store.get_messages(conversation_id)]

    @app.post(
        "/api/conversations/{conversation_id}/messages",
        status_code=status.HTTP_201_CREATED,
    )
    def create_message(conversation_id: str, payload: MessageCreate) -> Dict[str, Any]:
        _require_conversation(conversation_id)
        message = store.create_message(
            conversation_id=conversation_id,
            role=payload.role,
            content=payload.content,
        )
        return message.to_dict()

    @app.post("/api/conversations/{conversation_id}/chat")
    def chat(conversation_id: str, payload: ChatRequest) -> StreamingResponse:
        conversation = _require_conversation(conversation_id)
        options = resolve_options(
            store,
            conversation,
            model=payload.model,
            temperature=payload.temperature,
            max_tokens=payload.max_tokens,
        )
        return StreamingResponse(
            relay.open(conversation_id, options),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # Models

    @app.get("/api/models")
    def list_models() -> List[Dict[str, Any]]:
        return [item.to_dict() for item in sync_catalog(client, store)]

    @app.post("/api/models/pull")
    def pull_model(payload: ModelPull) -> Dict[str, bool]:
        if not client.pull_model(payload.name):
            raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to pull model")
        store.create_or_update_model(name=payload.name, display_name=payload.name, is_available=True)
        logger.info("Pull of %s accepted by Ollama", payload.name)
        return {"success": True}

    @app.delete("/api/models/{name:path}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_model(name: str) -> Response:
        if not client.delete_model(name):
            raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to delete model")
        store.delete_model(name)
        logger.info("Deleted model %s", name)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Settings

    @app.get("/api/settings")
    def list_settings() -> List[Dict[str, Any]]:
        return [item.to_dict() for item in store.get_settings()]

    @app.put("/api/settings/{key}")
    def update_setting(key: str, payload: SettingUpdate) -> JSONResponse:
        setting = store.set_setting(key, payload.value)
        logger.info("Setting %s updated", key)
        return JSONResponse(setting.to_dict())

    return app


def run() -> None:
    config = _load_config()
    logging_config = config.get("logging") or {}
    _configure_logging(logging_config.get("file"), logging_config.get("level", "INFO"))
    server = config.get("server") or {}
    logger.info("Using Ollama at %s", config["ollama"]["base_url"])
    uvicorn.run(
        create_app(config),
        host=server.get("host", "127.0.0.1"),
        port=int(server.get("port", 5000)),
        log_level="info",
    )


if __name__ == "__main__":
    run()
