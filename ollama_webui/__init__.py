# flake8: noqa
"""
Web chat backend and client for locally hosted Ollama models.

Modules:
    settings: Configuration loading and the default setting records.
    storage:  Keyed record store for conversations, messages, models and settings.
    llm:      Ollama HTTP client and incremental NDJSON decoding.
    catalog:  Reconciles the stored model list with the models Ollama reports.
    relay:    Relays one Ollama chat stream to the browser as server-sent events.
    schemas:  Request bodies accepted by the HTTP API.
    errors:   API error types and FastAPI exception handlers.
    main:     FastAPI application wiring everything together.
    session:  Client-side API wrapper and chat turn controller.
"""
