from __future__ import annotations

import logging
import math
from typing import List, Optional

from .llm import OllamaClient
from .storage import ModelRecord, RecordStore

logger = logging.getLogger("webui.catalog")

GIBIBYTE = 1024 ** 3


def format_size(size: Optional[int]) -> Optional[str]:
    """
    Render a byte count as gigabytes with one decimal, e.g. ``4.7GB``.
    """
    if not size:
        return None
    gigabytes = math.floor(size / GIBIBYTE * 10 + 0.5) / 10
    return f"{gigabytes:g}GB"


def sync_catalog(client: OllamaClient, store: RecordStore) -> List[ModelRecord]:
    """
    Upsert every model Ollama reports into the store and return the merged list.

    Local records the backend no longer lists are left untouched, so a failed or
    partial listing never empties the catalog.
    """
    remote = client.list_models()
    for item in remote:
        store.create_or_update_model(
            name=item["name"],
            display_name=item["name"],
            size=format_size(item.get("size")),
            is_available=True,
        )
    models = store.get_models()
    logger.info("Catalog sync: %d reported by Ollama, %d stored", len(remote), len(models))
    return models
