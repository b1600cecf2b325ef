import json
import os
from pathlib import Path
from typing import Any, Dict, List


DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

DEFAULT_CONFIG: Dict[str, Any] = {
    "ollama": {
        "base_url": DEFAULT_BASE_URL,
        "request_timeout": 10,
        "stream_connect_timeout": 10,
        "stream_idle_timeout": 60,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 5000,
    },
    "storage": {
        "journal": "",
    },
    "logging": {
        "file": "data/server.log",
        "level": "INFO",
    },
    "debug": False,
}

# Seeded into the record store once; user edits go through PUT /api/settings/{key}.
DEFAULT_RECORD_SETTINGS: List[Dict[str, Any]] = [
    {"key": "ollama_url", "value": {"url": DEFAULT_BASE_URL}},
    {"key": "temperature", "value": {"temperature": DEFAULT_TEMPERATURE}},
    {"key": "max_tokens", "value": {"max_tokens": DEFAULT_MAX_TOKENS}},
    {"key": "system_prompt", "value": {"prompt": DEFAULT_SYSTEM_PROMPT}},
    {"key": "auto_save", "value": {"enabled": True}},
]


class ConfigManager:
    """
    Loads the process configuration file, writing the defaults on first run.

    The file is stored as pretty-printed JSON so operators can edit it by hand.
    `OLLAMA_BASE_URL` in the environment wins over the file for the backend URL.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._config: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def config(self) -> Dict[str, Any]:
        if self._config is None:
            self._config = self._load_from_disk()
        return self._config

    def _load_from_disk(self) -> Dict[str, Any]:
        merged = json.loads(json.dumps(DEFAULT_CONFIG))
        if not self.path.exists():
            self._write(DEFAULT_CONFIG)
        else:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            # Backfill new keys without overwriting manual edits.
            _deep_update(merged, data)
        env_url = os.environ.get("OLLAMA_BASE_URL")
        if env_url:
            merged["ollama"]["base_url"] = env_url
        return merged

    def reload(self) -> Dict[str, Any]:
        self._config = self._load_from_disk()
        return self._config

    def _write(self, data: Dict[str, Any]) -> None:
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def config_path_from_env(default: str = "data/config.json") -> Path:
    return Path(os.environ.get("OLLAMA_WEBUI_CONFIG") or default)


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
