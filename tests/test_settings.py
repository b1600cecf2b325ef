import json

from ollama_webui.main import create_app
from ollama_webui.settings import DEFAULT_CONFIG, ConfigManager, config_path_from_env


def test_first_load_writes_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
    path = tmp_path / "nested" / "config.json"

    config = ConfigManager(path).config

    assert config == DEFAULT_CONFIG
    assert json.loads(path.read_text(encoding="utf-8")) == DEFAULT_CONFIG


def test_manual_edits_survive_and_missing_keys_backfill(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("OLLAMA_BASE_URL", raising=False)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"ollama": {"base_url": "http://gpu-box:11434"}, "debug": True}), encoding="utf-8")

    manager = ConfigManager(path)

    assert manager.config["ollama"]["base_url"] == "http://gpu-box:11434"
    assert manager.config["ollama"]["stream_idle_timeout"] == 60
    assert manager.config["debug"] is True

    path.write_text(json.dumps({"ollama": {"stream_idle_timeout": 5}}), encoding="utf-8")
    assert manager.reload()["ollama"]["stream_idle_timeout"] == 5


def test_environment_overrides(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://env-host:11434")
    monkeypatch.setenv("OLLAMA_WEBUI_CONFIG", str(tmp_path / "custom.json"))

    path = config_path_from_env()
    assert path == tmp_path / "custom.json"
    assert ConfigManager(path).config["ollama"]["base_url"] == "http://env-host:11434"


def test_create_app_builds_journaled_store_from_config(tmp_path) -> None:
    journal = tmp_path / "journal.jsonl"
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    config["ollama"]["base_url"] = "http://ollama:11434/"
    config["ollama"]["stream_idle_timeout"] = 15
    config["storage"]["journal"] = str(journal)

    app = create_app(config)

    assert app.state.client.base_url == "http://ollama:11434"
    assert app.state.client.stream_idle_timeout == 15
    app.state.store.create_conversation(title="t", model="m")
    assert journal.exists()
