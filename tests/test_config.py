from __future__ import annotations

from pathlib import Path

import pytest

from ollama_gateway.config import GatewayConfig, load_config, load_gateway_config


def test_missing_file_uses_defaults(tmp_path: Path, clean_env):
    cfg = load_gateway_config(str(tmp_path / "nope.yaml"))
    assert cfg.backend.base_url == "http://localhost:11434"
    assert cfg.backend.timeout is None
    assert cfg.server.history_window == 10


def test_yaml_is_merged_over_defaults(tmp_path: Path, clean_env):
    path = tmp_path / "gateway.yaml"
    path.write_text(
        "backend:\n"
        "  base_url: http://gpu-box:11434/\n"
        "  options:\n"
        "    temperature: 0.2\n"
        "database:\n"
        "  url: sqlite:///tmp/x.db\n",
        encoding="utf-8",
    )
    cfg = load_gateway_config(str(path))
    assert cfg.backend.base_url == "http://gpu-box:11434"
    assert cfg.backend.options == {"temperature": 0.2}
    assert cfg.backend.default_model == "llama3.2"
    assert cfg.database.url == "sqlite:///tmp/x.db"


def test_env_overrides(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OLLAMA_GATEWAY__BACKEND__DEFAULT_MODEL", "mistral")
    monkeypatch.setenv("OLLAMA_GATEWAY__BACKEND__TIMEOUT", "30.5")
    monkeypatch.setenv("OLLAMA_GATEWAY__DATABASE__ECHO", "true")
    cfg = load_gateway_config(str(tmp_path / "missing.yaml"))
    assert cfg.backend.default_model == "mistral"
    assert cfg.backend.timeout == 30.5
    assert cfg.database.echo is True


def test_config_path_from_env(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "env.yaml"
    path.write_text("server:\n  history_window: 4\n", encoding="utf-8")
    monkeypatch.setenv("OLLAMA_GATEWAY_CONFIG", str(path))
    assert load_config()["server"]["history_window"] == 4


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))


def test_from_dict_accepts_partial_sections():
    cfg = GatewayConfig.from_dict({"server": {"cors_origins": ["http://localhost:3000"]}})
    assert cfg.server.cors_origins == ["http://localhost:3000"]
    assert cfg.logging.level == "INFO"
