"""Tests for configuration loading, precedence and the .context/ layout."""

import json
import os
import pytest
from unittest.mock import patch

_ENV_KEYS = (
    "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY",
    "OLLAMA_HOST", "CTXD_INFERENCE_PROVIDER", "CTXD_INFERENCE_MODEL",
    "CTXD_ADR_THRESHOLD", "CTXD_TOKEN_BUDGET", "CTXD_SERVER_PORT", "CTXD_AUTHOR",
    "CTXD_PROJECT_ROOT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def user_config(tmp_path):
    path = tmp_path / "home" / "config.json"
    path.parent.mkdir()
    return path


class TestDefaults:
    def test_linker_defaults(self):
        from ctxd.common.config import LinkerConfig
        cfg = LinkerConfig()
        assert (cfg.time_weight, cfg.file_weight, cfg.message_weight) == (0.3, 0.5, 0.2)
        assert cfg.accept_threshold == 0.7

    def test_adr_and_index_defaults(self):
        from ctxd.common.config import CtxdConfig
        cfg = CtxdConfig()
        assert cfg.adr.threshold == 0.8
        assert cfg.adr.dedup_threshold == 0.6
        assert cfg.index.token_budget == 4000
        assert cfg.inference.provider == "rule"
        assert cfg.retention.hot_days == 90

    def test_load_without_files_uses_defaults(self, tmp_path, user_config):
        from ctxd.common.config import load_config
        with patch("ctxd.common.config.CONFIG_PATH", user_config):
            cfg = load_config(tmp_path)
        assert cfg.project_root == str(tmp_path.resolve())
        assert cfg.linker.accept_threshold == 0.7
        assert cfg.author


class TestLoadConfig:
    def test_project_config_overrides_user_config(self, tmp_path, user_config):
        from ctxd.common.config import load_config
        user_config.write_text(json.dumps({"adr": {"threshold": 0.9, "dedup_threshold": 0.7}}))
        project_cfg = tmp_path / ".context" / "daemon.json"
        project_cfg.parent.mkdir()
        project_cfg.write_text(json.dumps({"adr": {"dedup_threshold": 0.5}}))

        with patch("ctxd.common.config.CONFIG_PATH", user_config):
            cfg = load_config(tmp_path)

        assert cfg.adr.threshold == 0.9
        assert cfg.adr.dedup_threshold == 0.5

    def test_linker_weights_section(self, tmp_path, user_config):
        from ctxd.common.config import load_config
        user_config.write_text(json.dumps({
            "linker": {
                "weights": {"time_proximity": 0.2, "file_overlap": 0.6, "message_similarity": 0.2},
                "accept_threshold": 0.65,
            },
        }))
        with patch("ctxd.common.config.CONFIG_PATH", user_config):
            cfg = load_config(tmp_path)

        assert cfg.linker.file_weight == 0.6
        assert cfg.linker.accept_threshold == 0.65

    def test_legacy_lock_section_is_read_as_index(self, tmp_path, user_config):
        from ctxd.common.config import load_config
        user_config.write_text(json.dumps({"lock": {"token_budget": 2000}}))
        with patch("ctxd.common.config.CONFIG_PATH", user_config):
            cfg = load_config(tmp_path)
        assert cfg.index.token_budget == 2000

    def test_malformed_file_falls_back_to_defaults(self, tmp_path, user_config, capsys):
        from ctxd.common.config import load_config
        user_config.write_text("{not json")
        with patch("ctxd.common.config.CONFIG_PATH", user_config):
            cfg = load_config(tmp_path)
        assert cfg.index.token_budget == 4000
        assert "Failed to load config file" in capsys.readouterr().out

    def test_env_overrides(self, tmp_path, user_config):
        from ctxd.common.config import load_config
        user_config.write_text(json.dumps({"index": {"token_budget": 3000}}))
        env = {
            "CTXD_TOKEN_BUDGET": "1200",
            "CTXD_INFERENCE_PROVIDER": "openai",
            "OPENAI_API_KEY": "sk-env",
            "CTXD_AUTHOR": "bob",
        }
        with patch("ctxd.common.config.CONFIG_PATH", user_config), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config(tmp_path)

        assert cfg.index.token_budget == 1200
        assert cfg.inference.provider == "openai"
        assert cfg.inference.openai_api_key == "sk-env"
        assert cfg.author == "bob"

    def test_save_config_omits_env_keys(self, tmp_path, user_config):
        from ctxd.common.config import load_config, save_config
        user_config.write_text(json.dumps({"inference": {"openai_api_key": "sk-file"}}))
        env = {"ANTHROPIC_API_KEY": "sk-from-env"}
        with patch("ctxd.common.config.CONFIG_PATH", user_config), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config(tmp_path)
            target = save_config(cfg)

        saved = json.loads(target.read_text())
        assert target == tmp_path.resolve() / ".context" / "daemon.json"
        assert saved["inference"]["anthropic_api_key"] == ""
        assert saved["inference"]["openai_api_key"] == "sk-file"
        assert saved["linker"]["weights"]["file_overlap"] == 0.5


class TestContextPaths:
    def test_layout(self, tmp_path):
        from ctxd.common.config import ContextPaths
        paths = ContextPaths.for_project(tmp_path)
        assert paths.context_dir == tmp_path.resolve() / ".context"
        assert paths.lock_path.name == "context.lock"
        assert paths.decisions_dir.parent == paths.context_dir
        assert paths.warm_dir.parts[-2:] == ("archive", "warm")

    def test_ensure_directories(self, tmp_path):
        from ctxd.common.config import ContextPaths, ensure_directories
        paths = ContextPaths.for_project(tmp_path)
        ensure_directories(paths)
        for directory in (paths.intents_dir, paths.events_dir, paths.decisions_dir, paths.cold_dir):
            assert directory.is_dir()
