"""Tests for configuration loading and saving."""

import json
import os
import stat
import pytest
from unittest.mock import patch


class TestDefaults:
    def test_section_defaults(self):
        from ctxsynth.common.config import CtxSynthConfig

        cfg = CtxSynthConfig()

        assert cfg.storage.hot_ttl_hours == 36.0
        assert cfg.budget.token_cap == 15000
        assert cfg.budget.strike_count == 3
        assert cfg.budget.high_threshold == 0.5
        assert cfg.budget.medium_threshold == 0.3
        assert cfg.boot.lookback_days == 7
        assert cfg.boot.max_results == 10
        assert cfg.boot.context_truncate == 400
        assert cfg.boot.stream_truncate == 1200
        assert cfg.boot.active_context_score == 0.9
        assert cfg.rerank.model == "rerank-english-v3.0"


class TestLoadConfig:
    def test_load_from_file(self, tmp_path):
        from ctxsynth.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "storage": {"hot_db_path": "/tmp/hot.db", "hot_ttl_hours": 12},
            "budget": {"token_cap": 9000},
            "boot": {"lookback_days": 3},
        }))

        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.load_dotenv"):
            cfg = load_config()

        assert cfg.storage.hot_db_path == "/tmp/hot.db"
        assert cfg.storage.hot_ttl_hours == 12
        assert cfg.budget.token_cap == 9000
        assert cfg.budget.strike_count == 3
        assert cfg.boot.lookback_days == 3

    def test_invalid_json_keeps_defaults(self, tmp_path):
        from ctxsynth.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text("{broken")

        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.load_dotenv"):
            cfg = load_config()

        assert cfg.budget.token_cap == 15000

    def test_env_overrides_file(self, tmp_path):
        from ctxsynth.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"budget": {"token_cap": 9000}}))

        env = {
            "CTXSYNTH_TOKEN_CAP": "20000",
            "CTXSYNTH_HOT_DB": str(tmp_path / "env-hot.db"),
            "VECTOR_SEARCH_ENDPOINT": "http://vectors.local",
            "COHERE_API_KEY": "co-env",
        }
        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.load_dotenv"), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()

        assert cfg.budget.token_cap == 20000
        assert cfg.storage.hot_db_path == str(tmp_path / "env-hot.db")
        assert cfg.vector.endpoint == "http://vectors.local"
        assert cfg.rerank.api_key == "co-env"
        assert "rerank.api_key" in cfg._env_sourced_keys

    def test_dotenv_is_loaded(self, tmp_path):
        from ctxsynth.common.config import load_config

        with patch("ctxsynth.common.config.CONFIG_PATH", tmp_path / "none.json"), \
             patch("ctxsynth.common.config.load_dotenv") as mock_dotenv:
            load_config()

        mock_dotenv.assert_called_once()


class TestSaveConfig:
    def test_save_omits_env_secrets(self, tmp_path):
        from ctxsynth.common.config import load_config, save_config

        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {"COHERE_API_KEY": "co-from-env"}
        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.CONFIG_DIR", tmp_path), \
             patch("ctxsynth.common.config.load_dotenv"), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["rerank"]["api_key"] == ""

    def test_save_keeps_file_secrets_and_restricts_mode(self, tmp_path):
        from ctxsynth.common.config import CtxSynthConfig, save_config

        config_file = tmp_path / "config.json"
        cfg = CtxSynthConfig()
        cfg.vector.api_key = "vk-file"

        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.CONFIG_DIR", tmp_path):
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["vector"]["api_key"] == "vk-file"
        assert stat.S_IMODE(config_file.stat().st_mode) == 0o600

    def test_round_trip(self, tmp_path):
        from ctxsynth.common.config import CtxSynthConfig, load_config, save_config

        config_file = tmp_path / "config.json"
        cfg = CtxSynthConfig()
        cfg.boot.max_results = 25
        cfg.storage.durable_db_path = ""

        with patch("ctxsynth.common.config.CONFIG_PATH", config_file), \
             patch("ctxsynth.common.config.CONFIG_DIR", tmp_path), \
             patch("ctxsynth.common.config.load_dotenv"):
            save_config(cfg)
            loaded = load_config()

        assert loaded.boot.max_results == 25
        assert loaded.storage.durable_db_path == ""


class TestEnsureDirectories:
    def test_creates_config_and_data_dirs(self, tmp_path):
        from ctxsynth.common.config import ensure_directories

        config_dir = tmp_path / ".ctxsynth"
        with patch("ctxsynth.common.config.CONFIG_DIR", config_dir), \
             patch("ctxsynth.common.config.DATA_DIR", config_dir / "data"):
            ensure_directories()
            ensure_directories()

        assert (config_dir / "data").is_dir()
