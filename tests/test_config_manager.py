"""Tests for TOML-backed retrieval settings."""

from pathlib import Path

import pytest
import toml

from repograph import config
from repograph.config_manager import (
    RetrievalSettings,
    load_full_config,
    load_retrieval_config,
    save_retrieval_config,
    set_retrieval_value,
)


class TestRetrievalSettings:
    """Tests for RetrievalSettings validation."""

    def test_defaults(self):
        settings = RetrievalSettings()
        assert settings.vector_backend == config.DEFAULT_VECTOR_BACKEND
        assert settings.graph_depth == 2
        assert settings.graph_min_strength == 0.5
        assert settings.xref_min_strength == 0.7

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"vector_backend": "faiss"},
            {"strategy_timeout": 0},
            {"graph_depth": 0},
            {"graph_min_strength": 1.2},
            {"xref_min_strength": -0.1},
            {"default_limit": 0},
            {"max_tokens": -5},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetrievalSettings(**kwargs)

    def test_from_dict_coerces_and_ignores_unknown(self):
        settings = RetrievalSettings.from_dict({"graph_depth": "3", "strategy_timeout": 2, "colour": "red"})
        assert settings.graph_depth == 3
        assert settings.strategy_timeout == 2.0
        assert isinstance(settings.strategy_timeout, float)


class TestConfigFile:
    """Tests for loading and saving config.toml."""

    def test_missing_file_gives_defaults(self, temp_dir: Path):
        assert load_full_config(temp_dir / "absent.toml") == {}
        assert load_retrieval_config(temp_dir / "absent.toml") == RetrievalSettings()

    def test_save_preserves_other_sections(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text(toml.dumps({"ui": {"theme": "dark"}}), encoding="utf-8")
        save_retrieval_config(RetrievalSettings(graph_depth=4), path)
        full = load_full_config(path)
        assert full["ui"] == {"theme": "dark"}
        assert full["retrieval"]["graph_depth"] == 4

    def test_set_value(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        settings = set_retrieval_value("vector_backend", "exact", path)
        assert settings.vector_backend == "exact"
        assert load_retrieval_config(path).vector_backend == "exact"

    def test_set_unknown_key(self, temp_dir: Path):
        with pytest.raises(KeyError):
            set_retrieval_value("colour", "red", temp_dir / "config.toml")

    def test_set_invalid_value_not_saved(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        with pytest.raises(ValueError):
            set_retrieval_value("graph_min_strength", "2", path)
        assert not path.exists()

    def test_default_path_is_isolated(self):
        save_retrieval_config(RetrievalSettings(default_limit=7))
        assert config.CONFIG_FILE.exists()
        assert load_retrieval_config().default_limit == 7
