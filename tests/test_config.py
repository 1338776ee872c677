"""
Tests for mnemos.config — defaults, JSON loading, validation.
"""

import json

import pytest

from mnemos.config import (
    DAY_MS,
    MINUTE_MS,
    EngineConfig,
    ReconsolidationConfig,
    RetrievalConfig,
    load_config,
)
from mnemos.errors import ConfigError


class TestDefaults:
    def test_reconsolidation_defaults(self):
        cfg = ReconsolidationConfig()
        assert cfg.lability_window_duration_ms == 5 * MINUTE_MS
        assert cfg.allow_weakening is True
        assert cfg.deletion_threshold == 0.1
        assert cfg.qualifying_triggers == ["explicit_recall", "search"]

    def test_retrieval_defaults(self):
        cfg = RetrievalConfig()
        assert cfg.recency_half_life_ms == 7 * DAY_MS
        assert set(cfg.importance_weights) == {"critical", "high", "normal", "low"}

    def test_defaults_valid(self):
        assert EngineConfig().validate() == []

    def test_sections_independent(self):
        a, b = EngineConfig(), EngineConfig()
        a.reconsolidation.qualifying_triggers.append("random")
        assert "random" not in b.reconsolidation.qualifying_triggers


class TestLoadConfig:
    def test_none_gives_defaults(self):
        assert load_config(None) == EngineConfig()

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "nope.json")) == EngineConfig()

    def test_invalid_json_gives_defaults(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(str(p)) == EngineConfig()

    def test_partial_file(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({
            "reconsolidation": {"allow_weakening": False},
            "view": {"page_size": 10},
            "agent_version": "1.2",
        }), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.reconsolidation.allow_weakening is False
        assert cfg.reconsolidation.deletion_threshold == 0.1
        assert cfg.view.page_size == 10
        assert cfg.agent_version == "1.2"

    def test_unknown_key_gives_defaults(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({"retrieval": {"magic": 1}}), encoding="utf-8")
        assert load_config(str(p)) == EngineConfig()

    def test_strict_rejects_out_of_range(self, tmp_path):
        p = tmp_path / "config.json"
        p.write_text(json.dumps({
            "reconsolidation": {"deletion_threshold": 1.5, "qualifying_triggers": ["dream"]},
        }), encoding="utf-8")
        assert load_config(str(p)).reconsolidation.deletion_threshold == 1.5
        with pytest.raises(ConfigError) as exc:
            load_config(str(p), strict=True)
        assert "deletion_threshold" in str(exc.value)
        assert "dream" in str(exc.value)


class TestValidate:
    def test_missing_importance_weight(self):
        cfg = RetrievalConfig(importance_weights={"critical": 1.0})
        errors = cfg.validate()
        assert any("missing" in e for e in errors)

    def test_wrong_type(self):
        cfg = ReconsolidationConfig(lability_window_duration_ms="soon")
        assert any("expected int" in e for e in cfg.validate())
