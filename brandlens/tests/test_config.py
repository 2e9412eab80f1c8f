from __future__ import annotations

from pathlib import Path

from brandlens.config import Settings, load_settings, load_yaml


def test_defaults():
    s = Settings()
    assert s.max_retries == 3
    assert s.backoff_base == 2.0
    assert s.visibility_smoothing_threshold == 20
    assert s.citation_smoothing_threshold == 10
    assert s.model_for("gemini") == "google/gemini-2.5-flash"
    assert s.model_for("mistral/large") == "mistral/large"
    assert s.model_for("claude") == "anthropic/claude-3.5-sonnet"
    assert s.model_for("claude", "anthropic") == "claude-sonnet-4-5"
    assert s.model_for("openai", "anthropic") == "openai/gpt-4o"
    assert s.fuzzy_min_length == 7
    assert s.fuzzy_strict_length == 10


def test_yaml_then_env(tmp_path, monkeypatch):
    cfg = tmp_path / "brandlens.yaml"
    cfg.write_text("max_retries: 5\nfuzzy_min_length: 6\nmodels:\n  openai: openai/gpt-4o-mini\n")
    monkeypatch.setenv("BRANDLENS_MAX_RETRIES", "1")
    monkeypatch.setenv("BRANDLENS_FUZZY_THRESHOLD", "0.85")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")

    s = load_settings(cfg)
    assert s.max_retries == 1
    assert s.fuzzy_min_length == 6
    assert s.fuzzy_threshold == 0.85
    assert s.model_for("openai") == "openai/gpt-4o-mini"
    assert s.openrouter_api_key == "sk-test"


def test_database_path_from_env(tmp_path, monkeypatch):
    monkeypatch.delenv("BRANDLENS_CONFIG", raising=False)
    monkeypatch.setenv("BRANDLENS_DATABASE_PATH", str(tmp_path / "x.db"))
    assert load_settings().database_path == tmp_path / "x.db"


def test_load_yaml_tolerates_missing_and_non_mapping(tmp_path):
    assert load_yaml(tmp_path / "absent.yaml") == {}
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n")
    assert load_yaml(Path(listing)) == {}
