from pathlib import Path

import synergy_core.config as config_module
from synergy_core.config import Config, get_config, set_config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "synergy.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: ollama\n"
            "  model: qwen3:8b\n"
            "orchestration:\n"
            "  iteration_limit: 7\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:8b"
    assert cfg.orchestration.iteration_limit == 7


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "session:\n"
            "  always_on: [browser, notes]\n"
            "  pinned: [jira]\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.session.always_on == ["browser", "notes"]
    assert cfg.session.pinned == ["jira"]


def test_defaults_match_documented_limits(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = Config()

    assert cfg.orchestration.iteration_limit == 20
    assert cfg.normalizer.compress_threshold == 50000
    assert cfg.normalizer.truncate_budget == 20000
    assert cfg.session.always_on == ["browser"]
    assert cfg.session.max_tools == 20
    assert cfg.catalog.substitute_agents is True
    assert cfg.orchestration.isolate_provider_instances is False


def test_env_vars_combine_with_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    (tmp_path / "synergy.yaml").write_text("orchestration:\n  iteration_limit: 7\n", encoding="utf-8")
    monkeypatch.setenv("SYNERGY_NORMALIZER__AUX_MODEL", "tiny-model")

    cfg = Config.load()

    assert cfg.normalizer.aux_model == "tiny-model"
    assert cfg.orchestration.iteration_limit == 7


def test_dotenv_values_are_applied(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    (tmp_path / ".env").write_text("SYNERGY_MODEL__BASE_URL=http://ollama.local:11434\n", encoding="utf-8")

    cfg = Config.load()

    assert cfg.model.base_url == "http://ollama.local:11434"


def test_context_rules_load_from_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "synergy.yaml").write_text(
        (
            "context:\n"
            "  cache_ttl_seconds: 5\n"
            "  rules:\n"
            "    - provider_id: wiki\n"
            "      patterns: ['*://wiki.local/*']\n"
            "      priority: 20\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.context.cache_ttl_seconds == 5
    assert cfg.context.rules[0].provider_id == "wiki"
    assert cfg.context.rules[0].patterns == ["*://wiki.local/*"]


def test_save_round_trip(tmp_path: Path):
    cfg = Config()
    cfg.session.pinned = ["jira"]
    target = tmp_path / "nested" / "config.yaml"

    cfg.save(target)
    loaded = Config.from_yaml(target)

    assert loaded.session.pinned == ["jira"]


def test_resolved_store_path_expands_relative_paths(tmp_path: Path):
    cfg = Config()
    cfg.storage.path = str(tmp_path / "store" / ".." / "providers.db")
    assert cfg.resolved_store_path() == (tmp_path / "providers.db").resolve()


def test_set_config_replaces_global_instance():
    original = get_config()
    custom = original.model_copy(deep=True)
    custom.orchestration.iteration_limit = 3
    try:
        set_config(custom)
        assert get_config().orchestration.iteration_limit == 3
    finally:
        set_config(original)
