from pathlib import Path

import aido.config as config_module
from aido.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / ".aido.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: openai\n"
            "  model: gpt-4o-mini\n"
            "engine:\n"
            "  max_turns: 4\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.provider == "openai"
    assert cfg.engine.max_turns == 4
    assert cfg.source_path.resolve() == local_cfg.resolve()


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.model.provider == "ollama"
    assert cfg.model.model == "llama3.2"


def test_missing_file_yields_defaults(tmp_path: Path):
    cfg = Config.from_yaml(tmp_path / "nope.yaml")

    assert cfg.tools.enabled == ["ls", "cat", "grep", "run"]
    assert cfg.tools.require_confirmation == ["run"]
    assert cfg.engine.continuation_tools == "inherit"
    assert cfg.recipes.strict_tools is True


def test_env_var_overrides_nested_setting(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AIDO_MODEL__API_KEY", "secure-env-key")

    cfg = Config.load()

    assert cfg.model.api_key == "secure-env-key"


def test_env_var_wins_over_yaml_and_keeps_sibling_keys(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "model:\n  model: llama3.2\n  api_key: yaml-key\nengine:\n  max_turns: 4\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("AIDO_MODEL__API_KEY", "env-key")
    monkeypatch.setenv("AIDO_ENGINE__MAX_TURNS", "7")

    cfg = Config.load(config_file)

    assert cfg.model.api_key == "env-key"
    assert cfg.model.model == "llama3.2"
    assert cfg.engine.max_turns == 7


def test_recipes_dir_sits_beside_config_file(tmp_path: Path):
    cfg_path = tmp_path / "conf" / "config.yaml"
    cfg_path.parent.mkdir()
    cfg_path.write_text("recipes:\n  strict_tools: false\n", encoding="utf-8")

    cfg = Config.from_yaml(cfg_path)

    assert cfg.recipes_dir() == tmp_path / "conf" / "recipes"
    assert cfg.recipes.strict_tools is False


def test_relative_recipes_path_resolves_against_config_file(tmp_path: Path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("recipes:\n  path: my-recipes\n", encoding="utf-8")

    cfg = Config.from_yaml(cfg_path)

    assert cfg.recipes_dir() == (tmp_path / "my-recipes").resolve()


def test_custom_tools_parse_from_yaml(tmp_path: Path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        (
            "tools:\n"
            "  custom:\n"
            "    - name: git_log\n"
            "      description: Show recent commits\n"
            "      command: [git, log, --oneline, '-n', '{count}']\n"
            "      args:\n"
            "        - name: count\n"
            "          type: integer\n"
            "          required: true\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.from_yaml(cfg_path)

    [tool] = cfg.tools.custom
    assert tool.name == "git_log"
    assert tool.command == ["git", "log", "--oneline", "-n", "{count}"]
    assert tool.args[0].type == "integer"
    assert tool.args[0].required is True


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.model.model = "llama3.2"
    cfg.engine.max_turns = 7
    target = tmp_path / "saved" / "config.yaml"

    cfg.save(target)
    loaded = Config.from_yaml(target)

    assert loaded.model.model == "llama3.2"
    assert loaded.engine.max_turns == 7
