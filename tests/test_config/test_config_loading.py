from pathlib import Path

import hobbes.config as config_module
from hobbes.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  chat_model: gemini-1.5-pro\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  chat_model: gemini-2.5-flash\n"
            "tool_servers:\n"
            "  - name: filesystem\n"
            "    command: npx\n"
            "    args: ['-y', '@modelcontextprotocol/server-filesystem']\n"
            "permissions:\n"
            "  auto_approval_enabled: true\n"
            "  granular_permissions:\n"
            "    read_only: true\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.chat_model == "gemini-2.5-flash"
    assert cfg.tool_servers[0].name == "filesystem"
    assert cfg.tool_servers[0].args[-1] == "@modelcontextprotocol/server-filesystem"
    assert cfg.permissions.auto_approval_enabled is True
    assert cfg.permissions.granular_permissions == {"read_only": True}


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("turn:\n  max_followup_depth: 7\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.turn.max_followup_depth == 7


def test_defaults_without_any_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.model.provider == "gemini"
    assert cfg.prompt.history_window == 4
    assert cfg.turn.max_followup_depth == 4
    assert cfg.turn.malformed_retry_limit == 2
    assert cfg.permissions.max_requests == 10
    assert cfg.permissions.max_cost == 0.5
    assert cfg.tool_servers == []


def test_env_vars_fill_nested_settings(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("HOBBES_MODEL__API_KEY", "secret-from-env")
    monkeypatch.setenv("HOBBES_TURN__MAX_FOLLOWUP_DEPTH", "2")

    cfg = Config.load()

    assert cfg.model.api_key == "secret-from-env"
    assert cfg.turn.max_followup_depth == 2


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.prompt.persona = "You are a test assistant."
    cfg.summary.enabled = False
    target = tmp_path / "nested" / "config.yaml"

    cfg.save(target)
    loaded = Config.from_yaml(target)

    assert loaded.prompt.persona == "You are a test assistant."
    assert loaded.summary.enabled is False
