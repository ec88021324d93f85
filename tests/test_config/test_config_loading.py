from pathlib import Path

import pocketcoder.config as config_module
from pocketcoder.config import Config
from pocketcoder.logging import configure_logging, get_logger, set_log_sink


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("agent:\n  max_tool_rounds: 5\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "agent:\n"
            "  max_tool_rounds: 12\n"
            "  temperature: 0.2\n"
            "tools:\n"
            "  command_timeout: 30\n"
            "  excluded_dirs:\n"
            "    - dist\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.agent.max_tool_rounds == 12
    assert cfg.agent.temperature == 0.2
    assert cfg.tools.command_timeout == 30
    assert cfg.tools.excluded_dirs == ["dist"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "failover:\n"
            "  rules:\n"
            "    - registry_id: kimi-coding\n"
            "      error_marker: access_terminated_error\n"
            "      preferred_registries: [openrouter]\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert len(cfg.failover.rules) == 1
    assert cfg.failover.rules[0].preferred_registries == ["openrouter"]
    assert cfg.failover.rules[0].label == ""


def test_defaults_when_no_config_file_exists(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_tool_rounds == 25
    assert cfg.agent.show_progress_markers is True
    assert cfg.tools.command_timeout == 120
    assert "node_modules" in cfg.tools.excluded_dirs
    assert cfg.failover.enabled is True
    assert cfg.failover.rules[0].registry_id == "kimi-coding"


def test_environment_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("POCKETCODER_AGENT__MAX_TOOL_ROUNDS", "7")

    cfg = Config.load()

    assert cfg.agent.max_tool_rounds == 7


def test_save_round_trips_through_yaml(tmp_path: Path):
    path = tmp_path / "nested" / "config.yaml"
    cfg = Config()
    cfg.agent.custom_instructions = "Prefer pytest."

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.agent.custom_instructions == "Prefer pytest."
    assert loaded.tools.max_search_results == cfg.tools.max_search_results


def test_log_sink_receives_rendered_lines():
    lines: list[str] = []
    set_log_sink(lines.append)
    try:
        configure_logging()
        get_logger("pocketcoder.test").warning("sink check", detail="x")
    finally:
        set_log_sink(None)
        configure_logging()

    assert any("sink check" in line for line in lines)


def test_secret_fields_are_redacted_in_log_output():
    cfg = Config()
    cfg.logging.format = "json"
    lines: list[str] = []
    set_log_sink(lines.append)
    try:
        configure_logging(cfg)
        get_logger("pocketcoder.test").warning(
            "token stored", access_token="eyJ.secret", config_id="cfg-1"
        )
    finally:
        set_log_sink(None)
        configure_logging()

    rendered = [line for line in lines if "token stored" in line]
    assert rendered
    assert "eyJ.secret" not in rendered[0]
    assert '"access_token": "***"' in rendered[0]
    assert '"config_id": "cfg-1"' in rendered[0]
