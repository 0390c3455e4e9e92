"""Tests for embedded asset provisioning."""

from __future__ import annotations

import json

from horde.checks_claude import settings_problems
from horde.templates import (
    command_names,
    commands_dir,
    missing_commands,
    missing_role_prompts,
    provision_commands,
    provision_role_prompts,
    provision_rituals,
    ritual_names,
    ritual_problems,
    rituals_dir,
    settings_template_name,
    write_settings,
    write_warchief_claude_md,
)


def test_settings_templates_are_complete(tmp_path):
    for role in ("warchief", "witness", "clan", "raider"):
        path = write_settings(tmp_path / role, role)
        assert path == tmp_path / role / ".claude" / "settings.json"
        assert settings_problems(path) == []
        assert json.loads(path.read_text())["enabledPlugins"]


def test_settings_template_choice():
    assert settings_template_name("witness") == "settings-autonomous.json"
    assert settings_template_name("clan") == "settings-interactive.json"


def test_provision_commands_keeps_existing_files(tmp_path):
    assert sorted(missing_commands(tmp_path)) == sorted(command_names())
    directory = commands_dir(tmp_path)
    directory.mkdir(parents=True)
    (directory / "rally.md").write_text("custom\n")

    written = provision_commands(tmp_path)

    assert "rally" not in written
    assert (directory / "rally.md").read_text() == "custom\n"
    assert missing_commands(tmp_path) == []
    assert provision_commands(tmp_path) == []


def test_provision_role_prompts(tmp_path):
    assert len(missing_role_prompts(tmp_path, "horde")) == 3
    assert len(provision_role_prompts(tmp_path, "horde")) == 3
    assert missing_role_prompts(tmp_path, "horde") == []


def test_ritual_problems_and_provisioning(tmp_path):
    names = ritual_names()
    assert ritual_problems(tmp_path) == {name: "missing" for name in names}

    provision_rituals(tmp_path)
    assert ritual_problems(tmp_path) == {}

    broken = rituals_dir(tmp_path) / names[0]
    broken.write_text("ritual = [unclosed\n")
    problems = ritual_problems(tmp_path)
    assert list(problems) == [names[0]]
    assert problems[names[0]].startswith("unreadable")

    assert provision_rituals(tmp_path, [names[0], "unknown.ritual.toml"]) == [names[0]]
    assert ritual_problems(tmp_path) == {}


def test_write_warchief_claude_md(tmp_path):
    path = write_warchief_claude_md(tmp_path)
    assert path == tmp_path / "warchief" / "CLAUDE.md"
    assert path.read_text()
