"""Tests for the Core workspace checks."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import register_warband, write_json
from horde.checks_workspace import (
    EncampmentConfigExistsCheck,
    EncampmentConfigValidCheck,
    EncampmentGitCheck,
    EncampmentRootBranchCheck,
    GlobalStateCheck,
    WarbandsRegistryExistsCheck,
    WarbandsRegistryValidCheck,
    WarchiefExistsCheck,
    workspace_checks,
)


def _mock_subprocess_completed(
    returncode: int = 0, stdout: str = "", stderr: str = ""
) -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


def test_fresh_encampment_core_checks_pass(make_ctx):
    ctx = make_ctx()
    for check in workspace_checks():
        assert check.detect(ctx)["status"] == "ok", check.name


def test_encampment_config_missing(make_ctx, encampment):
    (encampment / "warchief" / "encampment.json").unlink()
    result = EncampmentConfigExistsCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "warchief/encampment.json not found"

    warchief = WarchiefExistsCheck().detect(make_ctx())
    assert warchief["status"] == "warning"
    assert warchief["details"] == ["encampment.json"]


def test_encampment_config_invalid_json(make_ctx, encampment):
    (encampment / "warchief" / "encampment.json").write_text("{")
    result = EncampmentConfigValidCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "warchief/encampment.json is not valid JSON"


def test_encampment_config_invalid_fields(make_ctx, encampment):
    write_json(encampment / "warchief" / "encampment.json", {"type": "encampment", "name": "t"})
    result = EncampmentConfigValidCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["details"] == ["version field is missing or zero"]


def test_warbands_registry_created_by_repair(make_ctx, encampment):
    path = encampment / "warchief" / "warbands.json"
    path.unlink()
    check = WarbandsRegistryExistsCheck()
    ctx = make_ctx()
    assert check.detect(ctx)["status"] == "warning"
    check.repair(ctx)
    assert json.loads(path.read_text()) == {"version": 1, "warbands": {}}
    assert check.detect(ctx)["status"] == "ok"

    before = path.read_text()
    check.repair(ctx)
    assert path.read_text() == before


def test_warbands_registry_valid_prunes_missing_warbands(make_ctx, encampment):
    (encampment / "horde").mkdir()
    register_warband(encampment, "horde", prefix="hd")
    register_warband(encampment, "gone", prefix="go")
    check = WarbandsRegistryValidCheck()
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["message"] == "1 of 2 registered warband(s) missing"
    assert result["details"] == ["Missing warband directory: gone/"]

    check.repair(ctx)
    document = json.loads((encampment / "warchief" / "warbands.json").read_text())
    assert list(document["warbands"]) == ["horde"]
    assert check.detect(ctx)["message"] == "All 1 registered warband(s) exist"


def test_warbands_registry_schema_violation(make_ctx, encampment):
    write_json(encampment / "warchief" / "warbands.json", {"warbands": []})
    result = WarbandsRegistryValidCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "warchief/warbands.json does not match the registry schema"


def test_global_state_not_initialized(make_ctx):
    result = GlobalStateCheck().detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Global state not initialized"


def test_global_state_healthy(make_ctx, healthy_global_state):
    result = GlobalStateCheck().detect(make_ctx())
    assert result["status"] == "ok"
    assert "Horde: enabled" in result["details"]


def test_global_state_missing_hook_script(make_ctx, healthy_global_state):
    (healthy_global_state / ".config" / "horde" / "shell-hook.sh").unlink()
    result = GlobalStateCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "Hook script missing but shell integration installed"


def test_global_state_zsh_without_integration(make_ctx, healthy_global_state, monkeypatch):
    monkeypatch.setenv("SHELL", "/usr/bin/zsh")
    result = GlobalStateCheck().detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Shell integration not installed"


def test_global_state_disabled(make_ctx, healthy_global_state):
    write_json(healthy_global_state / ".local" / "state" / "horde" / "state.json", {})
    result = GlobalStateCheck().detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Horde is disabled globally"
    assert result["fix_hint"] == "Run: hd enable"


def test_encampment_git_file_instead_of_directory(make_ctx, encampment):
    assert EncampmentGitCheck().detect(make_ctx())["status"] == "ok"
    (encampment / ".git").write_text("gitdir: elsewhere\n")
    assert EncampmentGitCheck().detect(make_ctx())["status"] == "warning"


def test_root_branch_skipped_outside_git(make_ctx):
    with patch("subprocess.run", return_value=_mock_subprocess_completed(128, stderr="fatal")):
        result = EncampmentRootBranchCheck().detect(make_ctx())
    assert result == {
        "name": "encampment-root-branch",
        "category": "Core",
        "status": "ok",
        "message": "Encampment root is not a git repository (skipped)",
    }


def test_root_branch_wrong_branch_is_error(make_ctx):
    with patch("subprocess.run", return_value=_mock_subprocess_completed(stdout="feature\n")):
        result = EncampmentRootBranchCheck().detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "Encampment root is on wrong branch: feature"


def test_root_branch_detached_head_is_warning(make_ctx):
    with patch("subprocess.run", return_value=_mock_subprocess_completed(stdout="\n")):
        result = EncampmentRootBranchCheck().detect(make_ctx())
    assert result["status"] == "warning"


def test_root_branch_repair_refuses_dirty_tree(make_ctx, encampment):
    check = EncampmentRootBranchCheck()
    ctx = make_ctx()
    responses = [
        _mock_subprocess_completed(stdout="feature\n"),
        _mock_subprocess_completed(stdout=" M warchief/warbands.json\n"),
    ]
    with patch("subprocess.run", side_effect=responses) as run:
        check.detect(ctx)
        with pytest.raises(RuntimeError, match="uncommitted changes"):
            check.repair(ctx)
    commands = [call.args[0] for call in run.call_args_list]
    assert ["git", "-C", str(encampment), "status", "--porcelain"] in commands
    assert not any("checkout" in command for command in commands)


def test_root_branch_repair_falls_back_to_master(make_ctx, encampment):
    check = EncampmentRootBranchCheck()
    ctx = make_ctx()
    responses = [
        _mock_subprocess_completed(stdout="feature\n"),
        _mock_subprocess_completed(stdout=""),
        _mock_subprocess_completed(1, stderr="error: pathspec 'main' did not match"),
        _mock_subprocess_completed(),
    ]
    with patch("subprocess.run", side_effect=responses) as run:
        check.detect(ctx)
        check.repair(ctx)
    assert run.call_args_list[-1].args[0] == ["git", "-C", str(encampment), "checkout", "master"]
