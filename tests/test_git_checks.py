"""Checks and repairs against real git repositories."""

from __future__ import annotations

import shutil
import subprocess

import pytest

from conftest import FakeTmux, register_warband, write_json
from horde import git_ops
from horde.checks_claude import ClaudeSettingsCheck
from horde.checks_cleanup import (
    ClanWorktreesCheck,
    CloneDivergenceCheck,
    PersistentRoleBranchesCheck,
    RelicsSyncOrphansCheck,
)
from horde.checks_housekeeping import RuntimeGitignoreCheck
from horde.checks_rig import SparseCheckoutCheck
from horde.settings import DoctorSettings

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "horde-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "horde-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "horde-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "horde-tests@example.com")


def _git(repo, *args):
    subprocess.run(["git", *args], cwd=str(repo), check=True, capture_output=True)


def _init_repo(path):
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "-q")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    return path


def _commit(repo, files, message="update"):
    for name, content in files.items():
        target = repo / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", message)


# -- file_status --


def test_file_status(tmp_path):
    repo = _init_repo(tmp_path / "repo")
    _commit(repo, {"clean.txt": "a\n", "edited.txt": "a\n", "staged.txt": "a\n"})
    (repo / "edited.txt").write_text("b\n")
    (repo / "staged.txt").write_text("b\n")
    _git(repo, "add", "staged.txt")
    (repo / "new.txt").write_text("new\n")
    loose = tmp_path / "loose"
    loose.mkdir()
    (loose / "file.txt").write_text("x\n")

    assert git_ops.file_status(repo / "clean.txt") == "tracked-clean"
    assert git_ops.file_status(repo / "edited.txt") == "tracked-modified"
    assert git_ops.file_status(repo / "staged.txt") == "tracked-modified"
    assert git_ops.file_status(repo / "new.txt") == "untracked"
    assert git_ops.file_status(loose / "file.txt") == "unknown"


def test_dirty_paths_keep_full_names(tmp_path):
    repo = _init_repo(tmp_path / "repo")
    _commit(repo, {"CLAUDE.md": "context\n", "main.py": "print()\n"})
    (repo / "CLAUDE.md").write_text("edited\n")
    (repo / ".claude").mkdir()
    (repo / ".claude" / "settings.json").write_text("{}\n")

    assert git_ops.dirty_paths(repo, ["CLAUDE.md"]) == ["CLAUDE.md"]
    assert sorted(git_ops.dirty_paths(repo, list(git_ops.SPARSE_EXCLUDED))) == [
        ".claude/settings.json",
        "CLAUDE.md",
    ]


# -- misplaced agent settings --


def test_locally_modified_settings_survive_repair(make_ctx, encampment, notices):
    clone = _init_repo(encampment / "horde" / "witness" / "warband")
    _commit(clone, {".claude/settings.json": '{"hooks": {}}\n'})
    settings = write_json(clone / ".claude" / "settings.json", {"hooks": {}, "mine": True})
    check = ClaudeSettingsCheck(FakeTmux())
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "error"
    assert result["details"] == [
        f"{settings}: wrong location, tracked with local modifications (manual review needed)"
    ]

    check.repair(ctx)
    assert settings.exists()
    assert '"mine": true' in settings.read_text()
    assert notices == [f"Warning: {settings}: has local modifications, skipping"]


def test_clean_tracked_settings_deleted(make_ctx, encampment):
    clone = _init_repo(encampment / "horde" / "witness" / "warband")
    _commit(clone, {".claude/settings.json": "{}\n", "README.md": "hi\n"})
    check = ClaudeSettingsCheck(FakeTmux())
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["details"] == [
        f"{clone / '.claude' / 'settings.json'}: "
        "wrong location, tracked but unmodified (safe to delete)"
    ]
    check.repair(ctx)
    assert not (clone / ".claude").exists()
    assert (clone / "README.md").exists()


# -- runtime gitignore --


def test_runtime_gitignore_appended_to_clean_file(make_ctx, encampment):
    _init_repo(encampment)
    _commit(encampment, {".gitignore": "*.log\n"})
    check = RuntimeGitignoreCheck()
    ctx = make_ctx()

    assert check.detect(ctx)["status"] == "warning"
    check.repair(ctx)
    assert (encampment / ".gitignore").read_text() == "*.log\n.runtime/\n"
    assert check.detect(ctx)["status"] == "ok"


def test_runtime_gitignore_leaves_modified_file_alone(make_ctx, encampment, notices):
    _init_repo(encampment)
    _commit(encampment, {".gitignore": "*.log\n"})
    gitignore = encampment / ".gitignore"
    gitignore.write_text("*.log\n*.tmp\n")
    check = RuntimeGitignoreCheck()
    ctx = make_ctx()

    check.detect(ctx)
    check.repair(ctx)
    assert gitignore.read_text() == "*.log\n*.tmp\n"
    assert notices == [f"Warning: {gitignore}: has local modifications, skipping"]


# -- persistent role branches --


@pytest.fixture()
def clan_clone(encampment):
    clone = _init_repo(encampment / "horde" / "clan" / "joe")
    _commit(clone, {"README.md": "hello\n"}, "initial")
    return clone


def test_persistent_role_switched_back_to_main(make_ctx, clan_clone):
    _git(clan_clone, "checkout", "-q", "-b", "feature")
    check = PersistentRoleBranchesCheck()
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["details"] == ["horde/clan/joe (on feature)"]

    # No remote: the pull after checkout fails quietly.
    check.repair(ctx)
    assert git_ops.current_branch(clan_clone) == "main"
    assert check.detect(ctx)["message"] == "All 1 persistent roles on main branch"


def test_persistent_role_with_local_changes_not_switched(make_ctx, clan_clone):
    _git(clan_clone, "checkout", "-q", "-b", "feature")
    (clan_clone / "scratch.txt").write_text("wip\n")
    check = PersistentRoleBranchesCheck()
    ctx = make_ctx()

    check.detect(ctx)
    with pytest.raises(RuntimeError, match="horde/clan/joe"):
        check.repair(ctx)
    assert git_ops.current_branch(clan_clone) == "feature"


# -- relics-sync orphans --


def test_relics_sync_orphans(make_ctx, clan_clone):
    check = RelicsSyncOrphansCheck()
    assert check.detect(make_ctx())["message"] == "No relics-sync branch (single-clone setup)"

    _git(clan_clone, "checkout", "-q", "-b", "relics-sync")
    _commit(
        clan_clone,
        {
            "cmd/hd.go": "package main\n",
            "notes.txt": "scratch\n",
            ".relics/issues.jsonl": "{}\n",
        },
    )
    _git(clan_clone, "checkout", "-q", "main")

    result = check.detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "1 file(s) on relics-sync not in main"
    assert result["details"] == ["cmd/hd.go"]


# -- clone divergence --


def test_clone_divergence_measured_against_origin(make_ctx, encampment, tmp_path):
    upstream = _init_repo(tmp_path / "upstream")
    _commit(upstream, {"README.md": "v1\n"}, "initial")
    clone = encampment / "horde" / "warchief" / "warband"
    clone.parent.mkdir(parents=True)
    subprocess.run(
        ["git", "clone", "-q", str(upstream), str(clone)], check=True, capture_output=True
    )
    register_warband(encampment, "horde")
    check = CloneDivergenceCheck()
    ctx = make_ctx(settings=DoctorSettings(divergence_warning=2, divergence_error=10))

    assert check.detect(ctx)["message"] == "All 1 clones in sync with origin/main"

    for version in range(2, 5):
        _commit(upstream, {"README.md": f"v{version}\n"})
    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["details"] == ["horde/warchief/warband: 3 commits behind origin/main"]


# -- sparse checkout --


def test_sparse_checkout_hides_agent_context(make_ctx, encampment):
    clone = _init_repo(encampment / "horde" / "clan" / "joe")
    _commit(clone, {"CLAUDE.md": "context\n", "main.py": "print()\n"})
    check = SparseCheckoutCheck()
    ctx = make_ctx(warband="horde")

    result = check.detect(ctx)
    assert result["status"] == "error"
    assert result["details"] == ["clan/joe"]

    check.repair(ctx)
    assert git_ops.sparse_checkout_configured(clone)
    assert not (clone / "CLAUDE.md").exists()
    assert (clone / "main.py").exists()
    assert check.detect(ctx)["message"] == "All 1 repo(s) have sparse checkout configured"


def test_sparse_checkout_refuses_untracked_context(make_ctx, encampment):
    clone = _init_repo(encampment / "horde" / "clan" / "joe")
    _commit(clone, {"main.py": "print()\n"})
    (clone / "CLAUDE.local.md").write_text("notes\n")
    check = SparseCheckoutCheck()
    ctx = make_ctx(warband="horde")

    check.detect(ctx)
    with pytest.raises(RuntimeError, match="CLAUDE.local.md"):
        check.repair(ctx)
    assert not git_ops.sparse_checkout_configured(clone)
    assert (clone / "CLAUDE.local.md").exists()


# -- cross-warband worktrees --


@pytest.fixture()
def clan_worktree(encampment):
    repo = _init_repo(encampment / "horde" / "warchief" / "warband")
    _commit(repo, {"README.md": "hello\n"}, "initial")
    worktree = encampment / "horde" / "clan" / "relics-joe"
    worktree.parent.mkdir(parents=True)
    _git(repo, "worktree", "add", "-q", "-b", "joe-work", str(worktree))
    return worktree


def test_worktree_with_untracked_work_is_kept(make_ctx, clan_worktree):
    (clan_worktree / "work.py").write_text("print('wip')\n")
    check = ClanWorktreesCheck()
    ctx = make_ctx()

    assert check.detect(ctx)["status"] == "warning"
    with pytest.raises(RuntimeError, match="horde/clan/relics-joe: uncommitted changes"):
        check.repair(ctx)
    assert (clan_worktree / "work.py").read_text() == "print('wip')\n"


def test_clean_worktree_removed(make_ctx, clan_worktree):
    check = ClanWorktreesCheck()
    ctx = make_ctx()

    check.detect(ctx)
    check.repair(ctx)
    assert not clan_worktree.exists()
    assert check.detect(ctx)["message"] == "No cross-warband worktrees in clan directories"
