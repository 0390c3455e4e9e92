"""Tests for the session environment, orphan session and stray process checks."""

from __future__ import annotations

import pytest

from conftest import FakeTmux, no_processes, register_warband
from horde.checks_sessions import (
    EnvVarsCheck,
    OrphanProcessCheck,
    OrphanSessionCheck,
    Process,
    is_valid_session,
    parse_ps_output,
    processes_outside_tmux,
)
from horde.doctor import run


@pytest.fixture()
def two_warbands(encampment):
    (encampment / "horde" / "clan").mkdir(parents=True)
    (encampment / "relics" / "raiders").mkdir(parents=True)
    return encampment


# -- orphan-sessions --


def test_orphan_sessions_detected_and_clan_sessions_kept(make_ctx, two_warbands):
    tmux = FakeTmux([
        "hd-horde-witness",
        "hd-horde-raider1",
        "hd-relics-forge",
        "hd-unknown-witness",
        "hd-missing-clan-joe",
        "random-session",
    ])
    check = OrphanSessionCheck(tmux)
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["message"] == "Found 2 orphaned session(s)"
    assert check.orphans == ["hd-unknown-witness", "hd-missing-clan-joe"]
    assert result["details"] == [
        "Orphan: hd-unknown-witness",
        "Orphan: hd-missing-clan-joe",
        "Clan sessions are never killed automatically (1)",
    ]

    check.repair(ctx)
    assert tmux.killed == ["hd-unknown-witness"]
    assert "hd-missing-clan-joe" in tmux.sessions
    assert "random-session" in tmux.sessions


def test_orphan_sessions_all_valid(make_ctx, two_warbands):
    tmux = FakeTmux(["hq-warchief", "hq-shaman", "hd-horde-clan-joe", "hd-relics-toast"])
    check = OrphanSessionCheck(tmux)
    result = check.detect(make_ctx())
    assert result["message"] == "All 4 Horde session(s) are valid"
    check.repair(make_ctx())
    assert tmux.killed == []


def test_witness_and_forge_only_warband_sessions_are_kept(make_ctx, encampment):
    (encampment / "foo" / "witness").mkdir(parents=True)
    (encampment / "foo" / "forge").mkdir(parents=True)
    (encampment / "listed").mkdir()
    register_warband(encampment, "listed")
    tmux = FakeTmux(["hd-foo-witness", "hd-foo-forge", "hd-listed-witness"])
    check = OrphanSessionCheck(tmux)
    ctx = make_ctx()

    report = run(ctx, "fix", [check])
    assert report["checks"][0]["message"] == "All 3 Horde session(s) are valid"
    assert tmux.killed == []


def test_orphan_sessions_without_tmux_server(make_ctx):
    result = OrphanSessionCheck(FakeTmux(running=False)).detect(make_ctx())
    assert result == {
        "name": "orphan-sessions",
        "category": "Cleanup",
        "status": "ok",
        "message": "No tmux sessions running",
    }


def test_orphan_sessions_ignore_foreign_sessions(make_ctx):
    result = OrphanSessionCheck(FakeTmux(["work", "scratch"])).detect(make_ctx())
    assert result["message"] == "No Horde sessions running"


def test_is_valid_session():
    warbands = {"horde"}
    assert is_valid_session("hq-warchief", warbands)
    assert is_valid_session("hd-horde-forge", warbands)
    assert not is_valid_session("hd-other-forge", warbands)
    assert not is_valid_session("hd-single", warbands)
    assert not is_valid_session("hq-unknown", warbands)


# -- env-vars --


def test_env_vars_match(make_ctx, encampment):
    tmux = FakeTmux(
        ["hd-horde-witness", "other"],
        {
            "hd-horde-witness": {
                "HD_ROLE": "witness",
                "HD_WARBAND": "horde",
                "BD_ACTOR": "horde/witness",
                "GIT_AUTHOR_NAME": "horde/witness",
                "HD_ROOT": str(encampment),
                "TERM": "screen",
            }
        },
    )
    result = EnvVarsCheck(tmux).detect(make_ctx())
    assert result["status"] == "ok"
    assert result["message"] == "All 1 session(s) have correct environment variables"


def test_env_vars_mismatch(make_ctx, encampment):
    tmux = FakeTmux(
        ["hq-warchief"],
        {"hq-warchief": {"HD_ROLE": "shaman", "BD_ACTOR": "warchief"}},
    )
    result = EnvVarsCheck(tmux).detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Found 3 env var mismatch(es) across 1 session(s)"
    assert result["details"][:3] == [
        'hq-warchief: HD_ROLE="shaman" (expected "warchief")',
        'hq-warchief: missing GIT_AUTHOR_NAME (expected "warchief")',
        f'hq-warchief: missing HD_ROOT (expected "{encampment}")',
    ]


def test_env_vars_relics_dir_override(make_ctx, encampment):
    env = {
        "HD_ROLE": "warchief",
        "BD_ACTOR": "warchief",
        "GIT_AUTHOR_NAME": "warchief",
        "HD_ROOT": str(encampment),
        "RELICS_DIR": "/elsewhere/.relics",
    }
    tmux = FakeTmux(["hq-warchief"], {"hq-warchief": env})
    result = EnvVarsCheck(tmux).detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Found RELICS_DIR set in 1 session(s)"
    assert result["details"][0] == (
        'hq-warchief: RELICS_DIR="/elsewhere/.relics" (breaks prefix routing)'
    )


def test_env_vars_without_sessions(make_ctx):
    assert EnvVarsCheck(FakeTmux(running=False)).detect(make_ctx())["message"] == (
        "No tmux sessions running"
    )
    assert EnvVarsCheck(FakeTmux(["mine"])).detect(make_ctx())["message"] == (
        "No Horde sessions running"
    )


# -- orphan-processes --


def test_parse_ps_output():
    output = "    1     0 init\n  200     1 tmux: server\nbad line\n  x 1 sh\n  300   200 claude\n"
    assert parse_ps_output(output) == [
        Process(pid=1, ppid=0, command="init"),
        Process(pid=200, ppid=1, command="tmux: server"),
        Process(pid=300, ppid=200, command="claude"),
    ]


def test_processes_outside_tmux():
    processes = [
        Process(pid=1, ppid=0, command="init"),
        Process(pid=200, ppid=1, command="tmux: server"),
        Process(pid=250, ppid=200, command="bash"),
        Process(pid=300, ppid=250, command="claude"),
        Process(pid=400, ppid=1, command="/usr/local/bin/claude"),
        Process(pid=500, ppid=1, command="vim"),
    ]
    assert processes_outside_tmux(processes) == [processes[4]]


def test_orphan_processes_check(make_ctx):
    processes = [Process(pid=42, ppid=1, command="claude")]
    result = OrphanProcessCheck(lambda timeout: processes).detect(make_ctx())
    assert result["status"] == "warning"
    assert result["message"] == "Found 1 runtime process(es) outside tmux"
    assert result["details"][-1] == "PID 42: claude"

    assert OrphanProcessCheck(no_processes).detect(make_ctx())["status"] == "ok"


def test_orphan_processes_without_ps(make_ctx):
    def broken(timeout):
        raise RuntimeError("ps is not installed")

    result = OrphanProcessCheck(broken).detect(make_ctx())
    assert result["status"] == "ok"
    assert result["message"] == "Process list unavailable (skipped)"
    assert result["details"] == ["ps is not installed"]
