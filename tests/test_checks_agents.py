"""Tests for agent/warband identity records and the repository fingerprint check."""

from __future__ import annotations

import pytest

from conftest import register_warband, write_routes
from horde.checks_agents import (
    AgentRelicsCheck,
    RepoFingerprintCheck,
    WarbandRelicsCheck,
    expected_agent_records,
    routed_warbands,
)


@pytest.fixture()
def routed_horde(encampment):
    (encampment / "horde" / "warchief" / "warband").mkdir(parents=True)
    (encampment / "horde" / "clan" / "joe").mkdir(parents=True)
    write_routes(
        encampment,
        ("hq-", "."),
        ("hd-", "horde/warchief/warband"),
        ("hx-", "horde/other"),
    )
    return encampment


def test_routed_warbands_first_route_wins(routed_horde):
    warbands = routed_warbands(routed_horde)
    assert [(w.name, w.prefix, w.path) for w in warbands] == [
        ("horde", "hd", "horde/warchief/warband")
    ]


def test_expected_agent_records(routed_horde):
    records = expected_agent_records(routed_horde)
    assert [record.record_id for record in records] == [
        "hq-shaman",
        "hq-warchief",
        "hd-horde-witness",
        "hd-horde-forge",
        "hd-horde-clan-joe",
    ]
    assert records[2].work_dir == routed_horde / "horde" / "warchief" / "warband"


def test_agent_relics_created(make_ctx, routed_horde, relics_store):
    check = AgentRelicsCheck(relics_store)
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["message"] == "5 agent bead(s) missing"

    check.repair(ctx)
    witness = relics_store.records["hd-horde-witness"]
    assert witness["issue_type"] == "agent"
    assert witness["_dir"] == str(routed_horde / "horde" / "warchief" / "warband")
    assert "role_type: witness" in witness["description"]
    assert relics_store.records["hq-warchief"]["_dir"] == str(routed_horde)
    assert check.detect(ctx)["message"] == "All 5 agent relics exist"


def test_agent_relics_without_rl(make_ctx, relics_store):
    relics_store.unavailable = True
    result = AgentRelicsCheck(relics_store).detect(make_ctx())
    assert result["message"] == "relics not installed (skipped)"


def test_warband_relics(make_ctx, routed_horde, relics_store):
    register_warband(routed_horde, "horde", prefix="hd", git_url="git@example.com:horde.git")
    check = WarbandRelicsCheck(relics_store)
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "error"
    assert result["message"] == "1 warband identity bead(s) missing"
    assert result["details"] == ["hd-warband-horde"]

    check.repair(ctx)
    record = relics_store.records["hd-warband-horde"]
    assert record["issue_type"] == "warband"
    assert record["title"] == "horde"
    assert "repo: git@example.com:horde.git" in record["description"]
    assert check.detect(ctx)["message"] == "All 1 warband identity relics exist"


def test_warband_relics_without_routes(make_ctx, relics_store):
    assert WarbandRelicsCheck(relics_store).detect(make_ctx())["message"] == "No warbands to check"


def _fingerprint(status: str, message: str) -> dict:
    return {"checks": [{"name": "Repo Fingerprint", "status": status, "message": message}]}


def test_fingerprint_mismatch_migrates_and_restarts_daemon(make_ctx, encampment, relics_store):
    relics_store.doctor_report = _fingerprint("warning", "repo id mismatch")
    restarts = []
    check = RepoFingerprintCheck(relics_store, lambda root, timeout: restarts.append(root))
    ctx = make_ctx()

    result = check.detect(ctx)
    assert result["status"] == "warning"
    assert result["message"] == "Fingerprint issue in encampment: repo id mismatch"

    check.repair(ctx)
    assert relics_store.called("migrate_update_repo_id") == [(encampment, ())]
    assert restarts == [encampment]


def test_fingerprint_error_status(make_ctx, relics_store):
    relics_store.doctor_report = _fingerprint("error", "no fingerprint")
    result = RepoFingerprintCheck(relics_store).detect(make_ctx())
    assert result["status"] == "error"
    assert result["message"] == "Fingerprint error in encampment: no fingerprint"


def test_fingerprint_ok_and_repair_noop(make_ctx, relics_store):
    relics_store.doctor_report = _fingerprint("ok", "matches")
    restarts = []
    check = RepoFingerprintCheck(relics_store, lambda root, timeout: restarts.append(root))
    ctx = make_ctx()
    assert check.detect(ctx)["message"] == "Repository fingerprints verified"
    check.repair(ctx)
    assert relics_store.called("migrate_update_repo_id") == []
    assert restarts == []


def test_fingerprint_skipped_without_rl(make_ctx, relics_store):
    relics_store.unavailable = True
    result = RepoFingerprintCheck(relics_store).detect(make_ctx())
    assert result["status"] == "ok"
