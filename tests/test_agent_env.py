"""Tests for the expected agent environment."""

from __future__ import annotations

import pytest

from horde.agent_env import agent_env, expected_session_env, identity_env
from horde.session import AgentIdentity, SessionNameError

CANONICAL_IDENTITIES = [
    AgentIdentity(role="warchief"),
    AgentIdentity(role="shaman"),
    AgentIdentity(role="witness", warband="horde"),
    AgentIdentity(role="forge", warband="horde"),
    AgentIdentity(role="clan", warband="horde", name="joe"),
    AgentIdentity(role="raider", warband="horde", name="toast"),
]


@pytest.mark.parametrize("identity", CANONICAL_IDENTITIES, ids=lambda i: i.role)
@pytest.mark.parametrize("town_root", [None, "/home/me/town"])
def test_expected_env_matches_reparsed_session_name(identity, town_root):
    from_identity = identity_env(identity, town_root)
    from_session = expected_session_env(identity.session_name, town_root)
    assert from_identity == from_session
    assert from_session == from_identity


def test_town_agent_env():
    assert agent_env("warchief") == {
        "HD_ROLE": "warchief",
        "BD_ACTOR": "warchief",
        "GIT_AUTHOR_NAME": "warchief",
    }


def test_witness_env():
    assert agent_env("witness", "horde", town_root="/t") == {
        "HD_ROLE": "witness",
        "HD_WARBAND": "horde",
        "BD_ACTOR": "horde/witness",
        "GIT_AUTHOR_NAME": "horde/witness",
        "HD_ROOT": "/t",
    }


def test_raider_env():
    env = agent_env("raider", "horde", "toast", "/t")
    assert env["HD_RAIDER"] == "toast"
    assert env["BD_ACTOR"] == "horde/raiders/toast"
    assert env["GIT_AUTHOR_NAME"] == "toast"
    assert env["RELICS_AGENT_NAME"] == "horde/toast"
    assert "HD_CLAN" not in env


def test_clan_env():
    env = agent_env("clan", "horde", "joe")
    assert env["HD_CLAN"] == "joe"
    assert env["BD_ACTOR"] == "horde/clan/joe"
    assert env["RELICS_AGENT_NAME"] == "horde/joe"
    assert "HD_ROOT" not in env


def test_expected_session_env_rejects_unknown_names():
    with pytest.raises(SessionNameError):
        expected_session_env("random-session")
