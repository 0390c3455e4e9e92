"""Tests for session-name building and parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from horde.session import (
    AgentIdentity,
    SessionNameError,
    is_clan_session,
    is_horde_session,
    parse_session_name,
)

CANONICAL_IDENTITIES = [
    AgentIdentity(role="warchief"),
    AgentIdentity(role="shaman"),
    AgentIdentity(role="witness", warband="horde"),
    AgentIdentity(role="forge", warband="horde"),
    AgentIdentity(role="clan", warband="horde", name="joe"),
    AgentIdentity(role="raider", warband="horde", name="toast"),
]


@pytest.mark.parametrize("identity", CANONICAL_IDENTITIES, ids=lambda i: i.role)
def test_session_name_round_trip(identity):
    assert parse_session_name(identity.session_name) == identity


def test_session_names():
    names = [identity.session_name for identity in CANONICAL_IDENTITIES]
    assert names == [
        "hq-warchief",
        "hq-shaman",
        "hd-horde-witness",
        "hd-horde-forge",
        "hd-horde-clan-joe",
        "hd-horde-toast",
    ]


def test_parse_hyphenated_warband_for_singleton_roles():
    assert parse_session_name("hd-my-proj-witness") == AgentIdentity("witness", "my-proj")
    assert parse_session_name("hd-my-proj-forge") == AgentIdentity("forge", "my-proj")


def test_parse_clan_name_with_hyphens():
    assert parse_session_name("hd-horde-clan-max-power") == AgentIdentity(
        "clan", "horde", "max-power"
    )


def test_parse_raider_takes_first_segment_as_warband():
    assert parse_session_name("hd-horde-raider1") == AgentIdentity("raider", "horde", "raider1")
    assert parse_session_name("hd-horde-big-toast") == AgentIdentity("raider", "horde", "big-toast")


@pytest.mark.parametrize(
    "session",
    ["hd-horde", "hd-", "hq-mayor", "hq-", "random-session", "witness"],
)
def test_parse_rejects_names_outside_the_grammar(session):
    with pytest.raises(SessionNameError):
        parse_session_name(session)


def test_is_clan_session():
    assert is_clan_session("hd-horde-clan-joe")
    assert is_clan_session("hd-my-proj-clan-joe")
    assert not is_clan_session("hd-horde-clan")
    assert not is_clan_session("hd-clan-joe")
    assert not is_clan_session("hd-horde-witness")
    assert not is_clan_session("hq-warchief")


def test_is_horde_session():
    assert is_horde_session("hq-warchief")
    assert is_horde_session("hd-horde-witness")
    assert not is_horde_session("random-session")


def test_addresses_and_work_dirs():
    root = Path("/town")
    expected = {
        "warchief": ("warchief", root / "warchief"),
        "shaman": ("shaman", root / "shaman"),
        "witness": ("horde/witness", root / "horde" / "witness"),
        "forge": ("horde/forge", root / "horde" / "forge" / "warband"),
        "clan": ("horde/clan/joe", root / "horde" / "clan" / "joe"),
        "raider": ("horde/raiders/toast", root / "horde" / "raiders" / "toast"),
    }
    for identity in CANONICAL_IDENTITIES:
        assert (identity.address, identity.work_dir(root)) == expected[identity.role]


def test_role_record_id():
    assert AgentIdentity(role="witness", warband="horde").role_record_id == "hq-witness-role"


def test_ambiguous_names_follow_grammar_precedence():
    # A raider named after a singleton role parses as that role.
    raider = AgentIdentity(role="raider", warband="horde", name="witness")
    assert parse_session_name(raider.session_name) == AgentIdentity("witness", "horde")
    # Singleton suffix beats an embedded clan marker.
    assert parse_session_name("hd-x-clan-y-forge") == AgentIdentity("forge", "x-clan-y")
    # Raiders of hyphenated warbands lose the warband split.
    raider = AgentIdentity(role="raider", warband="my-proj", name="toast")
    assert parse_session_name(raider.session_name) == AgentIdentity("raider", "my", "proj-toast")
