"""Expected process environment for each agent role."""

from __future__ import annotations

from pathlib import Path

from horde.session import AgentIdentity, parse_session_name


def agent_env(
    role: str,
    warband: str = "",
    name: str = "",
    town_root: str | Path | None = None,
) -> dict[str, str]:
    """Return the environment variables an agent session is expected to carry.

    ``HD_ROOT`` is only included when ``town_root`` is given, so an empty
    value never overrides what the session already has.
    """
    env: dict[str, str] = {"HD_ROLE": role}

    if role in ("warchief", "shaman"):
        env["BD_ACTOR"] = role
        env["GIT_AUTHOR_NAME"] = role
    elif role in ("witness", "forge"):
        env["HD_WARBAND"] = warband
        env["BD_ACTOR"] = f"{warband}/{role}"
        env["GIT_AUTHOR_NAME"] = f"{warband}/{role}"
    elif role == "raider":
        env["HD_WARBAND"] = warband
        env["HD_RAIDER"] = name
        env["BD_ACTOR"] = f"{warband}/raiders/{name}"
        env["GIT_AUTHOR_NAME"] = name
    elif role == "clan":
        env["HD_WARBAND"] = warband
        env["HD_CLAN"] = name
        env["BD_ACTOR"] = f"{warband}/clan/{name}"
        env["GIT_AUTHOR_NAME"] = name

    if town_root:
        env["HD_ROOT"] = str(town_root)

    if role in ("raider", "clan"):
        env["RELICS_AGENT_NAME"] = f"{warband}/{name}"

    return env


def identity_env(identity: AgentIdentity, town_root: str | Path | None = None) -> dict[str, str]:
    return agent_env(identity.role, identity.warband, identity.name, town_root)


def expected_session_env(session: str, town_root: str | Path | None = None) -> dict[str, str]:
    """Expected environment for a running session, derived from its name.

    Raises ``SessionNameError`` when the name is outside the grammar.
    """
    return identity_env(parse_session_name(session), town_root)
