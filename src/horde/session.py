"""Agent identities, tmux session names and mail addresses.

Session names come in two scopes:

- ``hq-warchief`` / ``hq-shaman`` for the encampment-level agents;
- ``hd-<warband>-...`` for everything that lives inside a warband.

Warband-scope names are parsed after stripping ``hd-``:

1. a single segment is an error;
2. a trailing ``witness``/``forge`` segment names that role, the warband is
   everything before it;
3. otherwise the first ``clan`` segment splits warband from worker name;
4. otherwise the session is a raider: warband is the first segment and the
   name is the rest.

The grammar is ambiguous for warbands containing ``-clan-`` and for raiders
named ``witness`` or ``forge``; such names are parsed as-is.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from horde.relics import role_record_id

Role = Literal["warchief", "shaman", "witness", "forge", "raider", "clan"]

ALL_ROLES: tuple[Role, ...] = ("warchief", "shaman", "witness", "forge", "raider", "clan")
TOWN_ROLES = frozenset({"warchief", "shaman"})
SINGLETON_ROLES = frozenset({"witness", "forge"})
NAMED_ROLES = frozenset({"raider", "clan"})

HQ_PREFIX = "hq-"
HD_PREFIX = "hd-"
RAIDER_BRANCH_PREFIX = "raider/"


class SessionNameError(ValueError):
    """Raised when a session name does not follow the horde grammar."""


@dataclass(frozen=True)
class AgentIdentity:
    role: Role
    warband: str = ""
    name: str = ""

    @property
    def session_name(self) -> str:
        return ROLES[self.role].session_name(self.warband, self.name)

    @property
    def address(self) -> str:
        return ROLES[self.role].address(self.warband, self.name)

    def work_dir(self, town_root: Path) -> Path:
        return ROLES[self.role].work_dir(town_root, self.warband, self.name)

    @property
    def role_record_id(self) -> str:
        return role_record_id(self.role)


def warchief_session_name() -> str:
    return f"{HQ_PREFIX}warchief"


def shaman_session_name() -> str:
    return f"{HQ_PREFIX}shaman"


def witness_session_name(warband: str) -> str:
    return f"{HD_PREFIX}{warband}-witness"


def forge_session_name(warband: str) -> str:
    return f"{HD_PREFIX}{warband}-forge"


def clan_session_name(warband: str, name: str) -> str:
    return f"{HD_PREFIX}{warband}-clan-{name}"


def raider_session_name(warband: str, name: str) -> str:
    return f"{HD_PREFIX}{warband}-{name}"


@dataclass(frozen=True)
class RoleSpec:
    """Per-role lookup entry: how each role names, addresses and places its agents."""

    session_name: Callable[[str, str], str]
    address: Callable[[str, str], str]
    work_dir: Callable[[Path, str, str], Path]


ROLES: dict[str, RoleSpec] = {
    "warchief": RoleSpec(
        session_name=lambda w, n: warchief_session_name(),
        address=lambda w, n: "warchief",
        work_dir=lambda root, w, n: root / "warchief",
    ),
    "shaman": RoleSpec(
        session_name=lambda w, n: shaman_session_name(),
        address=lambda w, n: "shaman",
        work_dir=lambda root, w, n: root / "shaman",
    ),
    "witness": RoleSpec(
        session_name=lambda w, n: witness_session_name(w),
        address=lambda w, n: f"{w}/witness",
        work_dir=lambda root, w, n: root / w / "witness",
    ),
    "forge": RoleSpec(
        session_name=lambda w, n: forge_session_name(w),
        address=lambda w, n: f"{w}/forge",
        work_dir=lambda root, w, n: root / w / "forge" / "warband",
    ),
    "clan": RoleSpec(
        session_name=clan_session_name,
        address=lambda w, n: f"{w}/clan/{n}",
        work_dir=lambda root, w, n: root / w / "clan" / n,
    ),
    "raider": RoleSpec(
        session_name=raider_session_name,
        address=lambda w, n: f"{w}/raiders/{n}",
        work_dir=lambda root, w, n: root / w / "raiders" / n,
    ),
}


def parse_session_name(session: str) -> AgentIdentity:
    """Parse a tmux session name into an :class:`AgentIdentity`.

    Raises :class:`SessionNameError` for anything outside the grammar.
    """
    if session.startswith(HQ_PREFIX):
        suffix = session[len(HQ_PREFIX):]
        if suffix == "warchief":
            return AgentIdentity(role="warchief")
        if suffix == "shaman":
            return AgentIdentity(role="shaman")
        raise SessionNameError(f"invalid session name {session!r}: unknown hq- role {suffix!r}")

    if not session.startswith(HD_PREFIX):
        raise SessionNameError(f"invalid session name {session!r}: missing hd- or hq- prefix")

    suffix = session[len(HD_PREFIX):]
    if not suffix:
        raise SessionNameError(f"invalid session name {session!r}: empty after prefix")

    parts = suffix.split("-")
    if len(parts) < 2:
        raise SessionNameError(f"invalid session name {session!r}: expected warband-role format")

    if parts[-1] in SINGLETON_ROLES:
        return AgentIdentity(role=parts[-1], warband="-".join(parts[:-1]))  # type: ignore[arg-type]

    for index, part in enumerate(parts):
        if part == "clan" and 0 < index < len(parts) - 1:
            return AgentIdentity(
                role="clan",
                warband="-".join(parts[:index]),
                name="-".join(parts[index + 1:]),
            )

    return AgentIdentity(role="raider", warband=parts[0], name="-".join(parts[1:]))


def is_horde_session(session: str) -> bool:
    return session.startswith(HQ_PREFIX) or session.startswith(HD_PREFIX)


def is_clan_session(session: str) -> bool:
    """Match ``hd-<warband>-clan-<name>`` with non-empty warband and name."""
    if not session.startswith(HD_PREFIX):
        return False
    parts = session[len(HD_PREFIX):].split("-")
    for index, part in enumerate(parts):
        if part == "clan" and 0 < index < len(parts) - 1:
            return True
    return False
