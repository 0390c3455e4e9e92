"""Optional doctor settings loaded from ``~/.config/horde/doctor.toml``."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from horde.paths import config_dir

DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_DIVERGENCE_WARNING = 10
DEFAULT_DIVERGENCE_ERROR = 50


@dataclass(frozen=True)
class DoctorSettings:
    skip_fix: frozenset[str] = field(default_factory=frozenset)
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    divergence_warning: int = DEFAULT_DIVERGENCE_WARNING
    divergence_error: int = DEFAULT_DIVERGENCE_ERROR


def doctor_toml_path() -> Path:
    return config_dir() / "doctor.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _positive_number(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return default
    return float(value)


def _positive_int(value: object, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return value


def load_doctor_settings(path: Path | None = None) -> DoctorSettings:
    """Load doctor settings, falling back to defaults for missing or invalid keys."""
    document = _read_toml_file(path or doctor_toml_path())
    section = document.get("doctor", document)
    if not isinstance(section, dict):
        section = {}

    raw_skip = section.get("skip_fix", [])
    skip_fix = frozenset(
        item.strip() for item in raw_skip if isinstance(item, str) and item.strip()
    ) if isinstance(raw_skip, list) else frozenset()

    return DoctorSettings(
        skip_fix=skip_fix,
        command_timeout=_positive_number(section.get("command_timeout"), DEFAULT_COMMAND_TIMEOUT),
        divergence_warning=_positive_int(
            section.get("divergence_warning"), DEFAULT_DIVERGENCE_WARNING
        ),
        divergence_error=_positive_int(section.get("divergence_error"), DEFAULT_DIVERGENCE_ERROR),
    )
