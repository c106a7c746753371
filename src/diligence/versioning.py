"""Version lookup that works from a source checkout and from an installed wheel."""

from __future__ import annotations

import re
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path

DEFAULT_VERSION = "0.3.0"
DISTRIBUTION_NAME = "cleantech-diligence"


def _read_pyproject_version() -> str | None:
    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "pyproject.toml"
        if not candidate.exists():
            continue
        try:
            text = candidate.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if f'name = "{DISTRIBUTION_NAME}"' not in text:
            continue
        match = re.search(r'(?m)^version\s*=\s*"([^"]+)"\s*$', text)
        if match:
            return match.group(1).strip()
    return None


def resolve_version() -> str:
    local_version = _read_pyproject_version()
    if local_version:
        return local_version
    try:
        installed_version = package_version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        installed_version = ""
    return installed_version or DEFAULT_VERSION


VERSION = resolve_version()
