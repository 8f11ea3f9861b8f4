from __future__ import annotations

import os
from pathlib import Path

_DISABLED = {"0", "false", "no", "off"}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def telemetry_path() -> Path:
    raw = (os.getenv("TOILETMAP_TELEMETRY_PATH") or "").strip()
    if raw:
        return Path(raw)
    return _repo_root() / "data" / "telemetry" / "telemetry.duckdb"


def telemetry_enabled() -> bool:
    """
    On unless TOILETMAP_TELEMETRY is one of 0/false/no/off.
    """
    return (os.getenv("TOILETMAP_TELEMETRY") or "1").strip().lower() not in _DISABLED
