import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `geo.*`, `cache.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    # Keep telemetry and settings out of the repo's data/ dir.
    monkeypatch.setenv("TOILETMAP_TELEMETRY_PATH", str(tmp_path / "telemetry.duckdb"))
    monkeypatch.setenv("TOILETMAP_TELEMETRY", "0")
    from config.settings import clear_settings_cache

    clear_settings_cache()
    yield
    clear_settings_cache()
