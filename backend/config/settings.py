from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Literal

import yaml
from pydantic import BaseModel, Field

from cache.region_cache import CacheConfig
from geo.region_key import DEFAULT_KEY_STEPS
from lod.clustering import ClusterOptions


def _repo_root() -> Path:
    # .../backend/config/settings.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _repo_root() / "config" / "toiletmap.yaml"


class CacheSettings(BaseModel):
    maxEntries: int = Field(default=256, ge=1)
    freshWindowS: float = Field(default=30 * 60.0, gt=0.0)
    hardCeilingS: float = Field(default=7 * 24 * 3600.0, gt=0.0)
    coverageThreshold: float = Field(default=0.7, gt=0.0)
    coveragePerEntry: float = Field(default=0.3, gt=0.0)

    def to_config(self) -> CacheConfig:
        return CacheConfig(
            max_entries=self.maxEntries,
            fresh_window_s=self.freshWindowS,
            hard_ceiling_s=max(self.hardCeilingS, self.freshWindowS),
            coverage_threshold=self.coverageThreshold,
            coverage_per_entry=self.coveragePerEntry,
        )


class FetchSettings(BaseModel):
    minFetchIntervalS: float = Field(default=1.0, ge=0.0)
    storeTimeoutS: float = Field(default=10.0, gt=0.0)
    debounceDelayS: float = Field(default=0.5, ge=0.0)


class RegionKeySettings(BaseModel):
    # {max view zoom (inclusive) -> grid step in degrees}
    stepsByMaxZoom: dict[float, float] = Field(default_factory=lambda: dict(DEFAULT_KEY_STEPS))


class ClusterSettings(BaseModel):
    gridSizePx: float = Field(default=100.0, gt=0.0)
    gridSizeByMaxZoom: dict[float, float] | None = None
    maxZoom: float = 10.0
    minClusterSize: int = Field(default=3, ge=2)
    superClusterMaxZoom: float = 3.0
    superClusterMinPoints: int = Field(default=10, ge=1)
    largeClusterSize: int = Field(default=50, ge=2)
    compactnessKm: float = Field(default=10.0, gt=0.0)

    def to_options(self) -> ClusterOptions:
        return ClusterOptions(
            grid_size_px=self.gridSizePx,
            grid_size_by_max_zoom=self.gridSizeByMaxZoom,
            max_zoom=self.maxZoom,
            min_cluster_size=self.minClusterSize,
            super_cluster_max_zoom=self.superClusterMaxZoom,
            super_cluster_min_points=self.superClusterMinPoints,
            large_cluster_size=self.largeClusterSize,
            compactness_km=self.compactnessKm,
        )


class StoreSettings(BaseModel):
    backend: Literal["memory", "duckdb"] = "memory"
    duckdbPath: str = ":memory:"
    duckdbThreads: int = Field(default=1, ge=1)
    # Repo-relative JSON file (Overpass export or a list of records) loaded at startup.
    seedPath: str | None = None
    # Max reads per window; None disables the quota.
    readQuota: int | None = Field(default=None, ge=1)
    readQuotaWindowS: float = Field(default=60.0, gt=0.0)


class Settings(BaseModel):
    logLevel: str = "INFO"
    cache: CacheSettings = Field(default_factory=CacheSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    regionKeys: RegionKeySettings = Field(default_factory=RegionKeySettings)
    clustering: ClusterSettings = Field(default_factory=ClusterSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)


def _as_float(v: str) -> float | None:
    try:
        return float(v)
    except Exception:
        return None


def _as_int(v: str) -> int | None:
    try:
        return int(v)
    except Exception:
        return None


def _as_str(v: str) -> str | None:
    return v or None


# env var -> (path in the settings document, parser)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "TOILETMAP_LOG_LEVEL": (("logLevel",), _as_str),
    "TOILETMAP_CACHE_MAX_ENTRIES": (("cache", "maxEntries"), _as_int),
    "TOILETMAP_FRESH_WINDOW_S": (("cache", "freshWindowS"), _as_float),
    "TOILETMAP_HARD_CEILING_S": (("cache", "hardCeilingS"), _as_float),
    "TOILETMAP_MIN_FETCH_INTERVAL_S": (("fetch", "minFetchIntervalS"), _as_float),
    "TOILETMAP_STORE_TIMEOUT_S": (("fetch", "storeTimeoutS"), _as_float),
    "TOILETMAP_DEBOUNCE_S": (("fetch", "debounceDelayS"), _as_float),
    "TOILETMAP_STORE": (("store", "backend"), _as_str),
    "TOILETMAP_DUCKDB_PATH": (("store", "duckdbPath"), _as_str),
    "TOILETMAP_DUCKDB_THREADS": (("store", "duckdbThreads"), _as_int),
    "TOILETMAP_SEED_PATH": (("store", "seedPath"), _as_str),
    "TOILETMAP_READ_QUOTA": (("store", "readQuota"), _as_int),
}


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid settings yaml root: {path}")
    return data


def _apply_env(doc: dict) -> dict:
    for env, (path, parse) in _ENV_OVERRIDES.items():
        raw = (os.getenv(env) or "").strip()
        if not raw:
            continue
        value = parse(raw)
        if value is None:
            # Invalid values keep whatever the file (or the default) says.
            continue
        node = doc
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = value
    return doc


def config_path() -> Path:
    raw = (os.getenv("TOILETMAP_CONFIG") or "").strip()
    return Path(raw) if raw else default_config_path()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    path = config_path()
    doc = _load_yaml(path) if path.exists() else {}
    return Settings.model_validate(_apply_env(doc))


def resolve_repo_path(repo_relative: str) -> Path:
    p = Path(repo_relative)
    if p.is_absolute():
        return p
    return _repo_root() / p


def clear_settings_cache() -> None:
    """
    Forget the loaded settings so the next `get_settings()` re-reads file and env.
    """
    try:
        get_settings.cache_clear()
    except Exception:
        pass
