from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Environment variable -> settings field. DEBOUNCE_MS is in milliseconds.
_ENV_FIELDS: dict[str, str] = {
    "TRAILPOI_BUFFER_FACTOR": "buffer_factor",
    "TRAILPOI_MOVE_THRESHOLD": "move_threshold",
    "TRAILPOI_ZOOM_THRESHOLD": "zoom_threshold",
    "TRAILPOI_DEBOUNCE_MS": "debounce_s",
    "TRAILPOI_CACHE_TTL_S": "cache_ttl_s",
    "TRAILPOI_CACHE_MAX_ENTRIES": "cache_max_entries",
    "TRAILPOI_KEY_DECIMALS": "key_decimals",
    "TRAILPOI_TELEMETRY": "telemetry",
    "TRAILPOI_TELEMETRY_PATH": "telemetry_path",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ViewportSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Viewport padding; 1.2 = 20% extra span, 10% on each side.
    buffer_factor: float = Field(default=1.2, gt=1.0)
    # Fraction of the span an edge must move to count as a new viewport.
    move_threshold: float = Field(default=0.3, gt=0.0)
    # Zoom delta (levels) that counts as a new viewport on its own.
    zoom_threshold: float = Field(default=0.5, gt=0.0)
    debounce_s: float = Field(default=0.3, ge=0.0)
    cache_ttl_s: float = Field(default=300.0, gt=0.0)
    cache_max_entries: int = Field(default=200, ge=1)
    key_decimals: int = Field(default=4, ge=0, le=10)

    # Per-cycle DuckDB telemetry is opt-in.
    telemetry: bool = False
    telemetry_path: Path | None = None

    def telemetry_db_path(self) -> Path:
        """
        Where the telemetry store lives; relative to the working directory by default.
        """
        if self.telemetry_path is not None:
            return self.telemetry_path
        return Path.cwd() / "data" / "telemetry" / "cycles.duckdb"


def _parse(raw: str, field: str) -> Any | None:
    try:
        if field == "debounce_s":
            return float(raw) / 1000.0
        if field in {"cache_max_entries", "key_decimals"}:
            return int(raw)
        if field == "telemetry":
            v = raw.lower()
            if v in _TRUE:
                return True
            if v in _FALSE:
                return False
            return None
        if field == "telemetry_path":
            return Path(raw)
        return float(raw)
    except Exception:
        return None


def settings_from_env(**overrides: Any) -> ViewportSettings:
    """
    Defaults, then `TRAILPOI_*` environment variables, then explicit overrides.

    Unparsable environment values are ignored.
    """
    values: dict[str, Any] = {}
    for env_name, field in _ENV_FIELDS.items():
        raw = (os.getenv(env_name) or "").strip()
        if not raw:
            continue
        parsed = _parse(raw, field)
        if parsed is not None:
            values[field] = parsed
    values.update(overrides)
    return ViewportSettings(**values)
