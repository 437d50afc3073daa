from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.errors import ConfigError

DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "timezone": "America/New_York",
    "cache": {
        "data_dir": "data",
        "interval_minutes": 15,
        "recent_days": 30,
        "refresh_when_empty": True,
    },
    "source": {
        "url": "https://www.youtube.com/watch?v=LIVE_STREAM_ID",
        "resolve_with_ytdlp": True,
        "timeout_s": 60.0,
        "regions": {
            "northwest": {"x": 0, "y": 0, "width": 300, "height": 300},
            "north": {"x": 710, "y": 0, "width": 300, "height": 300},
            "northeast": {"x": -300, "y": 0, "width": 300, "height": 300},
        },
    },
    "images": {"enabled": False},
    "schedule": {"enabled": True, "run_on_startup": False},
    "server": {"host": "0.0.0.0", "port": 3113},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        # regions are replaced wholesale; the label set is whatever the file says
        if isinstance(v, dict) and isinstance(out.get(k), dict) and k != "regions":
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


@dataclass(frozen=True)
class Region:
    """
    Crop rectangle in frame pixels.
    Negative x / y are measured from the right / bottom edge.
    """
    x: int
    y: int
    width: int = 300
    height: int = 300

    @classmethod
    def from_dict(cls, label: str, d: Dict[str, Any]) -> "Region":
        try:
            r = cls(x=int(d["x"]), y=int(d["y"]), width=int(d.get("width", 300)), height=int(d.get("height", 300)))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Region '{label}' needs integer x, y, width, height") from e
        if r.width <= 0 or r.height <= 0:
            raise ConfigError(f"Region '{label}' must have positive width/height")
        return r


@dataclass(frozen=True)
class SourceConfig:
    url: str
    resolve_with_ytdlp: bool = True
    timeout_s: float = 60.0
    regions: Dict[str, Region] = field(default_factory=dict)

    def to_public(self) -> Dict[str, Any]:
        return {"url": self.url, "regions": sorted(self.regions)}


@dataclass(frozen=True)
class CacheConfig:
    data_dir: str = "data"
    interval_minutes: int = 15
    recent_days: int = 30
    refresh_when_empty: bool = True


@dataclass(frozen=True)
class ScheduleConfig:
    enabled: bool = True
    run_on_startup: bool = False


@dataclass(frozen=True)
class ImagesConfig:
    enabled: bool = False


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3113


@dataclass(frozen=True)
class AppConfig:
    timezone: str
    cache: CacheConfig
    source: SourceConfig
    images: ImagesConfig
    schedule: ScheduleConfig
    server: ServerConfig
    log_level: str = "INFO"

    @property
    def data_dir(self) -> Path:
        return Path(self.cache.data_dir)

    @property
    def image_dir(self) -> Path:
        return self.data_dir / "images"

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AppConfig":
        P = _deep_merge(DEFAULTS, raw or {})
        c, s = P["cache"], P["source"]

        interval = int(c.get("interval_minutes", 15))
        if not 1 <= interval <= 60:
            raise ConfigError(f"cache.interval_minutes must be within 1..60, got {interval}")
        regions_raw = s.get("regions") or {}
        if not regions_raw:
            raise ConfigError("source.regions must define at least one region")
        if not s.get("url"):
            raise ConfigError("source.url is required")

        return cls(
            timezone=str(P.get("timezone", "America/New_York")),
            cache=CacheConfig(
                data_dir=str(c.get("data_dir", "data")),
                interval_minutes=interval,
                recent_days=int(c.get("recent_days", 30)),
                refresh_when_empty=bool(c.get("refresh_when_empty", True)),
            ),
            source=SourceConfig(
                url=str(s["url"]),
                resolve_with_ytdlp=bool(s.get("resolve_with_ytdlp", True)),
                timeout_s=float(s.get("timeout_s", 60.0)),
                regions={str(k): Region.from_dict(str(k), v) for k, v in regions_raw.items()},
            ),
            images=ImagesConfig(enabled=bool(P.get("images", {}).get("enabled", False))),
            schedule=ScheduleConfig(
                enabled=bool(P.get("schedule", {}).get("enabled", True)),
                run_on_startup=bool(P.get("schedule", {}).get("run_on_startup", False)),
            ),
            server=ServerConfig(
                host=str(P.get("server", {}).get("host", "0.0.0.0")),
                port=int(P.get("server", {}).get("port", 3113)),
            ),
            log_level=str(P.get("logging", {}).get("level", "INFO")),
        )


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load YAML config, falling back to built-in defaults when the file is absent.
    Path precedence: explicit arg, env SKYCOLOR_CONFIG, config/params.yaml.
    """
    path = path or os.environ.get("SKYCOLOR_CONFIG") or DEFAULT_CONFIG_PATH
    if not Path(path).exists():
        return AppConfig.from_dict({})
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config {path} must be a mapping at top level")
    return AppConfig.from_dict(raw)
