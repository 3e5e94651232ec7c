"""
Runtime settings for the encoder gateway.

Everything is read from the environment (a ``.env`` file is loaded first when
present). Sweep targets can additionally be described in a YAML file pointed
to by ``SWEEP_CONFIG``::

    interval: 1h
    targets:
      - name: scratch
        root: ./temp
        max_age: 2h
        kind: temp
      - name: gifs
        root: ./cache/gifs
        kind: cache
      - name: uploads
        root: ./uploads
        max_age: 4h

``kind`` (temp, cache, uploads or other) decides which manual purge modes
select a target. Without it, names starting with ``temp`` are temp and names
containing ``cache`` are cache.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv

from .schemas import SweepTarget
from .utils import parse_duration

log = logging.getLogger(__name__)

load_dotenv()


def env(name: str, default=None):
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val


def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    return int(env(name, default))


def env_duration(name: str, default: float) -> float:
    return parse_duration(env(name), default)


@dataclass
class Settings:
    temp_root: str = "temp"
    cache_root: str = "cache"
    uploads_root: str = "uploads"
    sweep_interval_sec: float = 3600.0
    sweep_max_age_sec: float = 7200.0
    uploads_max_age_sec: float = 14400.0
    sweep_autostart: bool = True
    sweep_config: Optional[str] = None
    step_timeout_sec: float = 300.0
    max_concurrent_encodes: int = field(default_factory=lambda: os.cpu_count() or 2)
    max_async_jobs: int = 4
    ffmpeg_bin: Optional[str] = None
    ffprobe_bin: Optional[str] = None
    max_upload_mb: int = 100
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    @property
    def image_cache_root(self) -> str:
        return str(Path(self.cache_root) / "images")

    @property
    def gif_cache_root(self) -> str:
        return str(Path(self.cache_root) / "gifs")

    def output_root(self, category: str) -> str:
        roots = {
            "image": self.image_cache_root,
            "gif": self.gif_cache_root,
            "video": self.uploads_root,
        }
        return roots[category]

    def sweep_targets(self) -> List[SweepTarget]:
        if self.sweep_config:
            return load_sweep_targets(self.sweep_config, self)
        return [
            SweepTarget("temp", self.temp_root, self.sweep_max_age_sec, kind="temp"),
            SweepTarget("image_cache", self.image_cache_root, self.sweep_max_age_sec, kind="cache"),
            SweepTarget("gif_cache", self.gif_cache_root, self.sweep_max_age_sec, kind="cache"),
            SweepTarget("uploads", self.uploads_root, self.uploads_max_age_sec, kind="uploads"),
        ]


def load_sweep_targets(path: str, settings: Settings) -> List[SweepTarget]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if "interval" in data:
        settings.sweep_interval_sec = parse_duration(data["interval"], settings.sweep_interval_sec)

    targets = []
    for entry in data.get("targets") or []:
        if not entry.get("root"):
            raise ValueError(f"Sweep target without root in {path}: {entry}")
        targets.append(
            SweepTarget(
                name=str(entry.get("name") or Path(entry["root"]).name),
                root=str(entry["root"]),
                max_age_sec=parse_duration(entry.get("max_age"), settings.sweep_max_age_sec),
                kind=str(entry.get("kind") or ""),
            )
        )
    if not targets:
        raise ValueError(f"No sweep targets defined in {path}")
    log.info("Loaded %d sweep target(s) from %s", len(targets), path)
    return targets


def load_settings() -> Settings:
    origins = [o.strip() for o in (env("CORS_ORIGINS", "") or "").split(",") if o.strip()]
    settings = Settings(
        temp_root=env("TEMP_ROOT", "temp"),
        cache_root=env("CACHE_ROOT", "cache"),
        uploads_root=env("UPLOADS_ROOT", "uploads"),
        sweep_interval_sec=env_duration("SWEEP_INTERVAL", 3600),
        sweep_max_age_sec=env_duration("SWEEP_MAX_AGE", 7200),
        uploads_max_age_sec=env_duration("UPLOADS_MAX_AGE", 14400),
        sweep_autostart=env_bool("SWEEP_AUTOSTART", True),
        sweep_config=env("SWEEP_CONFIG"),
        step_timeout_sec=env_duration("STEP_TIMEOUT", 300),
        max_concurrent_encodes=env_int("MAX_CONCURRENT_ENCODES", os.cpu_count() or 2),
        max_async_jobs=env_int("MAX_ASYNC_JOBS", 4),
        ffmpeg_bin=env("FFMPEG_BIN"),
        ffprobe_bin=env("FFPROBE_BIN"),
        max_upload_mb=env_int("MAX_UPLOAD_MB", 100),
        log_level=env("LOG_LEVEL", "INFO").upper(),
    )
    if origins:
        settings.cors_origins.extend(origins)
    return settings
