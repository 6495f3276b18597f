# ========================= config.py =========================
import json, logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ScanMode(str, Enum):
    NONE = "none"
    SEQUENTIAL = "sequential"
    RANDOM_START = "random"
    PROGRESSIVE = "progressive"


@dataclass
class SchedulerConfig:
    progress_interval_ms: float = 100.0   # status cadence on sparse timelines
    stop_grace_s: float = 1.0             # max time stop() blocks for cleanup
    tolerance_ms: float = 1.0             # dispatch when within this of target


@dataclass(frozen=True)
class LoopConfig:
    loop_playlist: bool = False
    loop_individual: bool = False
    delay_between_songs_ms: int = 0
    delay_between_repeats: bool = False   # individual loop repeats back-to-back
    scan_mode: ScanMode = ScanMode.NONE
    scan_segment_ms: int = 30000
    progressive_growth: str = "doubling"  # constant | linear | doubling
    progressive_step_ms: int = 10000      # used by "linear"


@dataclass
class BusConfig:
    enabled: bool = True
    channel: str = "midiplay"
    group: str = "239.255.77.77"
    base_port: int = 47000
    heartbeat_interval_s: float = 5.0


@dataclass
class AudioConfig:
    enabled: bool = True
    device_id: Optional[int] = None       # None -> system default output
    skip_drum_channel: bool = False


@dataclass
class CatalogConfig:
    songs_dir: Optional[str] = "songs"


@dataclass
class LogConfig:
    log_dir: Optional[str] = None         # None -> ./logs
    level: str = "INFO"


@dataclass
class AppConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    log: LogConfig = field(default_factory=LogConfig)


def _overlay(section, data: dict, name: str):
    known = {f.name for f in fields(section)}
    updates = {}
    for k, v in (data or {}).items():
        if k not in known:
            logger.warning("Unknown config key %s.%s ignored", name, k)
            continue
        if k == "scan_mode":
            v = ScanMode(v)
        updates[k] = v
    return replace(section, **updates)


def load_config(path: Optional[str] = None) -> AppConfig:
    """Defaults overlaid with the sections of a JSON file, if one is given and exists."""
    cfg = AppConfig()
    if not path:
        return cfg
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return cfg

    updates = {}
    for f_ in fields(cfg):
        if f_.name in obj:
            updates[f_.name] = _overlay(getattr(cfg, f_.name), obj[f_.name], f_.name)
    for k in obj:
        if k not in updates:
            logger.warning("Unknown config section %s ignored", k)
    return replace(cfg, **updates)
