"""
SkyShield Configuration
=======================
One dataclass holding every tunable, loaded from YAML.

Example file::

    tick_hz: 30
    fusion:
      mode: hybrid
      hybrid_alpha: 0.6
    agent:
      hz: 50
      low_battery_pct: 15
    threat:
      max_threats: 5
      escalation_thresholds: [0.2, 0.4, 0.6]
    swarm:
      min_scouts: 2
    health:
      warn_ms: 2000
      primary_sources: [radar]
    zones:
      - {id: NFZ_0, kind: no_fly, center: [0, 0], radius: 100}
      - {id: HQ, kind: asset, center: [400, 0], radius: 50}

Nested sections are flattened onto the dataclass fields. Unknown keys and
values of the wrong type are logged and ignored; start-up never aborts on
them. A missing or unparsable *file* raises ``ConfigError``.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Configuration file missing, unreadable or not a mapping."""


@dataclass
class SkyShieldConfig:
    # fusion
    fusion_mode: str = "hybrid"
    hybrid_alpha: float = 0.6
    winner_threshold: float = 0.8
    trust_alpha: float = 0.10
    default_trust: float = 0.85
    default_reliability: float = 1.0
    track_timeout_ms: float = 5000.0
    # loop / agents
    tick_hz: float = 30.0
    agent_hz: float = 50.0
    agent_speed: float = 15.0
    low_battery_pct: float = 15.0
    battery_drain_per_tick: float = 0.05
    # threat
    freshness_ms: float = 5000.0
    relevance_floor: float = 0.1
    max_threats: int = 5
    asset_padding: float = 20.0
    heading_cosine: float = 0.85
    escalation_thresholds: Tuple[float, float, float] = (0.2, 0.4, 0.6)
    required_role: str = "striker"
    # swarm
    min_scouts: int = 2
    min_repair: int = 1
    rebalance_every: int = 30
    # health
    health_warn_ms: float = 2000.0
    health_critical_ms: float = 5000.0
    primary_sources: List[str] = field(default_factory=lambda: ["radar"])
    secondary_sources: List[str] = field(default_factory=lambda: ["acoustic"])
    # geometry
    zones: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SkyShieldConfig":
        """Build from a (possibly nested) mapping, warning on anything unknown."""
        cfg = cls()
        for name, value in _flatten(data or {}).items():
            cfg._set(name, value)
        return cfg

    def _set(self, name: str, value: Any) -> None:
        default = getattr(self, name)
        try:
            coerced = _coerce(name, default, value)
        except (TypeError, ValueError) as exc:
            logger.warning("Config %s=%r rejected (%s); keeping %r", name, value, exc, default)
            return
        setattr(self, name, coerced)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def changed_fields(self, other: "SkyShieldConfig") -> List[str]:
        return [f.name for f in dataclasses.fields(self)
                if getattr(self, f.name) != getattr(other, f.name)]


_FIELDS = {f.name for f in dataclasses.fields(SkyShieldConfig)}

_SECTION_ALIASES = {
    ("fusion", "mode"): "fusion_mode",
    ("fusion", "alpha"): "trust_alpha",
    ("loop", "hz"): "tick_hz",
    ("agent", "hz"): "agent_hz",
    ("agent", "speed"): "agent_speed",
    ("agent", "drain_per_tick"): "battery_drain_per_tick",
    ("health", "warn_ms"): "health_warn_ms",
    ("health", "critical_ms"): "health_critical_ms",
}

_SECTIONS = ("fusion", "loop", "agent", "threat", "swarm", "health")


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECTIONS and isinstance(value, dict):
            for sub, sub_value in value.items():
                name = _SECTION_ALIASES.get((key, sub))
                if name is None:
                    name = sub if sub in _FIELDS else f"{key}_{sub}"
                if name in _FIELDS:
                    flat[name] = sub_value
                else:
                    logger.warning("Unknown config key %s.%s ignored", key, sub)
        elif key in _FIELDS:
            flat[key] = value
        else:
            logger.warning("Unknown config key %s ignored", key)
    return flat


def _coerce(name: str, default: Any, value: Any) -> Any:
    if name == "escalation_thresholds":
        t = tuple(float(v) for v in value)
        if len(t) != 3 or not (t[0] <= t[1] <= t[2]):
            raise ValueError("need three ascending thresholds")
        return t
    if name in ("primary_sources", "secondary_sources"):
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
    if name == "zones":
        if not isinstance(value, list):
            raise TypeError("zones must be a list")
        return list(value)
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        out = float(value)
        if name.endswith("_hz") and out <= 0:
            raise ValueError("rate must be positive")
        return out
    if isinstance(default, str):
        return str(value)
    return value


def load_config(path: Optional[str] = None) -> SkyShieldConfig:
    """Read a YAML file into a config; ``None`` gives the defaults."""
    if path is None:
        return SkyShieldConfig()
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"malformed config {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping, got {type(data).__name__}")
    return SkyShieldConfig.from_dict(data)


class ConfigWatcher:
    """Polls a config file's mtime and hands changed configs to ``apply``.

    A bad edit is logged and skipped; the previous config stays in force.
    """

    def __init__(self, path: str, apply: Callable[[SkyShieldConfig], None],
                 interval_s: float = 1.0):
        self.path = path
        self.apply = apply
        self.interval_s = interval_s
        self._mtime = self._stat()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _stat(self) -> Optional[float]:
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def poll(self) -> bool:
        """Reload once if the file changed; True when a config was applied."""
        mtime = self._stat()
        if mtime is None or mtime == self._mtime:
            return False
        self._mtime = mtime
        try:
            cfg = load_config(self.path)
        except ConfigError:
            logger.exception("Config reload failed; keeping current settings")
            return False
        logger.info("Config %s changed; applying", self.path)
        self.apply(cfg)
        return True

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="config-watch")
        self._thread.start()

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.poll()
            except Exception:
                logger.exception("Config watcher poll failed")
