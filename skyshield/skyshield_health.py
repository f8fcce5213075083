"""SkyShield health: sensor freshness, fusion fallback and module status board.

Sensor freshness rule (age of the last sample from a source):

    OK        age <  2 s
    WARNING   2 s <= age < 5 s
    CRITICAL  age >= 5 s, or never heard from

The fallback controller maps sensor-group health to a fusion mode:

    primary and secondary groups down  -> "hybrid"
    primary group down                 -> "ukf"
    otherwise                          -> the configured healthy mode

A group is down when it has at least one registered source and all of its
sources are CRITICAL. Sources belong to a group by case-insensitive prefix
("radar" covers "radar-a", "Radar_2").

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .skyshield_types import Observation

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


class HealthStatus(Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SensorHealth:
    """Freshness record for one source."""
    source_id: str
    last_update_ms: Optional[float] = None
    sample_count: int = 0
    status: HealthStatus = HealthStatus.CRITICAL


class SensorHealthMonitor:
    """Heartbeat registry for sensor sources."""

    def __init__(self, warn_ms: float = 2000.0, critical_ms: float = 5000.0,
                 clock: Callable[[], float] = _now_ms):
        self.warn_ms = warn_ms
        self.critical_ms = critical_ms
        self.clock = clock
        self._sensors: Dict[str, SensorHealth] = {}
        self._lock = threading.Lock()

    def register(self, source_id: str) -> None:
        with self._lock:
            self._sensors.setdefault(source_id, SensorHealth(source_id))

    def unregister(self, source_id: str) -> bool:
        with self._lock:
            return self._sensors.pop(source_id, None) is not None

    def heartbeat(self, source_id: str, timestamp_ms: Optional[float] = None) -> None:
        ts = self.clock() if timestamp_ms is None else timestamp_ms
        with self._lock:
            rec = self._sensors.setdefault(source_id, SensorHealth(source_id))
            if rec.last_update_ms is None or ts > rec.last_update_ms:
                rec.last_update_ms = ts
            rec.sample_count += 1

    def record(self, observations: Iterable[Observation],
               now_ms: Optional[float] = None) -> None:
        """Heartbeat every source present in a batch at the receive time."""
        now = self.clock() if now_ms is None else now_ms
        for obs in observations:
            self.heartbeat(obs.source_id, now)

    def _classify(self, rec: SensorHealth, now: float) -> HealthStatus:
        if rec.last_update_ms is None:
            return HealthStatus.CRITICAL
        age = now - rec.last_update_ms
        if age < self.warn_ms:
            return HealthStatus.OK
        if age < self.critical_ms:
            return HealthStatus.WARNING
        return HealthStatus.CRITICAL

    def update(self, now_ms: Optional[float] = None) -> Dict[str, HealthStatus]:
        """Recompute every source's status; returns the new statuses."""
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            for rec in self._sensors.values():
                rec.status = self._classify(rec, now)
            return {sid: rec.status for sid, rec in self._sensors.items()}

    def status(self, source_id: str) -> HealthStatus:
        with self._lock:
            rec = self._sensors.get(source_id)
            return rec.status if rec is not None else HealthStatus.CRITICAL

    def statuses(self) -> Dict[str, HealthStatus]:
        with self._lock:
            return {sid: rec.status for sid, rec in self._sensors.items()}

    def sources(self) -> List[str]:
        with self._lock:
            return list(self._sensors)


class ModeTarget(Protocol):
    def set_mode(self, mode: str) -> str: ...


class FallbackController:
    """Switches the fusion mode when sensor groups go CRITICAL.

    Args:
        monitor: Sensor health monitor, updated on every heartbeat.
        target: Anything with ``set_mode`` (engine or track manager).
        healthy_mode: Mode used while the primary group is alive.
        primary_sources / secondary_sources: Source-id prefixes per group.
    """

    def __init__(self, monitor: SensorHealthMonitor, target: ModeTarget,
                 healthy_mode: str = "hybrid",
                 primary_sources: Iterable[str] = ("radar",),
                 secondary_sources: Iterable[str] = ("acoustic",)):
        self.monitor = monitor
        self.target = target
        self.healthy_mode = healthy_mode
        self.primary_sources = [p.lower() for p in primary_sources]
        self.secondary_sources = [p.lower() for p in secondary_sources]
        self.mode = healthy_mode

    @staticmethod
    def _group_down(statuses: Dict[str, HealthStatus], prefixes: List[str]) -> bool:
        members = [s for sid, s in statuses.items()
                   if any(sid.lower().startswith(p) for p in prefixes)]
        return bool(members) and all(s is HealthStatus.CRITICAL for s in members)

    def select_mode(self, statuses: Dict[str, HealthStatus]) -> str:
        primary_down = self._group_down(statuses, self.primary_sources)
        secondary_down = self._group_down(statuses, self.secondary_sources)
        if primary_down and secondary_down:
            return "hybrid"
        if primary_down:
            return "ukf"
        return self.healthy_mode

    def heartbeat(self, now_ms: Optional[float] = None) -> str:
        """Refresh health and apply the resulting mode if it changed."""
        mode = self.select_mode(self.monitor.update(now_ms))
        if mode != self.mode:
            logger.warning("Sensor health fallback: fusion %s -> %s", self.mode, mode)
            self.mode = mode
            self.target.set_mode(mode)
        return mode

    def set_healthy_mode(self, mode: str) -> None:
        """Change the base mode (config reload); applied if currently healthy."""
        was_healthy = self.mode == self.healthy_mode
        self.healthy_mode = mode
        if was_healthy:
            self.mode = mode
            self.target.set_mode(mode)


@dataclass
class ModuleHealth:
    name: str
    healthy: bool = True
    detail: str = ""
    failures: int = 0


class ModuleHealthBoard:
    """Per-module healthy/unhealthy flags for the operator view."""

    MODULES = ("fusion", "threat", "priority", "engagement", "swarm",
               "health", "persistence")

    def __init__(self, modules: Iterable[str] = MODULES):
        self._modules: Dict[str, ModuleHealth] = {m: ModuleHealth(m) for m in modules}
        self._lock = threading.Lock()

    def mark_healthy(self, name: str) -> None:
        with self._lock:
            rec = self._modules.setdefault(name, ModuleHealth(name))
            rec.healthy = True
            rec.detail = ""

    def mark_unhealthy(self, name: str, detail: str = "") -> None:
        with self._lock:
            rec = self._modules.setdefault(name, ModuleHealth(name))
            rec.healthy = False
            rec.detail = detail
            rec.failures += 1

    def is_healthy(self, name: str) -> bool:
        with self._lock:
            rec = self._modules.get(name)
            return rec.healthy if rec is not None else False

    def all_healthy(self) -> bool:
        with self._lock:
            return all(m.healthy for m in self._modules.values())

    def statuses(self) -> Dict[str, bool]:
        with self._lock:
            return {name: m.healthy for name, m in self._modules.items()}

    def report(self) -> Dict[str, Dict]:
        with self._lock:
            return {name: {"healthy": m.healthy, "detail": m.detail,
                           "failures": m.failures}
                    for name, m in self._modules.items()}
