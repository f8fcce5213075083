"""SkyShield zone geometry: no-fly and protected-asset regions.

A zone is a circle (centre, radius) in the local ENU grid, optionally with a
polygon outline. When a polygon of three or more vertices is given it
decides ``contains``; proximity and heading checks always use the circle.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

HEADING_COSINE = 0.85  # ~30 deg cone
ASSET_PADDING = 20.0


class ZoneKind(Enum):
    NO_FLY = "no_fly"
    ASSET = "asset"

    @classmethod
    def parse(cls, label) -> "ZoneKind":
        key = str(label).strip().lower().replace("-", "_")
        if key in ("nofly", "no_fly", "nfz", "restricted"):
            return cls.NO_FLY
        if key in ("asset", "assets", "protected"):
            return cls.ASSET
        raise ValueError(f"unknown zone kind: {label!r}")


def _point_in_polygon(x: float, y: float, poly: np.ndarray) -> bool:
    """Even-odd ray casting; edges count as inside-or-outside arbitrarily."""
    inside = False
    n = len(poly)
    j = n - 1
    for i in range(n):
        xi, yi = poly[i]
        xj, yj = poly[j]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


@dataclass(frozen=True)
class Zone:
    """Immutable named region.

    Attributes:
        zone_id: Identifier, e.g. "NFZ_0"
        kind: NO_FLY or ASSET
        center: (x, y) centre
        radius: Circle radius (m)
        polygon: Optional outline vertices [(x, y), ...]
    """
    zone_id: str
    kind: ZoneKind
    center: Tuple[float, float]
    radius: float
    polygon: Tuple[Tuple[float, float], ...] = field(default_factory=tuple)

    def distance_to(self, point: Sequence[float]) -> float:
        return math.hypot(point[0] - self.center[0], point[1] - self.center[1])

    def contains(self, point: Sequence[float]) -> bool:
        if len(self.polygon) >= 3:
            return _point_in_polygon(point[0], point[1], np.asarray(self.polygon, dtype=float))
        return self.distance_to(point) < self.radius

    def is_near(self, point: Sequence[float], padding: float = ASSET_PADDING) -> bool:
        """Within ``padding`` of the circle edge (inside counts as near)."""
        return self.distance_to(point) < self.radius + padding

    def is_heading_toward(self, point: Sequence[float], velocity: Sequence[float],
                          cosine: float = HEADING_COSINE) -> bool:
        """Velocity points at the centre within the heading cone."""
        v = np.asarray(velocity[:2], dtype=float)
        to_zone = np.array([self.center[0] - point[0], self.center[1] - point[1]])
        nv, nz = np.linalg.norm(v), np.linalg.norm(to_zone)
        if nv == 0.0 or nz == 0.0 or not (np.isfinite(nv) and np.isfinite(nz)):
            return False
        return float(np.dot(v / nv, to_zone / nz)) > cosine

    @classmethod
    def from_dict(cls, d: Dict[str, Any], default_id: str = "") -> "Zone":
        center = d.get("center")
        if center is None or len(center) < 2:
            raise ValueError(f"zone {d.get('id', default_id)!r} needs center: [x, y]")
        polygon = tuple((float(p[0]), float(p[1])) for p in d.get("polygon") or ())
        return cls(zone_id=str(d.get("id", default_id)),
                   kind=ZoneKind.parse(d.get("kind", "no_fly")),
                   center=(float(center[0]), float(center[1])),
                   radius=float(d.get("radius", 0.0)),
                   polygon=polygon)

    def __repr__(self) -> str:
        return (f"Zone({self.zone_id}, {self.kind.value}, "
                f"r={self.radius} at ({self.center[0]}, {self.center[1]}))")


class ZoneManager:
    """No-fly and asset zone sets with the queries threat reasoning needs."""

    def __init__(self, zones: Iterable[Zone] = (), asset_padding: float = ASSET_PADDING,
                 heading_cosine: float = HEADING_COSINE):
        self.asset_padding = asset_padding
        self.heading_cosine = heading_cosine
        self.no_fly: List[Zone] = []
        self.assets: List[Zone] = []
        for z in zones:
            self.add(z)

    @classmethod
    def from_config(cls, entries: Iterable[Dict[str, Any]], **kwargs) -> "ZoneManager":
        """Build from ``zones:`` config entries; malformed entries are skipped."""
        zones = []
        for i, entry in enumerate(entries or ()):
            try:
                zones.append(Zone.from_dict(entry, default_id=f"ZONE_{i}"))
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("Skipping zone entry %d: %s", i, exc)
        return cls(zones, **kwargs)

    def add(self, zone: Zone) -> None:
        (self.no_fly if zone.kind is ZoneKind.NO_FLY else self.assets).append(zone)

    def all_zones(self) -> List[Zone]:
        return self.no_fly + self.assets

    def inside_no_fly(self, point: Sequence[float]) -> bool:
        return any(z.contains(point) for z in self.no_fly)

    def near_asset(self, point: Sequence[float]) -> bool:
        return any(z.is_near(point, self.asset_padding) for z in self.assets)

    def heading_to_no_fly(self, point: Sequence[float], velocity: Sequence[float]) -> bool:
        return any(z.is_heading_toward(point, velocity, self.heading_cosine)
                   for z in self.no_fly)

    def heading_to_asset(self, point: Sequence[float], velocity: Sequence[float]) -> bool:
        return any(z.is_heading_toward(point, velocity, self.heading_cosine)
                   for z in self.assets)

    def zone_at(self, point: Sequence[float]) -> Optional[Zone]:
        for z in self.all_zones():
            if z.contains(point):
                return z
        return None

    def __len__(self) -> int:
        return len(self.no_fly) + len(self.assets)

    def __repr__(self) -> str:
        return f"ZoneManager({len(self.no_fly)} no-fly, {len(self.assets)} asset)"
