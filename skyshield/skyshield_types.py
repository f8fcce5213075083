"""SkyShield shared types - observation record, enums, small numeric helpers.

Every sensor producer (radar, RF sniffer, acoustic array, camera) emits
``Observation`` records. Everything downstream (trust, fusion, threat
reasoning) consumes this one immutable shape.

State vector convention used across the package::

    [x, y, vx, vy, heading, altitude]

Components that are not known are ``NaN``.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np


STATE_DIM = 6
IDX_X, IDX_Y, IDX_VX, IDX_VY, IDX_HEADING, IDX_ALT = range(STATE_DIM)

DEFAULT_TRACK_ID = "default"


# ===== ENUMS =====

class BehaviorType(Enum):
    """Motion behaviour labels accepted from classifiers."""
    STRAIGHT = "straight"
    WEAVING = "weaving"
    CIRCLE = "circle"
    ZIGZAG = "zig-zag"
    FLEEING = "fleeing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, label) -> "BehaviorType":
        """Accept an enum member or a free-form label ("Zig_Zag", "circle")."""
        if isinstance(label, cls):
            return label
        if label is None:
            return cls.UNKNOWN
        key = str(label).strip().lower().replace("_", "-")
        if key == "zigzag":
            key = "zig-zag"
        for member in cls:
            if member.value == key:
                return member
        return cls.UNKNOWN


class IntentType(Enum):
    """Strategic intent inferred from zones and behaviour."""
    APPROACHING_ASSET = "approaching_asset"
    ENTERING_NOFLY = "entering_nofly"
    FLEEING = "fleeing"
    SCANNING = "scanning"
    LOITERING = "loitering"
    UNKNOWN = "unknown"


class ThreatLevel(Enum):
    """Alert escalation levels (ordered)."""
    OBSERVED = 0
    WARNING = 1
    THREAT = 2
    CRITICAL = 3


class KillChainStage(Enum):
    """Fixed engagement sequence per threat."""
    DETECT = 0
    CLASSIFY = 1
    TRACK = 2
    DECIDE = 3
    ENGAGE = 4
    CONFIRM = 5


KILL_CHAIN = tuple(KillChainStage)


# ===== OBSERVATION =====

@dataclass(frozen=True)
class Observation:
    """One normalised sensor sample.

    Attributes:
        timestamp: Sample time (ms)
        x, y: Position in the local ENU grid (m)
        vx, vy: Velocity (m/s)
        altitude: Altitude above ground (m)
        heading: Heading in radians (0 = east, CCW positive)
        source_id: Producing sensor, e.g. "radar-a", "thermal-2"
        rf_signature_id: RF library match key, None if unmatched
        acoustic_level: Sound pressure level (dB SPL)
        visually_confirmed: Optical pipeline confirmed the object
        reliability: Self-reported reliability 0-1 (None = use prior)
        track_id: Object this sample belongs to (None = default track)
    """
    timestamp: float
    x: float
    y: float
    vx: float
    vy: float
    altitude: float
    heading: float
    source_id: str
    rf_signature_id: Optional[str] = None
    acoustic_level: int = 0
    visually_confirmed: bool = False
    reliability: Optional[float] = None
    track_id: Optional[str] = None

    def state_vector(self) -> np.ndarray:
        return np.array([self.x, self.y, self.vx, self.vy,
                         self.heading, self.altitude], dtype=float)

    @property
    def speed(self) -> float:
        return math.hypot(self.vx, self.vy)

    @property
    def track_key(self) -> str:
        return self.track_id if self.track_id is not None else DEFAULT_TRACK_ID


# ===== HELPERS =====

def unset_state() -> np.ndarray:
    """Fresh state vector with every component unset."""
    return np.full(STATE_DIM, np.nan)


def clamp01(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return 0.0 if value < 0.0 else 1.0 if value > 1.0 else float(value)


def wrap_angle(angle: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    if not math.isfinite(angle):
        return angle
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped <= 0.0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi
