"""
SkyShield Threat Reasoning Module
=================================
Turns a fused estimate into a 0-1 threat score with a readable trail.

Components:
  - MotionBehaviorClassifier: short position history -> BehaviorType
  - IntentEstimator: zones + behaviour -> IntentType with confidence
  - ThreatReasoningEngine: zone + intent + behaviour score, scaled by
    fusion confidence
  - ThreatAlertEscalator: score -> OBSERVED / WARNING / THREAT / CRITICAL,
    notifies a listener on every level change

Score composition:
    zone      +0.40 inside no-fly, else +0.30 near an asset
    intent    +0.30 entering no-fly, +0.25 approaching asset, +0.15 scanning
    behaviour +0.20 circle / zig-zag, -0.10 fleeing
    total     *= clamp(fusion_confidence, 0, 1), clamped to [0, 1]

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Sequence, Tuple

import numpy as np

from .skyshield_types import BehaviorType, IntentType, ThreatLevel, clamp01
from .skyshield_zones import ZoneManager

logger = logging.getLogger(__name__)


# ===== BEHAVIOUR CLASSIFIER =====

class MotionBehaviorClassifier:
    """Classifies recent motion from turn angles between successive legs.

    Keeps the last ``history`` positions; fewer than ``min_samples`` gives
    UNKNOWN.
    """

    def __init__(self, history: int = 12, min_samples: int = 5):
        self.min_samples = min_samples
        self._positions: Deque[Tuple[float, float]] = deque(maxlen=history)

    def add_position(self, x: float, y: float) -> None:
        if math.isfinite(x) and math.isfinite(y):
            self._positions.append((float(x), float(y)))

    def __len__(self) -> int:
        return len(self._positions)

    def classify(self) -> BehaviorType:
        n = len(self._positions)
        if n < self.min_samples:
            return BehaviorType.UNKNOWN

        pts = np.asarray(self._positions)
        legs = np.diff(pts, axis=0)
        norms = np.linalg.norm(legs, axis=1, keepdims=True)
        dirs = legs / (norms + 1e-6)
        cos = np.einsum("ij,ij->i", dirs[:-1], dirs[1:])
        mags = np.linalg.norm(dirs[:-1], axis=1) * np.linalg.norm(dirs[1:], axis=1)
        angles = np.arccos(np.clip(cos / (mags + 1e-6), -1.0, 1.0))

        total_turn = float(np.sum(np.abs(angles)))
        total_dev = float(np.sum(np.abs(angles - math.pi / 2)))
        avg_turn = total_turn / (n - 1)

        if avg_turn < 0.2:
            return BehaviorType.STRAIGHT
        if avg_turn > 1.5 and total_dev < 1.0:
            return BehaviorType.CIRCLE
        if 0.5 < avg_turn < 1.5:
            return BehaviorType.ZIGZAG
        if total_turn > 2.5 and total_dev > 1.5:
            return BehaviorType.WEAVING
        return BehaviorType.UNKNOWN

    def reset(self) -> None:
        self._positions.clear()


# ===== INTENT =====

@dataclass(frozen=True)
class IntentEstimate:
    intent: IntentType
    confidence: float


class IntentEstimator:
    """Rule-ordered intent inference from zone geometry and behaviour."""

    def __init__(self, zones: ZoneManager):
        self.zones = zones

    def estimate(self, position: Sequence[float], velocity: Sequence[float],
                 behavior: BehaviorType) -> IntentEstimate:
        if position is None or velocity is None:
            return IntentEstimate(IntentType.UNKNOWN, 0.0)

        to_asset = self.zones.heading_to_asset(position, velocity)
        if self.zones.heading_to_no_fly(position, velocity) \
                and not self.zones.inside_no_fly(position):
            return IntentEstimate(IntentType.ENTERING_NOFLY, 0.9)
        if to_asset:
            return IntentEstimate(IntentType.APPROACHING_ASSET, 0.85)
        if behavior in (BehaviorType.STRAIGHT, BehaviorType.FLEEING):
            return IntentEstimate(IntentType.FLEEING, 0.75)
        if behavior in (BehaviorType.CIRCLE, BehaviorType.ZIGZAG):
            return IntentEstimate(IntentType.SCANNING, 0.6)
        if behavior is BehaviorType.WEAVING:
            return IntentEstimate(IntentType.LOITERING, 0.5)
        return IntentEstimate(IntentType.UNKNOWN, 0.3)


# ===== REASONING ENGINE =====

@dataclass(frozen=True)
class ThreatAssessment:
    """Score plus the clauses that produced it."""
    score: float
    reasoning: str
    intent: IntentType = IntentType.UNKNOWN

    def __repr__(self) -> str:
        return f"ThreatAssessment({self.score:.2f}, {self.intent.value})"


INSUFFICIENT = ThreatAssessment(0.0, "Insufficient data", IntentType.UNKNOWN)


def _usable(vec: Optional[Sequence[float]]) -> bool:
    if vec is None or len(vec) < 2:
        return False
    return math.isfinite(vec[0]) and math.isfinite(vec[1])


class ThreatReasoningEngine:
    """Scores one object against the configured zones.

    Usage:
        engine = ThreatReasoningEngine(ZoneManager.from_config(cfg.zones))
        a = engine.compute_threat((10, 5), (2, 0), BehaviorType.CIRCLE, 0.9)
        a.score, a.reasoning
    """

    def __init__(self, zones: ZoneManager, intent_estimator: Optional[IntentEstimator] = None):
        self.zones = zones
        self.intents = intent_estimator or IntentEstimator(zones)

    def compute_threat(self, position: Optional[Sequence[float]],
                       velocity: Optional[Sequence[float]],
                       behavior, fusion_confidence: float) -> ThreatAssessment:
        if not (_usable(position) and _usable(velocity)):
            return INSUFFICIENT
        behavior = BehaviorType.parse(behavior)
        pos = (float(position[0]), float(position[1]))
        vel = (float(velocity[0]), float(velocity[1]))

        intent = self.intents.estimate(pos, vel, behavior).intent
        score = 0.0
        reason = []

        if self.zones.inside_no_fly(pos):
            score += 0.4
            reason.append("Inside no-fly zone.")
        elif self.zones.near_asset(pos):
            score += 0.3
            reason.append("Near critical asset.")

        if intent is IntentType.ENTERING_NOFLY:
            score += 0.3
            reason.append("Intent: entering no-fly zone.")
        elif intent is IntentType.APPROACHING_ASSET:
            score += 0.25
            reason.append("Intent: approaching asset.")
        elif intent is IntentType.SCANNING:
            score += 0.15
            reason.append("Intent: scanning behavior.")

        if behavior in (BehaviorType.CIRCLE, BehaviorType.ZIGZAG):
            score += 0.2
            reason.append("Behavior: evasive/circling.")
        elif behavior is BehaviorType.FLEEING:
            score -= 0.1
            reason.append("Behavior: fleeing.")

        score *= clamp01(fusion_confidence)
        reason.append(f"Fusion confidence: {fusion_confidence:.2f}")
        return ThreatAssessment(clamp01(score), " ".join(reason), intent)


# ===== ALERT ESCALATION =====

EscalationListener = Callable[[str, ThreatLevel, ThreatLevel, Tuple[float, float]], None]


def level_for_score(score: float,
                    thresholds: Tuple[float, float, float] = (0.2, 0.4, 0.6)) -> ThreatLevel:
    warn, threat, critical = thresholds
    if score >= critical:
        return ThreatLevel.CRITICAL
    if score >= threat:
        return ThreatLevel.THREAT
    if score >= warn:
        return ThreatLevel.WARNING
    return ThreatLevel.OBSERVED


class ThreatAlertEscalator:
    """Tracks the alert level per object and reports every change.

    The listener is called as ``listener(threat_id, previous, level, position)``
    outside the escalator's lock.
    """

    def __init__(self, listener: Optional[EscalationListener] = None,
                 thresholds: Tuple[float, float, float] = (0.2, 0.4, 0.6)):
        self.listener = listener
        self.thresholds = tuple(thresholds)
        self._levels: Dict[str, ThreatLevel] = {}
        self._positions: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def update(self, threat_id: str, score: float,
               position: Tuple[float, float]) -> ThreatLevel:
        level = level_for_score(score, self.thresholds)
        with self._lock:
            previous = self._levels.get(threat_id, ThreatLevel.OBSERVED)
            self._levels[threat_id] = level
            self._positions[threat_id] = (float(position[0]), float(position[1]))
        if level is not previous:
            logger.info("Threat %s %s -> %s", threat_id, previous.name, level.name)
            if self.listener is not None:
                self.listener(threat_id, previous, level, position)
        return level

    def level(self, threat_id: str) -> ThreatLevel:
        with self._lock:
            return self._levels.get(threat_id, ThreatLevel.OBSERVED)

    def position(self, threat_id: str) -> Optional[Tuple[float, float]]:
        with self._lock:
            return self._positions.get(threat_id)

    def forget(self, threat_id: str) -> None:
        with self._lock:
            self._levels.pop(threat_id, None)
            self._positions.pop(threat_id, None)

    def levels(self) -> Dict[str, ThreatLevel]:
        with self._lock:
            return dict(self._levels)
