"""SkyShield threat registry and ranking.

One record per threat id, upserted in place on every update (so ranking
ties fall back to the order ids were first seen). Ranking keeps records that
are fresh (age < 5 s) and relevant (score > 0.1).

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .skyshield_threat import ThreatReasoningEngine
from .skyshield_types import BehaviorType, IntentType

FRESHNESS_MS = 5000
RELEVANCE_FLOOR = 0.1


def _now_ms() -> float:
    return time.time() * 1000.0


def _as_xy(vec: Optional[Sequence[float]]) -> Optional[Tuple[float, float]]:
    if vec is None:
        return None
    return (float(vec[0]), float(vec[1]))


@dataclass(frozen=True)
class ThreatRecord:
    """Scored snapshot of one tracked threat."""
    threat_id: str
    position: Optional[Tuple[float, float]]
    velocity: Optional[Tuple[float, float]]
    behavior: BehaviorType
    score: float
    reasoning: str
    intent: IntentType
    timestamp_ms: float

    def age_ms(self, now_ms: float) -> float:
        return now_ms - self.timestamp_ms

    def to_dict(self) -> Dict:
        return {
            "threat_id": self.threat_id,
            "position": self.position,
            "velocity": self.velocity,
            "behavior": self.behavior.value,
            "score": round(self.score, 4),
            "intent": self.intent.value,
            "reasoning": self.reasoning,
            "timestamp_ms": self.timestamp_ms,
        }


class PriorityQueueManager:
    """Live, thread-safe threat registry.

    Args:
        reasoning: Engine used to score every update.
        clock: Millisecond wall clock (injectable for tests).
        freshness_ms: Records this old or older drop out of the ranking.
        relevance_floor: Records scoring at or below this drop out.

    Usage:
        pq = PriorityQueueManager(ThreatReasoningEngine(zones))
        pq.update("t1", (10, 0), (2, 0), "circle", 0.9)
        pq.top_threats(3)
    """

    def __init__(self, reasoning: ThreatReasoningEngine,
                 clock: Callable[[], float] = _now_ms,
                 freshness_ms: float = FRESHNESS_MS,
                 relevance_floor: float = RELEVANCE_FLOOR):
        self.reasoning = reasoning
        self.clock = clock
        self.freshness_ms = freshness_ms
        self.relevance_floor = relevance_floor
        self._threats: Dict[str, ThreatRecord] = {}
        self._lock = threading.Lock()

    def update(self, threat_id: str, position, velocity, behavior,
               fusion_confidence: float,
               timestamp_ms: Optional[float] = None) -> ThreatRecord:
        """Score and upsert one threat; returns the stored record."""
        behavior = BehaviorType.parse(behavior)
        assessment = self.reasoning.compute_threat(position, velocity, behavior,
                                                   fusion_confidence)
        record = ThreatRecord(
            threat_id=threat_id,
            position=_as_xy(position),
            velocity=_as_xy(velocity),
            behavior=behavior,
            score=assessment.score,
            reasoning=assessment.reasoning,
            intent=assessment.intent,
            timestamp_ms=self.clock() if timestamp_ms is None else timestamp_ms,
        )
        with self._lock:
            self._threats[threat_id] = record
        return record

    def top_threats(self, max_count: int, now_ms: Optional[float] = None) -> List[ThreatRecord]:
        """Fresh, relevant threats by descending score, at most ``max_count``."""
        if max_count < 0:
            raise ValueError(f"max_count must be >= 0, got {max_count}")
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            records = list(self._threats.values())
        live = [r for r in records
                if now - r.timestamp_ms < self.freshness_ms
                and r.score > self.relevance_floor]
        live.sort(key=lambda r: r.score, reverse=True)
        return live[:max_count]

    def top_threat(self, now_ms: Optional[float] = None) -> Optional[ThreatRecord]:
        top = self.top_threats(1, now_ms)
        return top[0] if top else None

    def get(self, threat_id: str) -> Optional[ThreatRecord]:
        with self._lock:
            return self._threats.get(threat_id)

    def remove(self, threat_id: str) -> bool:
        with self._lock:
            return self._threats.pop(threat_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._threats.clear()

    def cleanup(self, max_age_ms: float, now_ms: Optional[float] = None) -> int:
        """Evict records older than ``max_age_ms``; returns how many went."""
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            old = [tid for tid, r in self._threats.items()
                   if now - r.timestamp_ms > max_age_ms]
            for tid in old:
                del self._threats[tid]
        return len(old)

    def snapshot(self) -> List[ThreatRecord]:
        with self._lock:
            return list(self._threats.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._threats)
