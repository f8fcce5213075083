"""SkyShield Sensor Trust Model.

Keeps a per-source exponentially weighted "trust weight" in [0, 1]:

    w_new = (1 - alpha) * w_old + alpha * clamp(reliability, 0, 1)

with alpha = 0.10. A source that has never been updated reads as the
default trust (0.85); reading never creates an entry. Observations without
a self-reported reliability count as fully reliable (prior 1.0).

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping

from .skyshield_types import Observation, clamp01


ALPHA = 0.10
DEFAULT_TRUST = 0.85
DEFAULT_RELIABILITY = 1.0


class SensorTrustModel:
    """Per-sensor EWMA trust weights.

    Args:
        alpha: EWMA smoothing factor.
        default_trust: Weight reported for a never-seen source.
        default_reliability: Reliability assumed when a record carries none.

    Usage::

        trust = SensorTrustModel()
        trust.update("radar-a", 0.4)          # 0.9*0.85 + 0.1*0.4 = 0.805
        trust.weights_for(["radar-a", "eo"])  # {"radar-a": 0.805, "eo": 0.85}
    """

    def __init__(self, alpha: float = ALPHA,
                 default_trust: float = DEFAULT_TRUST,
                 default_reliability: float = DEFAULT_RELIABILITY):
        self.alpha = alpha
        self.default_trust = default_trust
        self.default_reliability = default_reliability
        self._weights: Dict[str, float] = {}
        self._lock = threading.Lock()

    def update(self, source_id: str, reliability: float) -> float:
        """Fold one reliability sample into the source's weight; returns it."""
        r = clamp01(reliability)
        with self._lock:
            old = self._weights.get(source_id, self.default_trust)
            new = (1.0 - self.alpha) * old + self.alpha * r
            self._weights[source_id] = new
        return new

    def update_from(self, observations: Iterable[Observation]) -> None:
        """Batch update from observation records (self-reported or prior)."""
        for obs in observations:
            rel = obs.reliability if obs.reliability is not None else self.default_reliability
            self.update(obs.source_id, rel)

    def weight(self, source_id: str) -> float:
        with self._lock:
            return self._weights.get(source_id, self.default_trust)

    def weights_for(self, source_ids: Iterable[str]) -> Mapping[str, float]:
        """Read-only slice of the weights for the requested sources only."""
        with self._lock:
            sliced = {sid: self._weights.get(sid, self.default_trust)
                      for sid in source_ids}
        return MappingProxyType(sliced)

    def known_sources(self) -> List[str]:
        with self._lock:
            return list(self._weights.keys())

    def snapshot(self) -> Mapping[str, float]:
        with self._lock:
            return MappingProxyType(dict(self._weights))

    def __repr__(self) -> str:
        return f"SensorTrustModel({len(self._weights)} sources, alpha={self.alpha})"
