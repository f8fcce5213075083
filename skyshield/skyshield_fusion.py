"""
SkyShield Multi-Sensor Fusion Module
====================================
Trust-weighted state blending for one tracked object per engine.

Strategies (selected by a case-insensitive configuration key):

    kalman    : ConstantVelocityFusion  - linear CV blend of [x, y, vx, vy]
    ukf / ekf : HeadingAwareFusion      - blends all six components, heading
                                          blended along the shortest arc
    rules     : RuleBasedFusion         - per-batch trust-weighted average
    tree      : DecisionTreeFusion      - weighted average + winner-take-all
                                          for sources with trust >= 0.8
    hybrid    : HybridFusion            - heading-aware primary mixed with
                                          decision-tree secondary (alpha 0.6)
    multi     : MultiLayerFusion        - NaN-aware mean of kalman/ukf/rules
    fallback  : FallbackFusion          - passive zero state

Sequential strategies (kalman, ukf) share one ingest shape:

  1. first observation of a fresh track initialises the state directly
  2. every later observation predicts with a unit-step CV model
         x += vx,  y += vy
  3. then blends toward the observation
         state = (1 - trust) * state + trust * obs
     where trust is the source's weight (1.0 if the source has none)

The "kalman" and "ukf" names are historical: neither propagates a
covariance or computes a gain. They are trust-weighted blends.

If the x component ever becomes non-finite the strategy resets itself to
the zero vector, logs a warning and counts the event. The caller carries on.

State vector: [x, y, vx, vy, heading, altitude]; unset components are NaN.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .skyshield_trust import SensorTrustModel
from .skyshield_types import (
    IDX_ALT, IDX_HEADING, IDX_VX, IDX_VY, IDX_X, IDX_Y, STATE_DIM,
    Observation, unset_state, wrap_angle,
)

logger = logging.getLogger(__name__)

DEFAULT_HYBRID_ALPHA = 0.6
DEFAULT_WINNER_THRESHOLD = 0.8
DEFAULT_MODE = "hybrid"
SAFE_MODE = "fallback"


# ===== HELPERS =====

def _blend(state: np.ndarray, obs: np.ndarray, trust: float) -> np.ndarray:
    """Linear blend that treats NaN on either side as 'take the other'."""
    out = (1.0 - trust) * state + trust * obs
    out = np.where(np.isnan(obs), state, out)
    return np.where(np.isnan(state), obs, out)


def _blend_heading(current: float, observed: float, trust: float) -> float:
    if math.isnan(observed):
        return current
    if math.isnan(current):
        return wrap_angle(observed)
    return wrap_angle(current + trust * wrap_angle(observed - current))


def _circular_mean(angles: np.ndarray, weights: np.ndarray) -> float:
    mask = ~np.isnan(angles)
    if not mask.any() or weights[mask].sum() <= 0:
        return float("nan")
    s = float(np.sum(weights[mask] * np.sin(angles[mask])))
    c = float(np.sum(weights[mask] * np.cos(angles[mask])))
    return wrap_angle(math.atan2(s, c))


# ===== STRATEGY CONTRACT =====

class FusionStrategy(ABC):
    """Contract shared by every fusion strategy."""

    fusion_type = "abstract"

    def __init__(self):
        self._trust: Dict[str, float] = {}

    @abstractmethod
    def ingest(self, observations: Sequence[Observation]) -> None:
        """Push a batch of observations into the strategy."""

    @abstractmethod
    def current_estimate(self) -> np.ndarray:
        """Copy of the current fused state vector."""

    @abstractmethod
    def reset(self) -> None:
        """Forget all state so the strategy behaves as new."""

    def set_trust_weights(self, weights: Optional[Mapping[str, float]]) -> None:
        self._trust = dict(weights) if weights is not None else {}

    def trust_for(self, source_id: str) -> float:
        return self._trust.get(source_id, 1.0)

    def fuse(self, observations: Sequence[Observation],
             trust_weights: Optional[Mapping[str, float]] = None) -> np.ndarray:
        """Set weights (if given), ingest, and return the new estimate."""
        if trust_weights is not None:
            self.set_trust_weights(trust_weights)
        self.ingest(observations)
        return self.current_estimate()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


# ===== SEQUENTIAL BLENDS =====

class _SequentialBlendFusion(FusionStrategy):
    """Shared predict-then-blend loop for the sequential strategies."""

    def __init__(self):
        super().__init__()
        self._state = unset_state()
        self._initialized = False
        self.instability_count = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def ingest(self, observations: Sequence[Observation]) -> None:
        for obs in observations:
            if not self._initialized:
                self._initialize(obs)
            else:
                self._predict()
                self._update(obs, self.trust_for(obs.source_id))
            if not math.isfinite(self._state[IDX_X]):
                self._on_instability(obs)

    def _predict(self) -> None:
        if math.isfinite(self._state[IDX_VX]):
            self._state[IDX_X] += self._state[IDX_VX]
        if math.isfinite(self._state[IDX_VY]):
            self._state[IDX_Y] += self._state[IDX_VY]

    def _on_instability(self, obs: Observation) -> None:
        self.instability_count += 1
        logger.warning("%s instability after sample from %s; resetting state",
                       self.fusion_type, obs.source_id)
        self._state = np.zeros(STATE_DIM)
        self._initialized = False

    def reset(self) -> None:
        self._state = unset_state()
        self._initialized = False

    @abstractmethod
    def _initialize(self, obs: Observation) -> None:
        ...

    @abstractmethod
    def _update(self, obs: Observation, trust: float) -> None:
        ...


class ConstantVelocityFusion(_SequentialBlendFusion):
    """Linear constant-velocity blend over [x, y, vx, vy].

    Heading is derived from the velocity on read; altitude stays unset.
    """

    fusion_type = "Kalman"

    def _initialize(self, obs: Observation) -> None:
        self._state = unset_state()
        self._state[:4] = obs.state_vector()[:4]
        self._initialized = True

    def _update(self, obs: Observation, trust: float) -> None:
        self._state[:4] = _blend(self._state[:4], obs.state_vector()[:4], trust)

    def current_estimate(self) -> np.ndarray:
        est = self._state.copy()
        vx, vy = est[IDX_VX], est[IDX_VY]
        if math.isfinite(vx) and math.isfinite(vy):
            est[IDX_HEADING] = math.atan2(vy, vx)
        return est


class HeadingAwareFusion(_SequentialBlendFusion):
    """Blends position, velocity, heading and altitude.

    Heading moves toward the observed heading along the shortest arc
    and is kept in (-pi, pi].
    """

    fusion_type = "UKF"

    def __init__(self, label: str = "UKF"):
        super().__init__()
        self.fusion_type = label

    def _initialize(self, obs: Observation) -> None:
        self._state = obs.state_vector()
        self._state[IDX_HEADING] = wrap_angle(self._state[IDX_HEADING])
        self._initialized = True

    def _update(self, obs: Observation, trust: float) -> None:
        z = obs.state_vector()
        heading = _blend_heading(self._state[IDX_HEADING], z[IDX_HEADING], trust)
        self._state = _blend(self._state, z, trust)
        self._state[IDX_HEADING] = heading

    def current_estimate(self) -> np.ndarray:
        return self._state.copy()


# ===== BATCH (RULE) STRATEGIES =====

class RuleBasedFusion(FusionStrategy):
    """Deterministic trust-weighted average of one batch.

    Each component is averaged over the observations that carry a value for
    it; heading uses a weighted circular mean. Components with no
    contributing weight keep their previous value.
    """

    fusion_type = "RuleBased"

    def __init__(self):
        super().__init__()
        self._state = unset_state()

    def _weighted_average(self, observations: Sequence[Observation]
                          ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        vecs = np.array([o.state_vector() for o in observations])
        w = np.array([self.trust_for(o.source_id) for o in observations])
        present = ~np.isnan(vecs)
        wsum = (w[:, None] * present).sum(axis=0)
        wx = np.nansum(vecs * w[:, None], axis=0)
        est = self._state.copy()
        np.divide(wx, wsum, out=est, where=wsum > 0)
        if wsum[IDX_HEADING] > 0:
            est[IDX_HEADING] = _circular_mean(vecs[:, IDX_HEADING], w)
        return est, vecs, w

    def ingest(self, observations: Sequence[Observation]) -> None:
        if not observations:
            return
        self._state, _, _ = self._weighted_average(observations)

    def current_estimate(self) -> np.ndarray:
        return self._state.copy()

    def reset(self) -> None:
        self._state = unset_state()


class DecisionTreeFusion(RuleBasedFusion):
    """Weighted average with winner-take-all for highly trusted sources.

    For every component where some source's trust is >= ``threshold``,
    the most trusted such source's raw value replaces the average. Among
    equally trusted sources the first one observed in the batch wins.
    """

    fusion_type = "DecisionTree"

    def __init__(self, threshold: float = DEFAULT_WINNER_THRESHOLD):
        super().__init__()
        self.threshold = threshold

    def ingest(self, observations: Sequence[Observation]) -> None:
        if not observations:
            return
        est, vecs, w = self._weighted_average(observations)
        for i in range(STATE_DIM):
            best_w = -1.0
            for k in range(len(vecs)):
                v = vecs[k, i]
                if np.isnan(v) or w[k] < self.threshold:
                    continue
                if w[k] > best_w:
                    best_w = w[k]
                    est[i] = v
        est[IDX_HEADING] = wrap_angle(est[IDX_HEADING])
        self._state = est


# ===== COMPOSITE STRATEGIES =====

HYBRID_MODES = ("hybrid", "primary", "secondary")


class HybridFusion(FusionStrategy):
    """Heading-aware primary mixed with a decision-tree secondary.

    ``alpha`` weights the primary. The mixing mode can be switched at
    runtime ("primary" during degraded rule inputs, "secondary" when the
    sequential blend is untrustworthy).
    """

    fusion_type = "Hybrid"

    def __init__(self, alpha: float = DEFAULT_HYBRID_ALPHA,
                 winner_threshold: float = DEFAULT_WINNER_THRESHOLD):
        super().__init__()
        self.alpha = alpha
        self.winner_threshold = winner_threshold
        self.primary = HeadingAwareFusion()
        self.secondary = DecisionTreeFusion(winner_threshold)
        self.mode = "hybrid"

    def set_mode(self, mode: str) -> str:
        key = (mode or "").strip().lower()
        if key not in HYBRID_MODES:
            logger.warning("Unknown hybrid mixing mode %r; using 'hybrid'", mode)
            key = "hybrid"
        self.mode = key
        return key

    def set_trust_weights(self, weights: Optional[Mapping[str, float]]) -> None:
        super().set_trust_weights(weights)
        self.primary.set_trust_weights(weights)
        self.secondary.set_trust_weights(weights)

    def ingest(self, observations: Sequence[Observation]) -> None:
        if not observations:
            return
        self.primary.ingest(observations)
        self.secondary.ingest(observations)

    def current_estimate(self) -> np.ndarray:
        p = self.primary.current_estimate()
        s = self.secondary.current_estimate()
        if self.mode == "primary":
            return p
        if self.mode == "secondary":
            return s
        fused = self.alpha * p + (1.0 - self.alpha) * s
        fused = np.where(np.isnan(p), s, fused)
        fused = np.where(np.isnan(s), p, fused)
        ph, sh = p[IDX_HEADING], s[IDX_HEADING]
        if not (math.isnan(ph) or math.isnan(sh)):
            fused[IDX_HEADING] = wrap_angle(ph + (1.0 - self.alpha) * wrap_angle(sh - ph))
        return fused

    @property
    def instability_count(self) -> int:
        return self.primary.instability_count

    def reset(self) -> None:
        self.primary = HeadingAwareFusion()
        self.secondary = DecisionTreeFusion(self.winner_threshold)
        self.primary.set_trust_weights(self._trust)
        self.secondary.set_trust_weights(self._trust)

    def __repr__(self) -> str:
        return f"HybridFusion(alpha={self.alpha}, mode={self.mode})"


class MultiLayerFusion(FusionStrategy):
    """Runs kalman, ukf and rules side by side; equal-weight NaN-aware mean."""

    fusion_type = "MultiLayer"

    def __init__(self):
        super().__init__()
        self.layers: List[FusionStrategy] = [
            ConstantVelocityFusion(), HeadingAwareFusion(), RuleBasedFusion(),
        ]
        self._state = unset_state()

    def set_trust_weights(self, weights: Optional[Mapping[str, float]]) -> None:
        super().set_trust_weights(weights)
        for layer in self.layers:
            layer.set_trust_weights(weights)

    def ingest(self, observations: Sequence[Observation]) -> None:
        if not observations:
            return
        for layer in self.layers:
            layer.ingest(observations)
        stack = np.array([layer.current_estimate() for layer in self.layers])
        counts = (~np.isnan(stack)).sum(axis=0)
        fused = unset_state()
        np.divide(np.nansum(stack, axis=0), counts, out=fused, where=counts > 0)
        fused[IDX_HEADING] = _circular_mean(stack[:, IDX_HEADING], np.ones(len(self.layers)))
        self._state = fused

    def current_estimate(self) -> np.ndarray:
        return self._state.copy()

    @property
    def instability_count(self) -> int:
        return sum(getattr(layer, "instability_count", 0) for layer in self.layers)

    def reset(self) -> None:
        for layer in self.layers:
            layer.reset()
        self._state = unset_state()


class FallbackFusion(FusionStrategy):
    """Passive strategy used when no valid mode is configured."""

    fusion_type = "Fallback"

    def ingest(self, observations: Sequence[Observation]) -> None:
        pass

    def current_estimate(self) -> np.ndarray:
        return np.zeros(STATE_DIM)

    def reset(self) -> None:
        pass


# ===== STRATEGY TABLE =====

FUSION_STRATEGIES: Dict[str, Callable[..., FusionStrategy]] = {
    "kalman": lambda **kw: ConstantVelocityFusion(),
    "ukf": lambda **kw: HeadingAwareFusion("UKF"),
    "ekf": lambda **kw: HeadingAwareFusion("EKF"),
    "rules": lambda **kw: RuleBasedFusion(),
    "tree": lambda **kw: DecisionTreeFusion(
        kw.get("winner_threshold", DEFAULT_WINNER_THRESHOLD)),
    "hybrid": lambda **kw: HybridFusion(
        kw.get("hybrid_alpha", DEFAULT_HYBRID_ALPHA),
        kw.get("winner_threshold", DEFAULT_WINNER_THRESHOLD)),
    "multi": lambda **kw: MultiLayerFusion(),
    "fallback": lambda **kw: FallbackFusion(),
}


def normalize_mode(mode: Optional[str]) -> str:
    """Map a configuration string to a strategy key (unknown -> fallback)."""
    key = (mode or "").strip().lower()
    if key in FUSION_STRATEGIES:
        return key
    logger.warning("Unknown fusion mode %r; using %r", mode, SAFE_MODE)
    return SAFE_MODE


def create_fusion_strategy(mode: Optional[str], **params) -> FusionStrategy:
    """Build a strategy by configuration key.

    Args:
        mode: One of kalman | ukf | ekf | hybrid | rules | tree | multi |
            fallback (case-insensitive). Anything else yields fallback.
        **params: hybrid_alpha, winner_threshold.
    """
    return FUSION_STRATEGIES[normalize_mode(mode)](**params)


# ===== ENGINE =====

class SensorFusionEngine:
    """
    Fusion façade for one tracked object.

    Owns a table of strategy instances (created on first use), feeds each
    batch through the shared trust model into the active strategy and
    publishes a lock-protected copy of the result for readers on other
    threads (agent runners, UI snapshots).

    Usage:
        trust = SensorTrustModel()
        engine = SensorFusionEngine(trust, mode="hybrid")
        est = engine.fuse([Observation(0, 10, 0, 1, 0, 50, 0.0, "radar-a")])
        engine.set_mode("ukf")      # e.g. from the fallback controller
    """

    def __init__(self, trust_model: SensorTrustModel, mode: str = DEFAULT_MODE,
                 hybrid_alpha: float = DEFAULT_HYBRID_ALPHA,
                 winner_threshold: float = DEFAULT_WINNER_THRESHOLD):
        self.trust = trust_model
        self._params = {"hybrid_alpha": hybrid_alpha,
                        "winner_threshold": winner_threshold}
        self._strategies: Dict[str, FusionStrategy] = {}
        self._mode = normalize_mode(mode)
        self._latest = unset_state()
        self._lock = threading.Lock()

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def strategy(self) -> FusionStrategy:
        if self._mode not in self._strategies:
            self._strategies[self._mode] = FUSION_STRATEGIES[self._mode](**self._params)
        return self._strategies[self._mode]

    def set_mode(self, mode: str) -> str:
        """Switch the active strategy; returns the key actually in use."""
        key = normalize_mode(mode)
        if key != self._mode:
            logger.info("Fusion mode %s -> %s", self._mode, key)
            self._mode = key
        return key

    def fuse(self, observations: Sequence[Observation]) -> np.ndarray:
        """Update trust, ingest the batch, publish and return the estimate."""
        if not observations:
            return self.latest_estimate()
        self.trust.update_from(observations)
        strategy = self.strategy
        strategy.set_trust_weights(
            self.trust.weights_for(o.source_id for o in observations))
        strategy.ingest(observations)
        est = strategy.current_estimate()
        with self._lock:
            self._latest = est.copy()
        return est

    def latest_estimate(self) -> np.ndarray:
        with self._lock:
            return self._latest.copy()

    def confidence_for(self, observations: Sequence[Observation]) -> float:
        """Mean trust of the sources that contributed to a batch (0 if none)."""
        if not observations:
            return 0.0
        weights = self.trust.weights_for({o.source_id for o in observations})
        return float(np.mean(list(weights.values())))

    @property
    def instability_count(self) -> int:
        return sum(getattr(s, "instability_count", 0) for s in self._strategies.values())

    def reset(self) -> None:
        for s in self._strategies.values():
            s.reset()
        with self._lock:
            self._latest = unset_state()

    def __repr__(self) -> str:
        return f"SensorFusionEngine(mode={self._mode}, {self.strategy!r})"


# ===== TRACK MANAGER =====

def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class TrackManager:
    """One ``SensorFusionEngine`` per track id, with stale-track eviction.

    Args:
        trust_model: Shared per-source trust model.
        mode: Fusion key used for every track.
        timeout_ms: A track not fused for longer than this is stale.
        clock: Millisecond clock (injectable for tests).
    """

    def __init__(self, trust_model: SensorTrustModel, mode: str = DEFAULT_MODE,
                 timeout_ms: float = 5000.0,
                 clock: Callable[[], float] = _monotonic_ms,
                 hybrid_alpha: float = DEFAULT_HYBRID_ALPHA,
                 winner_threshold: float = DEFAULT_WINNER_THRESHOLD):
        self.trust = trust_model
        self.mode = normalize_mode(mode)
        self.timeout_ms = timeout_ms
        self.clock = clock
        self._params = {"hybrid_alpha": hybrid_alpha,
                        "winner_threshold": winner_threshold}
        self._engines: Dict[str, SensorFusionEngine] = {}
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def engine(self, track_id: str) -> SensorFusionEngine:
        with self._lock:
            eng = self._engines.get(track_id)
            if eng is None:
                eng = SensorFusionEngine(self.trust, self.mode, **self._params)
                self._engines[track_id] = eng
            return eng

    def fuse(self, track_id: str, observations: Sequence[Observation],
             now_ms: Optional[float] = None) -> np.ndarray:
        est = self.engine(track_id).fuse(observations)
        with self._lock:
            self._last_seen[track_id] = self.clock() if now_ms is None else now_ms
        return est

    def estimate(self, track_id: str) -> Optional[np.ndarray]:
        with self._lock:
            eng = self._engines.get(track_id)
        return eng.latest_estimate() if eng is not None else None

    def set_mode(self, mode: str) -> str:
        key = normalize_mode(mode)
        with self._lock:
            self.mode = key
            engines = list(self._engines.values())
        for eng in engines:
            eng.set_mode(key)
        return key

    def active_tracks(self, now_ms: Optional[float] = None) -> List[str]:
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            return [tid for tid, seen in self._last_seen.items()
                    if now - seen <= self.timeout_ms]

    def cleanup(self, now_ms: Optional[float] = None) -> List[str]:
        """Drop stale tracks; returns the removed ids."""
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            stale = [tid for tid, seen in self._last_seen.items()
                     if now - seen > self.timeout_ms]
            for tid in stale:
                self._engines.pop(tid, None)
                self._last_seen.pop(tid, None)
        return stale

    def remove(self, track_id: str) -> bool:
        with self._lock:
            self._last_seen.pop(track_id, None)
            return self._engines.pop(track_id, None) is not None

    def __len__(self) -> int:
        return len(self._engines)


def group_by_track(observations: Iterable[Observation]) -> Dict[str, List[Observation]]:
    """Split a mixed batch by track, preserving arrival order within each."""
    groups: Dict[str, List[Observation]] = {}
    for obs in observations:
        groups.setdefault(obs.track_key, []).append(obs)
    return groups
