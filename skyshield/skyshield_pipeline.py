"""
SkyShield Control Pipeline
==========================
Assembles every component and runs the per-tick decision pipeline:

    observations
      → trust update + per-track fusion          (TrackManager)
      → behaviour + threat scoring + ranking     (ThreatReasoningEngine, PriorityQueueManager)
      → alert escalation → kill chain / assign   (ThreatAlertEscalator, EngagementManager)
      → pending retries, agent reconciliation
      → periodic role rebalancing                (SwarmManager)
      → sensor-health fallback of fusion mode    (FallbackController)
      → stale-track and stale-threat eviction

A failure while handling one track or one stage is logged, flagged on the
module health board and the tick carries on.

Usage:
    pipe = ControlPipeline(load_config("skyshield.yaml"))
    pipe.swarm.register("d1", (0, 0), role="striker")
    report = pipe.tick(batch)
    report.top_threats, report.assignments

    loop = ControlLoop(pipe, source=radar_feed.poll)
    loop.start()      # control thread at tick_hz + one runner per agent

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from .skyshield_config import SkyShieldConfig
from .skyshield_engagement import EngagementManager
from .skyshield_fusion import TrackManager, group_by_track
from .skyshield_health import FallbackController, ModuleHealthBoard, SensorHealthMonitor
from .skyshield_planner import InterceptionPlanner
from .skyshield_priority import PriorityQueueManager, ThreatRecord
from .skyshield_swarm import AgentRunner, AgentSnapshot, SwarmManager
from .skyshield_threat import (
    IntentEstimator, MotionBehaviorClassifier, ThreatAlertEscalator, ThreatReasoningEngine,
)
from .skyshield_trust import SensorTrustModel
from .skyshield_types import BehaviorType, KillChainStage, Observation
from .skyshield_zones import ZoneManager

logger = logging.getLogger(__name__)

BehaviorHints = Mapping[str, Tuple[str, float]]
ObservationSource = Callable[[], Sequence[Observation]]


def _now_ms() -> float:
    return time.time() * 1000.0


class PersistenceSink(Protocol):
    """Storage collaborator; failures are logged by the pipeline."""

    def record_observations(self, batch: Sequence[Observation]) -> None: ...

    def record_estimate(self, track_id: str, timestamp_ms: float,
                        estimate: np.ndarray) -> None: ...


@dataclass
class TickReport:
    """What one control tick did."""
    tick: int
    timestamp_ms: float
    fused: Dict[str, np.ndarray] = field(default_factory=dict)
    top_threats: List[ThreatRecord] = field(default_factory=list)
    assignments: List[Tuple[str, str]] = field(default_factory=list)
    fusion_mode: str = ""
    failures: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (f"TickReport(#{self.tick}, tracks={len(self.fused)}, "
                f"threats={len(self.top_threats)}, assigned={len(self.assignments)}, "
                f"mode={self.fusion_mode})")


class ControlPipeline:
    """Owns and wires every SkyShield component; no module-level state.

    Args:
        config: Settings (defaults when omitted).
        clock: Millisecond clock shared by every time-based component.
        persistence: Optional storage sink.
    """

    def __init__(self, config: Optional[SkyShieldConfig] = None,
                 clock: Callable[[], float] = _now_ms,
                 persistence: Optional[PersistenceSink] = None):
        cfg = config or SkyShieldConfig()
        self.config = cfg
        self.clock = clock
        self.persistence = persistence

        self.trust = SensorTrustModel(cfg.trust_alpha, cfg.default_trust,
                                      cfg.default_reliability)
        self.tracks = TrackManager(self.trust, cfg.fusion_mode, cfg.track_timeout_ms,
                                   clock, cfg.hybrid_alpha, cfg.winner_threshold)
        self.zones = ZoneManager.from_config(cfg.zones, asset_padding=cfg.asset_padding,
                                             heading_cosine=cfg.heading_cosine)
        self.reasoning = ThreatReasoningEngine(self.zones)
        self.priority = PriorityQueueManager(self.reasoning, clock, cfg.freshness_ms,
                                             cfg.relevance_floor)
        self.swarm = SwarmManager(cfg.low_battery_pct, cfg.battery_drain_per_tick,
                                  cfg.agent_speed, cfg.min_scouts, cfg.min_repair)
        self.planner = InterceptionPlanner(self.swarm)
        self.engagement = EngagementManager(self.swarm, self.planner, cfg.required_role,
                                            position_lookup=self.target_position)
        self.escalator = ThreatAlertEscalator(self.engagement.on_threat_escalated,
                                              cfg.escalation_thresholds)
        self.health = SensorHealthMonitor(cfg.health_warn_ms, cfg.health_critical_ms, clock)
        self.fallback = FallbackController(self.health, self.tracks, self.tracks.mode,
                                           cfg.primary_sources, cfg.secondary_sources)
        self.board = ModuleHealthBoard()

        self._classifiers: Dict[str, MotionBehaviorClassifier] = {}
        self._tick = 0
        self._tick_lock = threading.Lock()

    # ===== TICK =====

    def tick(self, observations: Sequence[Observation],
             behaviors: Optional[BehaviorHints] = None,
             now_ms: Optional[float] = None) -> TickReport:
        """Run one full decision cycle over a batch of observations."""
        with self._tick_lock:
            self._tick += 1
            now = self.clock() if now_ms is None else now_ms
            report = TickReport(self._tick, now)
            engaged_before = self.engagement.engagements()
            batch = list(observations or ())

            if batch:
                self._persist("record_observations", batch)
                self.health.record(batch, now)
                for track_id, obs in group_by_track(batch).items():
                    est = self._process_track(track_id, obs, behaviors, now, report)
                    if est is not None:
                        report.fused[track_id] = est

            self._stage("engagement", report, self._engagement_stage)
            if self.config.rebalance_every > 0 and self._tick % self.config.rebalance_every == 0:
                self._stage("swarm", report, self.swarm.rebalance_roles)
            self._stage("health", report, lambda: self.fallback.heartbeat(now))
            self._stage("priority", report, lambda: self._evict(now))

            report.top_threats = self.priority.top_threats(self.config.max_threats, now)
            report.assignments = [(tid, aid) for aid, tid in self.engagement.engagements().items()
                                  if engaged_before.get(aid) != tid]
            report.fusion_mode = self.tracks.mode
            return report

    def _process_track(self, track_id: str, obs: List[Observation],
                       behaviors: Optional[BehaviorHints], now: float,
                       report: TickReport) -> Optional[np.ndarray]:
        stage = "fusion"
        try:
            est = self.tracks.fuse(track_id, obs, now)
            confidence = self.tracks.engine(track_id).confidence_for(obs)

            stage = "threat"
            classifier = self._classifiers.setdefault(track_id, MotionBehaviorClassifier())
            classifier.add_position(est[0], est[1])
            hint = behaviors.get(track_id) if behaviors else None
            if hint is not None:
                behavior, confidence = BehaviorType.parse(hint[0]), float(hint[1])
            else:
                behavior = classifier.classify()

            stage = "priority"
            record = self.priority.update(track_id, est[0:2], est[2:4], behavior,
                                          confidence, now)
            if record.position is not None and all(map(math.isfinite, record.position)):
                stage = "engagement"
                self.escalator.update(track_id, record.score, record.position)

            self._persist("record_estimate", track_id, now, est)
            return est
        except Exception as exc:
            logger.exception("Track %s failed in %s stage", track_id, stage)
            self.board.mark_unhealthy(stage, f"{track_id}: {exc}")
            report.failures.append(f"{stage}:{track_id}")
            return None

    def _engagement_stage(self) -> None:
        self.engagement.reconcile()
        self.engagement.retry_pending()

    def _evict(self, now: float) -> None:
        for track_id in self.tracks.cleanup(now):
            self._classifiers.pop(track_id, None)
            self.escalator.forget(track_id)
            self.engagement.expire_threat(track_id)
            logger.info("Track %s went stale", track_id)
        self.priority.cleanup(self.config.freshness_ms, now)

    def _stage(self, name: str, report: TickReport, fn: Callable[[], object]) -> None:
        try:
            fn()
        except Exception as exc:
            logger.exception("Stage %s failed", name)
            self.board.mark_unhealthy(name, str(exc))
            report.failures.append(name)

    def _persist(self, method: str, *args) -> None:
        if self.persistence is None:
            return
        try:
            getattr(self.persistence, method)(*args)
        except Exception as exc:
            logger.exception("Persistence %s failed", method)
            self.board.mark_unhealthy("persistence", str(exc))

    # ===== AGENTS =====

    def target_position(self, track_id: str) -> Optional[Tuple[float, float]]:
        est = self.tracks.estimate(track_id)
        if est is None or not (math.isfinite(est[0]) and math.isfinite(est[1])):
            return None
        return (float(est[0]), float(est[1]))

    def step_agents(self, dt: Optional[float] = None) -> None:
        """Step every agent once (single-threaded simulation)."""
        dt = 1.0 / self.config.agent_hz if dt is None else dt
        for snap in self.swarm.agents():
            target = self.target_position(snap.target_id) if snap.target_id else None
            self.swarm.step_agent(snap.agent_id, dt, target)

    # ===== OPERATOR SURFACE =====

    def threat_snapshot(self) -> List[ThreatRecord]:
        return sorted(self.priority.snapshot(), key=lambda r: r.score, reverse=True)

    def agent_snapshot(self) -> List[AgentSnapshot]:
        return self.swarm.agents()

    def kill_chain_snapshot(self) -> Dict[str, Tuple[KillChainStage, ...]]:
        return self.engagement.kill_chain_status()

    def health_snapshot(self) -> Dict:
        return {
            "fusion_mode": self.tracks.mode,
            "sensors": {k: v.value for k, v in self.health.statuses().items()},
            "modules": self.board.report(),
        }

    def manual_override(self, threat_id: str, action: str) -> bool:
        return self.engagement.manual_override(threat_id, action)

    def assign_role(self, agent_id: str, role_name: str) -> bool:
        return self.swarm.assign_role(agent_id, role_name)

    def reset_drone(self, agent_id: str) -> bool:
        self.engagement.release_drone(agent_id)
        return self.swarm.reset_drone(agent_id)

    def cancel_mission(self, agent_id: str) -> bool:
        return self.swarm.cancel_mission(agent_id)

    def abort_mission(self, agent_id: str) -> bool:
        return self.swarm.abort_mission(agent_id)

    def abort_all(self) -> int:
        return self.engagement.abort_all()

    def confirm_engagement(self, threat_id: str) -> bool:
        return self.engagement.confirm_engagement(threat_id)

    # ===== HOT RELOAD =====

    def apply_config(self, cfg: SkyShieldConfig) -> List[str]:
        """Apply a reloaded config to the running components."""
        changed = cfg.changed_fields(self.config)
        if not changed:
            return changed
        logger.info("Applying config changes: %s", ", ".join(changed))
        if "fusion_mode" in changed:
            self.fallback.set_healthy_mode(cfg.fusion_mode)
        if "escalation_thresholds" in changed:
            self.escalator.thresholds = tuple(cfg.escalation_thresholds)
        self.priority.freshness_ms = cfg.freshness_ms
        self.priority.relevance_floor = cfg.relevance_floor
        self.tracks.timeout_ms = cfg.track_timeout_ms
        self.health.warn_ms = cfg.health_warn_ms
        self.health.critical_ms = cfg.health_critical_ms
        self.engagement.required_role = cfg.required_role
        self.swarm.low_battery_pct = cfg.low_battery_pct
        self.swarm.drain_per_tick = cfg.battery_drain_per_tick
        self.swarm.agent_speed = cfg.agent_speed
        self.swarm.min_scouts = cfg.min_scouts
        self.swarm.min_repair = cfg.min_repair
        if {"zones", "asset_padding", "heading_cosine"} & set(changed):
            zones = ZoneManager.from_config(cfg.zones, asset_padding=cfg.asset_padding,
                                            heading_cosine=cfg.heading_cosine)
            self.zones = zones
            self.reasoning.zones = zones
            self.reasoning.intents = IntentEstimator(zones)
        self.config = cfg
        return changed


class ControlLoop:
    """Control thread at ``tick_hz`` plus one ``AgentRunner`` per agent.

    Args:
        pipeline: The pipeline to drive.
        source: Returns the next observation batch (may be empty).
    """

    def __init__(self, pipeline: ControlPipeline, source: ObservationSource):
        self.pipeline = pipeline
        self.source = source
        self.runners: Dict[str, AgentRunner] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[TickReport] = None

    @property
    def period(self) -> float:
        return 1.0 / self.pipeline.config.tick_hz

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._sync_runners()
        self._thread = threading.Thread(target=self._run, daemon=True, name="control-loop")
        self._thread.start()

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        for runner in self.runners.values():
            runner.stop(timeout)
        self.runners.clear()

    def _sync_runners(self) -> None:
        for snap in self.pipeline.swarm.agents():
            if snap.agent_id not in self.runners:
                runner = AgentRunner(self.pipeline.swarm, snap.agent_id,
                                     self.pipeline.target_position,
                                     self.pipeline.config.agent_hz)
                self.runners[snap.agent_id] = runner
                runner.start()

    def run_once(self) -> TickReport:
        try:
            batch = self.source()
        except Exception:
            logger.exception("Observation source failed; ticking with empty batch")
            batch = []
        self.last_report = self.pipeline.tick(batch)
        self._sync_runners()
        return self.last_report

    def _run(self) -> None:
        logger.info("Control loop started at %.1f Hz", self.pipeline.config.tick_hz)
        next_tick = time.monotonic()
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Control tick failed")
            next_tick += self.period
            self._stop.wait(max(0.0, next_tick - time.monotonic()))
        logger.info("Control loop stopped")
