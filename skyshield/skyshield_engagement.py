"""
SkyShield Engagement Module
===========================
Kill-chain bookkeeping and interceptor commitment per threat.

Kill chain (append-only, always a prefix of):

    DETECT → CLASSIFY → TRACK → DECIDE → ENGAGE → CONFIRM

Escalation handling:
  - any level change            : DETECT, CLASSIFY
  - change to CRITICAL          : TRACK, then try to commit an interceptor
  - commitment succeeded        : DECIDE, ENGAGE
  - no eligible interceptor     : chain stays at TRACK, threat goes pending
                                  and ``retry_pending`` tries again each tick

An agent enters the engaged set only after the swarm accepted the mission.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .skyshield_planner import InterceptionPlanner
from .skyshield_swarm import DroneStatus, SwarmManager
from .skyshield_types import KILL_CHAIN, KillChainStage, ThreatLevel

logger = logging.getLogger(__name__)

OVERRIDE_ACTIONS = ("track", "neutralize", "ignore")

PositionLookup = Callable[[str], Optional[Sequence[float]]]


class EngagementManager:
    """
    Owns kill chains, the engaged-agent set and pending engagements.

    Args:
        swarm: Agent registry; missions are committed through it.
        planner: Interceptor selection.
        required_role: Role requested from the planner (DEFAULT agents match).
        position_lookup: Optional ``threat_id -> (x, y)`` for the freshest
            known position when retrying.

    Usage:
        em = EngagementManager(swarm, InterceptionPlanner(swarm))
        em.on_threat_escalated("t1", ThreatLevel.THREAT, ThreatLevel.CRITICAL, (50, 0))
        em.kill_chain_status()["t1"]   # (..., DECIDE, ENGAGE) if an agent was free
    """

    def __init__(self, swarm: SwarmManager, planner: InterceptionPlanner,
                 required_role: Optional[str] = "striker",
                 position_lookup: Optional[PositionLookup] = None):
        self.swarm = swarm
        self.planner = planner
        self.required_role = required_role
        self.position_lookup = position_lookup
        self._chains: Dict[str, List[KillChainStage]] = {}
        self._engaged: Dict[str, str] = {}          # agent_id -> threat_id
        self._pending: Dict[str, Optional[Tuple[float, float]]] = {}
        self._ignored: Set[str] = set()
        self._positions: Dict[str, Tuple[float, float]] = {}
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    # ===== KILL CHAIN =====

    def _advance(self, threat_id: str, *stages: KillChainStage) -> None:
        """Append stages that extend the prefix; anything else is ignored."""
        with self._lock:
            chain = self._chains.setdefault(threat_id, [])
            for stage in stages:
                if len(chain) < len(KILL_CHAIN) and KILL_CHAIN[len(chain)] is stage:
                    chain.append(stage)

    def _last_stage(self, threat_id: str) -> Optional[KillChainStage]:
        with self._lock:
            chain = self._chains.get(threat_id)
            return chain[-1] if chain else None

    def _remember(self, threat_id: str, position) -> None:
        if position is not None:
            with self._lock:
                self._positions[threat_id] = (float(position[0]), float(position[1]))

    def _position_of(self, threat_id: str) -> Optional[Tuple[float, float]]:
        """Live position from the lookup when one is wired, else the last seen."""
        if self.position_lookup is not None:
            pos = self.position_lookup(threat_id)
            return None if pos is None else (float(pos[0]), float(pos[1]))
        with self._lock:
            return self._positions.get(threat_id)

    def _requeue(self, threat_id: str) -> bool:
        """Put an unconfirmed, not ignored threat back on pending (caller holds lock)."""
        chain = self._chains.get(threat_id)
        if chain is None or threat_id in self._ignored or KillChainStage.CONFIRM in chain:
            return False
        self._pending[threat_id] = self._positions.get(threat_id)
        return True

    def _threat_agent(self, threat_id: str) -> Optional[str]:
        with self._lock:
            for agent_id, tid in self._engaged.items():
                if tid == threat_id:
                    return agent_id
        return None

    # ===== ESCALATION =====

    def on_threat_escalated(self, threat_id: str, previous: ThreatLevel,
                            level: ThreatLevel, position=None) -> None:
        logger.info("Engagement: %s escalated %s -> %s", threat_id,
                    previous.name, level.name)
        self._remember(threat_id, position)
        self._advance(threat_id, KillChainStage.DETECT, KillChainStage.CLASSIFY)
        if level is ThreatLevel.CRITICAL:
            self._advance(threat_id, KillChainStage.TRACK)
            self._try_engage(threat_id)

    def _try_engage(self, threat_id: str) -> Optional[str]:
        with self._lock:
            if threat_id in self._ignored:
                return None
        agent_id = self.engage_target(threat_id, self._position_of(threat_id))
        with self._lock:
            if agent_id is None:
                if threat_id not in self._pending:
                    logger.warning("No interceptor available for %s; pending", threat_id)
                self._pending[threat_id] = self._positions.get(threat_id)
            else:
                self._pending.pop(threat_id, None)
        if agent_id is not None:
            self._advance(threat_id, KillChainStage.DECIDE, KillChainStage.ENGAGE)
        return agent_id

    def engage_target(self, threat_id: str, position) -> Optional[str]:
        """Commit the nearest eligible interceptor to a threat.

        Returns the agent id, the already committed agent if there is one,
        or None when nothing eligible is free.
        """
        if position is None:
            return None
        with self._lock:
            if threat_id in self._ignored or threat_id in self._in_flight:
                return None
            for agent_id, tid in self._engaged.items():
                if tid == threat_id:
                    return agent_id
            busy = set(self._engaged)
            self._in_flight.add(threat_id)
        try:
            self._remember(threat_id, position)
            candidates = [a for a in self.swarm.available_agents() if a.agent_id not in busy]
            while candidates:
                ids = [a.agent_id for a in candidates]
                idx = self.planner.select_interceptor(
                    ids, [a.position for a in candidates], position, self.required_role)
                if idx is None:
                    return None
                agent_id = ids[idx]
                if self.swarm.assign_mission(agent_id, threat_id, f"M-{threat_id}"):
                    with self._lock:
                        self._engaged[agent_id] = threat_id
                    logger.info("Target %s engaged by %s", threat_id, agent_id)
                    return agent_id
                candidates.pop(idx)
            return None
        finally:
            with self._lock:
                self._in_flight.discard(threat_id)

    def retry_pending(self) -> List[Tuple[str, str]]:
        """Retry every pending threat; returns (threat_id, agent_id) commitments."""
        with self._lock:
            pending = list(self._pending)
        done = []
        for threat_id in pending:
            agent_id = self._try_engage(threat_id)
            if agent_id is not None:
                done.append((threat_id, agent_id))
        return done

    def reconcile(self) -> List[str]:
        """Drop engaged agents the swarm no longer flies against their threat.

        Their unconfirmed threats go back to pending. Returns released ids.
        """
        with self._lock:
            engaged = list(self._engaged.items())
        released = []
        for agent_id, threat_id in engaged:
            snap = self.swarm.get(agent_id)
            if snap is not None and snap.target_id == threat_id \
                    and snap.status in (DroneStatus.ENGAGING, DroneStatus.PAUSED):
                continue
            with self._lock:
                self._engaged.pop(agent_id, None)
                self._requeue(threat_id)
            released.append(agent_id)
            logger.info("Agent %s left %s; threat back to pending", agent_id, threat_id)
        return released

    # ===== COMMANDS =====

    def confirm_engagement(self, threat_id: str) -> bool:
        """Append CONFIRM (only right after ENGAGE) and send the interceptor home."""
        if self._last_stage(threat_id) is not KillChainStage.ENGAGE:
            return False
        self._advance(threat_id, KillChainStage.CONFIRM)
        agent_id = self._threat_agent(threat_id)
        if agent_id is not None:
            with self._lock:
                self._engaged.pop(agent_id, None)
            self.swarm.cancel_mission(agent_id)
        logger.info("Threat %s confirmed neutralized", threat_id)
        return True

    def release_drone(self, agent_id: str) -> bool:
        """Free an agent; its unconfirmed threat goes back to pending."""
        with self._lock:
            threat_id = self._engaged.pop(agent_id, None)
            was_engaged = threat_id is not None
            if was_engaged:
                self._requeue(threat_id)
        return self.swarm.release_agent(agent_id) or was_engaged

    def abort_all(self) -> int:
        """Release every engaged agent to IDLE; kill-chain history is kept."""
        with self._lock:
            agents = list(self._engaged)
            self._engaged.clear()
            self._pending.clear()
        for agent_id in agents:
            self.swarm.release_agent(agent_id)
        if agents:
            logger.warning("Abort all: released %d agents", len(agents))
        return len(agents)

    def expire_threat(self, threat_id: str) -> bool:
        """Forget a threat whose track went stale; kill-chain history is kept.

        Drops it from pending and position memory and recalls its interceptor.
        """
        agent_id = self._threat_agent(threat_id)
        with self._lock:
            known = threat_id in self._pending or threat_id in self._positions
            self._pending.pop(threat_id, None)
            self._positions.pop(threat_id, None)
            if agent_id is not None:
                self._engaged.pop(agent_id, None)
        if agent_id is not None:
            self.swarm.cancel_mission(agent_id)
            logger.info("Threat %s expired; recalled %s", threat_id, agent_id)
        return known or agent_id is not None

    def clear_threat(self, threat_id: str) -> bool:
        agent_id = self._threat_agent(threat_id)
        with self._lock:
            known = self._chains.pop(threat_id, None) is not None
            self._pending.pop(threat_id, None)
            self._ignored.discard(threat_id)
            self._positions.pop(threat_id, None)
            if agent_id is not None:
                self._engaged.pop(agent_id, None)
        if agent_id is not None:
            self.swarm.cancel_mission(agent_id)
        return known or agent_id is not None

    def manual_override(self, threat_id: str, action: str) -> bool:
        """Operator decision: track | neutralize | ignore."""
        key = (action or "").strip().lower()
        if key not in OVERRIDE_ACTIONS:
            logger.warning("Unknown override action %r for %s", action, threat_id)
            return False
        logger.warning("Manual override: %s -> %s", key, threat_id)

        if key == "ignore":
            agent_id = self._threat_agent(threat_id)
            with self._lock:
                self._ignored.add(threat_id)
                self._pending.pop(threat_id, None)
                if agent_id is not None:
                    self._engaged.pop(agent_id, None)
            if agent_id is not None:
                self.swarm.cancel_mission(agent_id)
            return True

        with self._lock:
            self._ignored.discard(threat_id)
        self._advance(threat_id, KillChainStage.DETECT, KillChainStage.CLASSIFY,
                      KillChainStage.TRACK)
        if key == "neutralize":
            self._try_engage(threat_id)
        return True

    # ===== QUERIES =====

    def is_drone_engaged(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._engaged

    def engaged_agents(self) -> Set[str]:
        with self._lock:
            return set(self._engaged)

    def engagements(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._engaged)

    def pending_threats(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def is_ignored(self, threat_id: str) -> bool:
        with self._lock:
            return threat_id in self._ignored

    def kill_chain_status(self) -> Dict[str, Tuple[KillChainStage, ...]]:
        with self._lock:
            return {tid: tuple(chain) for tid, chain in self._chains.items()}

    def active_threat_statuses(self) -> Dict[str, str]:
        """Latest stage name per threat ("IGNORED" / "UNKNOWN" where apt)."""
        with self._lock:
            out = {}
            for tid, chain in self._chains.items():
                if tid in self._ignored:
                    out[tid] = "IGNORED"
                else:
                    out[tid] = chain[-1].name if chain else "UNKNOWN"
            return out
