"""SkyShield interception planner.

Greedy nearest-available assignment of idle interceptors to ranked threats.
An agent is eligible when it is registered, IDLE, not damaged and its role
is compatible with the required role (DEFAULT agents match any role).
Distances are Euclidean in the ENU plane; ties go to the lower index.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np
from scipy.spatial.distance import cdist

from .skyshield_priority import ThreatRecord
from .skyshield_swarm import DroneRole, DroneStatus, SwarmManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterceptAssignment:
    threat_id: str
    agent_id: str
    distance: float


class InterceptionPlanner:
    """Chooses interceptors from the swarm registry.

    Usage:
        planner = InterceptionPlanner(swarm)
        idx = planner.select_interceptor(ids, positions, (120, 40), "striker")
    """

    def __init__(self, swarm: SwarmManager):
        self.swarm = swarm

    def _eligible(self, agent_id: str, required: Optional[DroneRole]) -> bool:
        snap = self.swarm.get(agent_id)
        if snap is None or snap.status is not DroneStatus.IDLE:
            return False
        if snap.damaged or snap.busy:
            return False
        return snap.role.compatible_with(required)

    def select_interceptor(self, agent_ids: Sequence[str],
                           agent_positions: Sequence[Sequence[float]],
                           target_position: Optional[Sequence[float]],
                           required_role=None) -> Optional[int]:
        """Index of the nearest eligible agent, or None."""
        if not agent_ids or target_position is None:
            return None
        if len(agent_ids) != len(agent_positions):
            raise ValueError("agent_ids and agent_positions differ in length")
        required = DroneRole.parse(required_role) if required_role is not None else None

        pos = np.asarray([p[:2] for p in agent_positions], dtype=float)
        target = np.asarray(target_position[:2], dtype=float).reshape(1, 2)
        if not np.all(np.isfinite(target)):
            return None
        dists = cdist(pos, target).ravel()

        best, best_d = None, np.inf
        for i, aid in enumerate(agent_ids):
            if not self._eligible(aid, required):
                continue
            if dists[i] < best_d:
                best, best_d = i, dists[i]
        return best

    def nearest_available(self, target_position: Sequence[float], required_role=None,
                          exclude: Iterable[str] = ()) -> Optional[InterceptAssignment]:
        """Nearest eligible registered agent; ``threat_id`` left empty."""
        skip = set(exclude)
        snaps = [a for a in self.swarm.available_agents() if a.agent_id not in skip]
        if not snaps:
            return None
        ids = [a.agent_id for a in snaps]
        idx = self.select_interceptor(ids, [a.position for a in snaps],
                                      target_position, required_role)
        if idx is None:
            return None
        d = float(np.hypot(snaps[idx].position[0] - target_position[0],
                           snaps[idx].position[1] - target_position[1]))
        return InterceptAssignment("", ids[idx], d)

    def plan(self, threats: Sequence[ThreatRecord], required_role=None,
             exclude: Iterable[str] = ()) -> List[InterceptAssignment]:
        """One agent per threat, highest-ranked threat first.

        Nothing is committed; the caller assigns missions from the result.
        """
        used: Set[str] = set(exclude)
        out: List[InterceptAssignment] = []
        for threat in threats:
            if threat.position is None:
                continue
            pick = self.nearest_available(threat.position, required_role, used)
            if pick is None:
                logger.debug("No interceptor left for %s", threat.threat_id)
                break
            used.add(pick.agent_id)
            out.append(InterceptAssignment(threat.threat_id, pick.agent_id, pick.distance))
        return out
