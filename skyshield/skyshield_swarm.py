"""
SkyShield Swarm Module
======================
Interceptor agent records, their mission state machine and the swarm
registry that owns them.

Agent state machine:

    IDLE ──assign──▶ ENGAGING ──battery < 15 % / cancel──▶ RETURNING
      ▲                 │  ▲                                  │
      │            pause│  │resume                     at home│
      │                 ▼  │                                  ▼
      │               PAUSED                              CHARGING
      └──────────────── recharge complete / reset ◀──────────┘

    any ──unregister / link loss──▶ LOST   (terminal until re-registered)

RETURNING is sticky: further battery updates never leave it; only reaching
home, a recharge or a reset does.

Every agent guards its own record with a lock; the IDLE -> ENGAGING
check-and-set happens under that lock, so two planners can never hand the
same agent two missions.

License: AGPL-3.0-or-later
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

LOW_BATTERY_PCT = 15.0
DRAIN_PER_TICK = 0.05
CHARGE_PER_TICK = 0.5
ARRIVAL_RADIUS = 1.0
AGENT_SPEED = 15.0


# ===== ENUMS =====

class DroneStatus(Enum):
    IDLE = "idle"
    ENGAGING = "engaging"
    RETURNING = "returning"
    CHARGING = "charging"
    PAUSED = "paused"
    LOST = "lost"


class DroneRole(Enum):
    SCOUT = "scout"
    ATTACKER = "attacker"
    RELAY = "relay"
    DEFENDER = "defender"
    REPAIR = "repair"
    STRIKER = "striker"
    FLANK = "flank"
    DEFAULT = "default"

    @classmethod
    def parse(cls, name) -> Optional["DroneRole"]:
        """Role by name (case-insensitive, a few legacy aliases); None if unknown."""
        if isinstance(name, cls):
            return name
        if name is None:
            return None
        key = str(name).strip().lower()
        key = _ROLE_ALIASES.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        return None

    def compatible_with(self, required: Optional["DroneRole"]) -> bool:
        """DEFAULT agents and an absent requirement match anything."""
        return required is None or self is DroneRole.DEFAULT \
            or required is DroneRole.DEFAULT or self is required


_ROLE_ALIASES = {
    "bee_scout": "scout",
    "repair_unit": "repair",
    "kamikaze": "striker",
    "unknown": "default",
}

AIRBORNE = (DroneStatus.ENGAGING, DroneStatus.RETURNING, DroneStatus.PAUSED)


# ===== SNAPSHOT =====

@dataclass(frozen=True)
class AgentSnapshot:
    """Read-only view of one agent, safe to hand to other threads."""
    agent_id: str
    position: Tuple[float, float]
    velocity: Tuple[float, float]
    battery: float
    role: DroneRole
    busy: bool
    damaged: bool
    target_id: Optional[str]
    mission_id: Optional[str]
    route: Tuple[Tuple[float, float], ...]
    status: DroneStatus
    home: Tuple[float, float]

    @property
    def available(self) -> bool:
        return self.status is DroneStatus.IDLE and not self.busy and not self.damaged

    def to_dict(self) -> Dict:
        return {
            "agent_id": self.agent_id,
            "position": self.position,
            "battery": round(self.battery, 2),
            "role": self.role.value,
            "status": self.status.value,
            "target_id": self.target_id,
            "mission_id": self.mission_id,
            "damaged": self.damaged,
        }


# ===== AGENT =====

class DroneAgent:
    """Mutable agent record. Owned by ``SwarmManager``; never shared raw."""

    def __init__(self, agent_id: str, position: Sequence[float],
                 role: DroneRole = DroneRole.DEFAULT, battery: float = 100.0,
                 home: Optional[Sequence[float]] = None,
                 low_battery_pct: float = LOW_BATTERY_PCT):
        self.agent_id = agent_id
        self.position = np.array(position[:2], dtype=float)
        self.velocity = np.zeros(2)
        self.battery = min(100.0, max(0.0, float(battery)))
        self.role = role
        self.busy = False
        self.damaged = False
        self.target_id: Optional[str] = None
        self.mission_id: Optional[str] = None
        self.route: List[Tuple[float, float]] = []
        self.status = DroneStatus.IDLE
        self.home = np.array((home if home is not None else position)[:2], dtype=float)
        self.low_battery_pct = low_battery_pct
        self._resume_status = DroneStatus.IDLE
        self.lock = threading.Lock()

    # -- transitions (caller holds ``lock``) --

    def _clear_mission(self) -> None:
        self.busy = False
        self.target_id = None
        self.mission_id = None
        self.route = []

    def _set_battery(self, level: float) -> bool:
        """Store a clamped level; True when it forced a return to base."""
        self.battery = min(100.0, max(0.0, float(level)))
        if self.status is DroneStatus.ENGAGING and self.battery < self.low_battery_pct:
            self.status = DroneStatus.RETURNING
            self.busy = False
            self.target_id = None
            logger.info("Agent %s low battery (%.1f%%), returning to base",
                        self.agent_id, self.battery)
            return True
        return False

    def _step(self, dt: float, goal: Optional[np.ndarray], speed: float,
              drain: float) -> None:
        if self.status is DroneStatus.CHARGING:
            self.battery = min(100.0, self.battery + CHARGE_PER_TICK)
            if self.battery >= 100.0:
                self.status = DroneStatus.IDLE
                logger.info("Agent %s recharged", self.agent_id)
            return
        if self.status not in AIRBORNE:
            return
        if self.status is DroneStatus.RETURNING:
            goal = self.home
        if self.status is DroneStatus.PAUSED or goal is None or not np.all(np.isfinite(goal)):
            self.velocity = np.zeros(2)
        else:
            delta = goal - self.position
            dist = float(np.linalg.norm(delta))
            step = min(speed * dt, dist)
            self.velocity = delta / dist * speed if dist > 0 else np.zeros(2)
            if dist > 0:
                self.position = self.position + delta / dist * step
            if self.status is DroneStatus.RETURNING and dist - step <= ARRIVAL_RADIUS:
                self.position = self.home.copy()
                self.velocity = np.zeros(2)
                self.status = DroneStatus.CHARGING
                logger.info("Agent %s landed at home, charging", self.agent_id)
                return
        self._set_battery(self.battery - drain)

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            agent_id=self.agent_id,
            position=(float(self.position[0]), float(self.position[1])),
            velocity=(float(self.velocity[0]), float(self.velocity[1])),
            battery=self.battery,
            role=self.role,
            busy=self.busy,
            damaged=self.damaged,
            target_id=self.target_id,
            mission_id=self.mission_id,
            route=tuple(self.route),
            status=self.status,
            home=(float(self.home[0]), float(self.home[1])),
        )

    def __repr__(self) -> str:
        return (f"DroneAgent({self.agent_id}, {self.status.value}, "
                f"{self.role.value}, battery={self.battery:.1f})")


# ===== SWARM MANAGER =====

class SwarmManager:
    """
    Registry and command surface for all interceptor agents.

    Unknown agent ids never raise: commands return False, queries None.

    Usage:
        swarm = SwarmManager()
        swarm.register("d1", (0, 0), role="striker")
        swarm.assign_mission("d1", "t7")
        swarm.update_battery("d1", 14.0)   # -> RETURNING
    """

    def __init__(self, low_battery_pct: float = LOW_BATTERY_PCT,
                 drain_per_tick: float = DRAIN_PER_TICK,
                 agent_speed: float = AGENT_SPEED,
                 min_scouts: int = 2, min_repair: int = 1):
        self.low_battery_pct = low_battery_pct
        self.drain_per_tick = drain_per_tick
        self.agent_speed = agent_speed
        self.min_scouts = min_scouts
        self.min_repair = min_repair
        self._agents: Dict[str, DroneAgent] = {}
        self._lock = threading.Lock()

    def _agent(self, agent_id: str) -> Optional[DroneAgent]:
        with self._lock:
            return self._agents.get(agent_id)

    def _all(self) -> List[DroneAgent]:
        with self._lock:
            return list(self._agents.values())

    # -- registry --

    def register(self, agent_id: str, position: Sequence[float], role="default",
                 battery: float = 100.0,
                 home: Optional[Sequence[float]] = None) -> AgentSnapshot:
        """Add an agent (or bring a LOST one back as a fresh IDLE record)."""
        parsed = DroneRole.parse(role)
        if parsed is None:
            logger.warning("Unknown role %r for agent %s; using default", role, agent_id)
            parsed = DroneRole.DEFAULT
        with self._lock:
            existing = self._agents.get(agent_id)
            if existing is not None and existing.status is not DroneStatus.LOST:
                return existing.snapshot()
            agent = DroneAgent(agent_id, position, parsed, battery, home,
                               self.low_battery_pct)
            self._agents[agent_id] = agent
        logger.info("Registered agent %s (%s)", agent_id, parsed.value)
        return agent.snapshot()

    def unregister(self, agent_id: str) -> bool:
        """Mark an agent LOST; its record stays for the operator view."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            agent.status = DroneStatus.LOST
            agent._clear_mission()
            agent.velocity = np.zeros(2)
        logger.warning("Agent %s lost", agent_id)
        return True

    def get(self, agent_id: str) -> Optional[AgentSnapshot]:
        agent = self._agent(agent_id)
        if agent is None:
            return None
        with agent.lock:
            return agent.snapshot()

    def agents(self) -> List[AgentSnapshot]:
        out = []
        for agent in self._all():
            with agent.lock:
                out.append(agent.snapshot())
        return out

    def available_agents(self) -> List[AgentSnapshot]:
        return [a for a in self.agents() if a.available]

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    # -- missions --

    def assign_mission(self, agent_id: str, target_id: str,
                       mission_id: Optional[str] = None,
                       route: Sequence[Tuple[float, float]] = ()) -> bool:
        """Atomic IDLE -> ENGAGING. False if the agent is unknown or not free."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status is not DroneStatus.IDLE or agent.busy or agent.damaged:
                return False
            agent.status = DroneStatus.ENGAGING
            agent.busy = True
            agent.target_id = target_id
            agent.mission_id = mission_id or f"intercept_{target_id}"
            agent.route = [tuple(p) for p in route]
        logger.info("Agent %s assigned to %s", agent_id, target_id)
        return True

    def release_agent(self, agent_id: str) -> bool:
        """Drop the mission and return the agent to IDLE (LOST stays LOST)."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status is DroneStatus.LOST:
                return False
            agent._clear_mission()
            if agent.status in (DroneStatus.ENGAGING, DroneStatus.PAUSED):
                agent.status = DroneStatus.IDLE
        return True

    def cancel_mission(self, agent_id: str) -> bool:
        """Drop the mission and fly home."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status not in (DroneStatus.ENGAGING, DroneStatus.PAUSED):
                return False
            agent._clear_mission()
            agent.status = DroneStatus.RETURNING
        logger.info("Agent %s mission cancelled, returning", agent_id)
        return True

    def abort_mission(self, agent_id: str) -> bool:
        """Immediate stop: mission cleared, agent IDLE where it is."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status in (DroneStatus.IDLE, DroneStatus.LOST):
                return False
            agent._clear_mission()
            agent.status = DroneStatus.IDLE
            agent.velocity = np.zeros(2)
        logger.info("Agent %s mission aborted", agent_id)
        return True

    def return_to_base(self, agent_id: str) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status is not DroneStatus.ENGAGING:
                return False
            agent.status = DroneStatus.RETURNING
            agent.busy = False
            agent.target_id = None
        return True

    def pause(self, agent_id: str) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status not in (DroneStatus.IDLE, DroneStatus.ENGAGING):
                return False
            agent._resume_status = agent.status
            agent.status = DroneStatus.PAUSED
            agent.velocity = np.zeros(2)
        return True

    def resume(self, agent_id: str) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status is not DroneStatus.PAUSED:
                return False
            agent.status = agent._resume_status
        return True

    # -- battery / maintenance --

    def update_battery(self, agent_id: str, level: float) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            agent._set_battery(level)
        return True

    def drain_all(self, amount: Optional[float] = None) -> List[str]:
        """Drain every airborne agent once; returns ids forced to return."""
        amount = self.drain_per_tick if amount is None else amount
        returned = []
        for agent in self._all():
            with agent.lock:
                if agent.status in AIRBORNE and agent._set_battery(agent.battery - amount):
                    returned.append(agent.agent_id)
        return returned

    def complete_recharge(self, agent_id: str) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status not in (DroneStatus.RETURNING, DroneStatus.CHARGING):
                return False
            agent.battery = 100.0
            agent.status = DroneStatus.IDLE
            agent._clear_mission()
        return True

    def recharge_swarm(self) -> int:
        return sum(self.complete_recharge(a.agent_id) for a in self.agents())

    def mark_damaged(self, agent_id: str, damaged: bool = True) -> bool:
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            agent.damaged = damaged
        return True

    def reset_drone(self, agent_id: str) -> bool:
        """Factory state: IDLE, default role, full battery, no mission or damage."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            if agent.status is DroneStatus.LOST:
                return False
            agent._clear_mission()
            agent.status = DroneStatus.IDLE
            agent.role = DroneRole.DEFAULT
            agent.damaged = False
            agent.battery = 100.0
            agent.velocity = np.zeros(2)
        logger.info("Agent %s reset", agent_id)
        return True

    # -- roles --

    def assign_role(self, agent_id: str, role_name) -> bool:
        role = DroneRole.parse(role_name)
        if role is None:
            logger.warning("Unknown role name %r", role_name)
            return False
        agent = self._agent(agent_id)
        if agent is None:
            return False
        with agent.lock:
            agent.role = role
        return True

    def rebalance_roles(self) -> Dict[str, DroneRole]:
        """Keep at least ``min_scouts`` scouts and ``min_repair`` repair units.

        Existing scouts and repair units are never reassigned. Only healthy,
        free agents are converted, in registration order. Returns the
        changes made.
        """
        healthy = [a for a in self.agents()
                   if not a.damaged and a.status is not DroneStatus.LOST]
        scouts = sum(a.role is DroneRole.SCOUT for a in healthy)
        repair = sum(a.role is DroneRole.REPAIR for a in healthy)
        candidates = [a for a in healthy if a.available
                      and a.role not in (DroneRole.SCOUT, DroneRole.REPAIR)]

        changes: Dict[str, DroneRole] = {}
        for snap in candidates:
            if scouts < self.min_scouts:
                new_role = DroneRole.SCOUT
            elif repair < self.min_repair:
                new_role = DroneRole.REPAIR
            else:
                break
            agent = self._agent(snap.agent_id)
            with agent.lock:
                if agent.status is not DroneStatus.IDLE or agent.busy or agent.damaged:
                    continue
                agent.role = new_role
            changes[snap.agent_id] = new_role
            if new_role is DroneRole.SCOUT:
                scouts += 1
            else:
                repair += 1
        if changes:
            logger.info("Rebalanced roles: %s",
                        {k: v.value for k, v in changes.items()})
        return changes

    def elect_leader(self) -> Optional[str]:
        """First free healthy agent in registration order, else any healthy one."""
        snaps = self.agents()
        for snap in snaps:
            if snap.available:
                return snap.agent_id
        for snap in snaps:
            if not snap.damaged and snap.status is not DroneStatus.LOST:
                return snap.agent_id
        return None

    # -- motion --

    def step_agent(self, agent_id: str, dt: float,
                   target_position: Optional[Sequence[float]] = None) -> bool:
        """One agent tick: navigate toward target (or home) and drain battery."""
        agent = self._agent(agent_id)
        if agent is None:
            return False
        goal = None if target_position is None \
            else np.asarray(target_position[:2], dtype=float)
        with agent.lock:
            agent._step(dt, goal, self.agent_speed, self.drain_per_tick)
        return True


# ===== PER-AGENT RUNNER =====

class AgentRunner:
    """Fixed-rate daemon thread that steps one agent.

    Args:
        swarm: Owning swarm manager.
        agent_id: Agent to step.
        target_lookup: ``track_id -> estimate or None``; reads the published
            fused estimate of the agent's target.
        hz: Step rate.
    """

    def __init__(self, swarm: SwarmManager, agent_id: str,
                 target_lookup: Callable[[str], Optional[np.ndarray]],
                 hz: float = 50.0):
        self.swarm = swarm
        self.agent_id = agent_id
        self.target_lookup = target_lookup
        self.period = 1.0 / hz
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name=f"agent-{self.agent_id}")
        self._thread.start()

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def step_once(self) -> None:
        snap = self.swarm.get(self.agent_id)
        if snap is None:
            return
        target = None
        if snap.target_id is not None:
            est = self.target_lookup(snap.target_id)
            if est is not None and math.isfinite(est[0]) and math.isfinite(est[1]):
                target = est[:2]
        self.swarm.step_agent(self.agent_id, self.period, target)
        self.ticks += 1

    def _run(self) -> None:
        logger.info("Agent runner %s started at %.1f Hz", self.agent_id, 1.0 / self.period)
        next_tick = time.monotonic()
        while not self._stop.is_set():
            try:
                self.step_once()
            except Exception:
                logger.exception("Agent runner %s step failed", self.agent_id)
            next_tick += self.period
            self._stop.wait(max(0.0, next_tick - time.monotonic()))
        logger.info("Agent runner %s stopped", self.agent_id)
