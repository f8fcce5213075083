#!/usr/bin/env python3
"""
SkyShield Demo - Counter-Drone Pipeline Walkthrough
===================================================

Run with:
    python -m skyshield.demo              # All 3 scenarios
    python -m skyshield.demo --scenario 2 # Swarm raid only
    skyshield-demo --config skyshield.yaml --log-level INFO

Scenarios run on a simulated clock (no sleeping):
  1. Asset Approach - one intruder flies straight at a protected asset
  2. Swarm Raid - three intruders, two interceptors (one threat waits)
  3. Radar Dropout - radar goes silent mid-track, fusion falls back to ukf
"""

import argparse
import logging
import math
import sys

import numpy as np

from .skyshield_config import ConfigError, SkyShieldConfig, load_config
from .skyshield_pipeline import ControlPipeline
from .skyshield_types import Observation

DEMO_ZONES = [
    {"id": "NFZ_0", "kind": "no_fly", "center": [0.0, 0.0], "radius": 150.0},
    {"id": "HQ", "kind": "asset", "center": [600.0, 0.0], "radius": 60.0},
]


def _noisy(rng, truth_pos, truth_vel, source_id, t_ms, track_id, sigma=2.0, reliability=None):
    x, y = truth_pos + rng.randn(2) * sigma
    vx, vy = truth_vel + rng.randn(2) * 0.2
    return Observation(t_ms, float(x), float(y), float(vx), float(vy), 80.0,
                       math.atan2(vy, vx), source_id, reliability=reliability,
                       track_id=track_id)


def scenario_asset_approach(rng, n_ticks):
    """Intruder from (1200, 40) heading west toward HQ at 12 m/s."""
    pos, vel = np.array([1200.0, 40.0]), np.array([-12.0, -0.4])
    for k in range(n_ticks):
        t_ms = k * 100.0
        p = pos + vel * k * 0.1
        yield t_ms, [
            _noisy(rng, p, vel, "radar-a", t_ms, "T1"),
            _noisy(rng, p, vel, "acoustic-1", t_ms, "T1", sigma=6.0, reliability=0.6),
        ]


def scenario_swarm_raid(rng, n_ticks):
    """Three intruders converging on the no-fly zone from different sides."""
    starts = {"R1": (400.0, 300.0), "R2": (-350.0, 280.0), "R3": (50.0, -420.0)}
    for k in range(n_ticks):
        t_ms = k * 100.0
        batch = []
        for tid, (sx, sy) in starts.items():
            heading = math.atan2(-sy, -sx)
            vel = np.array([math.cos(heading), math.sin(heading)]) * 15.0
            p = np.array([sx, sy]) + vel * k * 0.1
            batch.append(_noisy(rng, p, vel, "radar-a", t_ms, tid))
        yield t_ms, batch


def scenario_radar_dropout(rng, n_ticks):
    """Circling intruder; radar stops reporting after 40 % of the run."""
    cut = int(n_ticks * 0.4)
    for k in range(n_ticks):
        t_ms = k * 100.0
        ang = k * 0.05
        p = np.array([250.0 * math.cos(ang), 250.0 * math.sin(ang)])
        vel = np.array([-math.sin(ang), math.cos(ang)]) * 12.5
        batch = [_noisy(rng, p, vel, "eo-1", t_ms, "C1", sigma=4.0, reliability=0.9)]
        if k < cut:
            batch.append(_noisy(rng, p, vel, "radar-a", t_ms, "C1"))
        yield t_ms, batch


SCENARIOS = {
    1: ("Asset Approach", scenario_asset_approach,
        [("d1", (600.0, 80.0), "striker"), ("d2", (620.0, -80.0), "default")]),
    2: ("Swarm Raid", scenario_swarm_raid,
        [("d1", (0.0, 0.0), "striker"), ("d2", (10.0, 0.0), "default"),
         ("s1", (0.0, 20.0), "scout")]),
    3: ("Radar Dropout", scenario_radar_dropout,
        [("d1", (0.0, 0.0), "striker")]),
}


def run_scenario(number, config, n_ticks=150, seed=42):
    name, generator, agents = SCENARIOS[number]
    rng = np.random.RandomState(seed)
    clock = {"now": 0.0}
    pipe = ControlPipeline(config, clock=lambda: clock["now"])
    for agent_id, home, role in agents:
        pipe.swarm.register(agent_id, home, role=role)

    print(f"\n{'=' * 64}\n  Scenario {number}: {name}\n{'=' * 64}")
    report = None
    for t_ms, batch in generator(rng, n_ticks):
        clock["now"] = t_ms
        report = pipe.tick(batch, now_ms=t_ms)
        pipe.step_agents(0.1)
        for threat_id, agent_id in report.assignments:
            print(f"  t={t_ms / 1000:6.1f}s  {agent_id} -> {threat_id}")
        if report.tick % 50 == 0:
            tops = ", ".join(f"{r.threat_id}:{r.score:.2f}" for r in report.top_threats) or "-"
            print(f"  t={t_ms / 1000:6.1f}s  mode={report.fusion_mode:8s} threats [{tops}]")

    print("\n  Kill chains:")
    for tid, chain in pipe.kill_chain_snapshot().items():
        print(f"    {tid:4s} {' > '.join(s.name for s in chain)}")
    print("  Agents:")
    for a in pipe.agent_snapshot():
        print(f"    {a.agent_id:4s} {a.status.value:9s} {a.role.value:8s} "
              f"battery={a.battery:5.1f}% target={a.target_id or '-'}")
    pending = pipe.engagement.pending_threats()
    if pending:
        print(f"  Pending: {', '.join(pending)}")
    return pipe, report


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='SkyShield Demo - Counter-Drone Pipeline Walkthrough',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Scenarios:
  1  Asset Approach - straight-line intruder toward a protected asset
  2  Swarm Raid - three intruders vs two interceptors
  3  Radar Dropout - sensor-health fallback of the fusion mode

Examples:
  python -m skyshield.demo              # Run all 3 scenarios
  python -m skyshield.demo --scenario 3 # Radar dropout only
  python -m skyshield.demo --log-level INFO
""")
    parser.add_argument('--scenario', '-s', type=int, default=None,
                        choices=sorted(SCENARIOS),
                        help='Scenario number (default: all)')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='YAML config file (default: built-in demo zones)')
    parser.add_argument('--ticks', '-n', type=int, default=150,
                        help='Ticks per scenario at 10 Hz simulated (default: 150)')
    parser.add_argument('--seed', type=int, default=42)
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level,
                        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s')

    try:
        config = load_config(args.config) if args.config else \
            SkyShieldConfig.from_dict({"zones": DEMO_ZONES, "swarm": {"min_scouts": 0, "min_repair": 0}})
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    numbers = [args.scenario] if args.scenario else sorted(SCENARIOS)
    for number in numbers:
        run_scenario(number, config, n_ticks=args.ticks, seed=args.seed)
    return 0


if __name__ == '__main__':
    sys.exit(main())
