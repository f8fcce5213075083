"""Tests for SkyShield sensor health, configuration and the control pipeline.

pytest tests/test_skyshield_pipeline.py -v
"""

import logging
import sys, os
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from skyshield.skyshield_types import KILL_CHAIN, KillChainStage, Observation
from skyshield.skyshield_health import (
    FallbackController, HealthStatus, ModuleHealthBoard, SensorHealthMonitor,
)
from skyshield.skyshield_config import ConfigError, ConfigWatcher, SkyShieldConfig, load_config
from skyshield.skyshield_pipeline import ControlLoop, ControlPipeline
from skyshield.skyshield_swarm import DroneStatus
from skyshield import demo


NFZ = [{"id": "NFZ", "kind": "no_fly", "center": [0, 0], "radius": 200}]


def obs(x, y, source="radar-a", track="T1", t=0.0):
    return Observation(t, x, y, 0.0, 0.0, 50.0, 0.0, source, track_id=track)


def make_config(**extra):
    data = {"zones": NFZ, "swarm": {"min_scouts": 0, "min_repair": 0}}
    data.update(extra)
    return SkyShieldConfig.from_dict(data)


@pytest.fixture
def pipe():
    p = ControlPipeline(make_config(), clock=lambda: 0.0)
    p.swarm.register("d1", (100.0, 0.0), role="striker")
    return p


# ============================================================
# SENSOR HEALTH
# ============================================================

class TestSensorHealthMonitor:

    def test_freshness_thresholds(self):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        mon.heartbeat("radar-a", 0.0)
        assert mon.update(1999)["radar-a"] is HealthStatus.OK
        assert mon.update(2000)["radar-a"] is HealthStatus.WARNING
        assert mon.update(4999)["radar-a"] is HealthStatus.WARNING
        assert mon.update(5000)["radar-a"] is HealthStatus.CRITICAL

    def test_never_heard_is_critical(self):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        mon.register("eo-1")
        assert mon.update(0)["eo-1"] is HealthStatus.CRITICAL
        assert mon.status("nobody") is HealthStatus.CRITICAL

    def test_record_batch(self):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        mon.record([obs(0, 0, "radar-a"), obs(0, 0, "acoustic-1")], now_ms=100)
        assert sorted(mon.sources()) == ["acoustic-1", "radar-a"]
        assert all(s is HealthStatus.OK for s in mon.update(200).values())


class _ModeRecorder:

    def __init__(self):
        self.modes = []

    def set_mode(self, mode):
        self.modes.append(mode)
        return mode


class TestFallbackController:

    def test_mode_follows_group_health(self, caplog):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        target = _ModeRecorder()
        fb = FallbackController(mon, target, healthy_mode="kalman")
        mon.heartbeat("Radar-A", 0.0)
        mon.heartbeat("acoustic-1", 0.0)
        assert fb.heartbeat(1000) == "kalman"
        mon.heartbeat("acoustic-1", 5500)
        with caplog.at_level(logging.WARNING):
            assert fb.heartbeat(6000) == "ukf"
        assert "fallback" in caplog.text
        assert fb.heartbeat(12000) == "hybrid"
        mon.heartbeat("Radar-A", 12000)
        assert fb.heartbeat(12001) == "kalman"
        assert target.modes == ["ukf", "hybrid", "kalman"]

    def test_empty_group_is_not_down(self):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        fb = FallbackController(mon, _ModeRecorder(), healthy_mode="multi")
        assert fb.heartbeat(10_000) == "multi"

    def test_set_healthy_mode(self):
        mon = SensorHealthMonitor(clock=lambda: 0.0)
        target = _ModeRecorder()
        fb = FallbackController(mon, target, healthy_mode="hybrid")
        fb.set_healthy_mode("rules")
        assert target.modes == ["rules"]
        assert fb.heartbeat(0) == "rules"


class TestModuleHealthBoard:

    def test_flags(self):
        board = ModuleHealthBoard()
        assert board.all_healthy()
        board.mark_unhealthy("fusion", "boom")
        board.mark_unhealthy("fusion", "boom again")
        assert not board.is_healthy("fusion")
        assert board.report()["fusion"] == {"healthy": False, "detail": "boom again", "failures": 2}
        board.mark_healthy("fusion")
        assert board.all_healthy()
        assert not board.is_healthy("radar")


# ============================================================
# CONFIG
# ============================================================

class TestConfig:

    def test_defaults(self):
        cfg = load_config(None)
        assert cfg.fusion_mode == "hybrid"
        assert cfg.tick_hz == 30.0
        assert cfg.escalation_thresholds == (0.2, 0.4, 0.6)
        assert cfg.primary_sources == ["radar"]

    def test_nested_sections(self):
        cfg = SkyShieldConfig.from_dict({
            "fusion": {"mode": "ukf", "hybrid_alpha": 0.5},
            "agent": {"hz": 20, "low_battery_pct": 20},
            "health": {"warn_ms": 1000, "primary_sources": "radar"},
            "threat": {"escalation_thresholds": [0.1, 0.3, 0.5]},
        })
        assert cfg.fusion_mode == "ukf"
        assert cfg.hybrid_alpha == 0.5
        assert cfg.agent_hz == 20.0
        assert cfg.low_battery_pct == 20.0
        assert cfg.health_warn_ms == 1000.0
        assert cfg.primary_sources == ["radar"]
        assert cfg.escalation_thresholds == (0.1, 0.3, 0.5)

    def test_unknown_keys_warn(self, caplog):
        with caplog.at_level(logging.WARNING):
            cfg = SkyShieldConfig.from_dict({"bogus": 1, "fusion": {"nope": 2}})
        assert "Unknown config key bogus" in caplog.text
        assert "fusion.nope" in caplog.text
        assert cfg == SkyShieldConfig()

    def test_bad_values_rejected(self, caplog):
        with caplog.at_level(logging.WARNING):
            cfg = SkyShieldConfig.from_dict({
                "tick_hz": -5,
                "max_threats": "many",
                "escalation_thresholds": [0.5, 0.2, 0.9],
            })
        assert cfg.tick_hz == 30.0
        assert cfg.max_threats == 5
        assert cfg.escalation_thresholds == (0.2, 0.4, 0.6)
        assert "rejected" in caplog.text

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "skyshield.yaml"
        path.write_text(
            "tick_hz: 10\n"
            "fusion:\n"
            "  mode: rules\n"
            "zones:\n"
            "  - {id: NFZ_0, kind: no_fly, center: [0, 0], radius: 100}\n")
        cfg = load_config(str(path))
        assert cfg.tick_hz == 10.0
        assert cfg.fusion_mode == "rules"
        assert cfg.zones[0]["id"] == "NFZ_0"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == SkyShieldConfig()

    def test_file_errors(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "missing.yaml"))
        bad = tmp_path / "bad.yaml"
        bad.write_text("fusion: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(str(bad))
        listy = tmp_path / "list.yaml"
        listy.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            load_config(str(listy))

    def test_changed_fields(self):
        a = SkyShieldConfig()
        b = SkyShieldConfig.from_dict({"fusion_mode": "kalman", "max_threats": 3})
        assert b.changed_fields(a) == ["fusion_mode", "max_threats"]


class TestConfigWatcher:

    def test_poll_applies_changes_and_skips_bad_edits(self, tmp_path):
        path = tmp_path / "live.yaml"
        path.write_text("tick_hz: 10\n")
        applied = []
        watcher = ConfigWatcher(str(path), applied.append)
        assert not watcher.poll()

        base = os.stat(path).st_mtime
        path.write_text("tick_hz: 20\n")
        os.utime(path, (base + 10, base + 10))
        assert watcher.poll()
        assert applied[-1].tick_hz == 20.0

        path.write_text("tick_hz: [oops\n")
        os.utime(path, (base + 20, base + 20))
        assert not watcher.poll()
        assert len(applied) == 1


# ============================================================
# PIPELINE
# ============================================================

class TestControlPipeline:

    def test_critical_threat_gets_interceptor(self, pipe):
        report = pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1000)
        assert report.fused["T1"][:2] == pytest.approx([50.0, 0.0])
        assert report.top_threats[0].threat_id == "T1"
        assert report.top_threats[0].score == pytest.approx(0.75)
        assert report.assignments == [("T1", "d1")]
        assert pipe.kill_chain_snapshot()["T1"] == KILL_CHAIN[:5]
        assert pipe.swarm.get("d1").status is DroneStatus.ENGAGING

        again = pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1100)
        assert again.assignments == []

    def test_trust_confidence_without_hint(self, pipe):
        report = pipe.tick([obs(50.0, 0.0)], now_ms=1000)
        # trust after one sample at reliability 1.0: 0.9 * 0.85 + 0.1
        assert report.top_threats[0].score == pytest.approx(0.4 * 0.865)
        assert pipe.kill_chain_snapshot()["T1"] == (KillChainStage.DETECT, KillChainStage.CLASSIFY)
        assert report.assignments == []

    def test_stale_track_evicted_and_radar_fallback(self, pipe):
        pipe.tick([obs(50.0, 0.0)], now_ms=1000)
        assert pipe.tracks.mode == "hybrid"
        report = pipe.tick([], now_ms=7100)
        assert report.fusion_mode == "ukf"
        assert pipe.tracks.estimate("T1") is None
        assert pipe.priority.get("T1") is None
        assert pipe.health_snapshot()["sensors"]["radar-a"] == "critical"

    def test_track_failure_is_isolated(self, pipe, monkeypatch):
        real_fuse = pipe.tracks.fuse

        def flaky(track_id, observations, now_ms=None):
            if track_id == "BAD":
                raise RuntimeError("filter diverged")
            return real_fuse(track_id, observations, now_ms)

        monkeypatch.setattr(pipe.tracks, "fuse", flaky)
        report = pipe.tick([obs(50.0, 0.0), obs(10.0, 10.0, track="BAD")], now_ms=1000)
        assert report.failures == ["fusion:BAD"]
        assert "T1" in report.fused
        assert not pipe.board.is_healthy("fusion")
        assert "filter diverged" in pipe.health_snapshot()["modules"]["fusion"]["detail"]

    def test_persistence_failure_does_not_stop_tick(self, pipe):
        class Sink:
            def __init__(self):
                self.estimates = []

            def record_observations(self, batch):
                raise IOError("disk full")

            def record_estimate(self, track_id, timestamp_ms, estimate):
                self.estimates.append(track_id)

        sink = Sink()
        pipe.persistence = sink
        report = pipe.tick([obs(50.0, 0.0)], now_ms=1000)
        assert "T1" in report.fused
        assert sink.estimates == ["T1"]
        assert report.failures == []
        assert not pipe.board.is_healthy("persistence")

    def test_apply_config(self, pipe):
        assert pipe.apply_config(make_config()) == []
        cfg = make_config(fusion={"mode": "kalman"},
                          threat={"escalation_thresholds": [0.1, 0.3, 0.5]})
        assert pipe.apply_config(cfg) == ["fusion_mode", "escalation_thresholds"]
        assert pipe.tracks.mode == "kalman"
        assert pipe.escalator.thresholds == (0.1, 0.3, 0.5)

        cfg2 = make_config(zones=NFZ + [{"id": "HQ", "kind": "asset",
                                         "center": [500, 0], "radius": 50}])
        pipe.apply_config(cfg2)
        assert len(pipe.zones) == 2
        assert pipe.reasoning.zones is pipe.zones

    def test_reset_drone_releases_engagement(self, pipe):
        pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1000)
        assert pipe.engagement.is_drone_engaged("d1")
        assert pipe.reset_drone("d1")
        assert not pipe.engagement.is_drone_engaged("d1")
        assert pipe.swarm.get("d1").status is DroneStatus.IDLE
        assert pipe.engagement.pending_threats() == ["T1"]
        report = pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1100)
        assert report.assignments == [("T1", "d1")]
        assert pipe.engagement.pending_threats() == []

    def test_stale_threat_not_engaged_and_can_escalate_again(self, pipe):
        pipe.swarm.unregister("d1")
        pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1000)
        assert pipe.engagement.pending_threats() == ["T1"]

        pipe.tick([], now_ms=7100)
        assert pipe.engagement.pending_threats() == []
        assert "T1" not in pipe.escalator.levels()
        assert pipe.kill_chain_snapshot()["T1"][-1] is KillChainStage.TRACK

        pipe.swarm.register("d1", (100.0, 0.0), role="striker")
        assert pipe.tick([], now_ms=7200).assignments == []
        assert pipe.swarm.get("d1").status is DroneStatus.IDLE

        report = pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=7300)
        assert report.assignments == [("T1", "d1")]

    def test_step_agents_closes_on_target(self, pipe):
        pipe.tick([obs(50.0, 0.0)], behaviors={"T1": ("circle", 1.0)}, now_ms=1000)
        pipe.step_agents(1.0)
        assert pipe.swarm.get("d1").position == pytest.approx((85.0, 0.0))


class TestControlLoop:

    def test_run_once_survives_source_error(self, pipe):
        def broken():
            raise ConnectionError("feed down")

        loop = ControlLoop(pipe, broken)
        try:
            report = loop.run_once()
            assert report.tick == 1
            assert report.fused == {}
            assert set(loop.runners) == {"d1"}
        finally:
            loop.stop()
        assert loop.runners == {}

    def test_thread_lifecycle(self, pipe):
        loop = ControlLoop(pipe, lambda: [])
        loop.start()
        deadline = time.monotonic() + 2.0
        while loop.last_report is None and time.monotonic() < deadline:
            time.sleep(0.01)
        loop.stop()
        assert loop.last_report is not None


# ============================================================
# DEMO
# ============================================================

class TestDemo:

    def test_single_scenario(self, capsys):
        assert demo.main(["--scenario", "1", "--ticks", "30"]) == 0
        assert "Scenario 1" in capsys.readouterr().out

    def test_bad_config_path(self, tmp_path, capsys):
        assert demo.main(["--config", str(tmp_path / "nope.yaml")]) == 2
        assert "error" in capsys.readouterr().err
