"""Tests for SkyShield zones, threat reasoning, escalation and ranking.

pytest tests/test_skyshield_threat.py -v
"""

import logging
import sys, os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from skyshield.skyshield_types import BehaviorType, IntentType, ThreatLevel
from skyshield.skyshield_zones import Zone, ZoneKind, ZoneManager
from skyshield.skyshield_threat import (
    IntentEstimator, MotionBehaviorClassifier, ThreatAlertEscalator,
    ThreatReasoningEngine, level_for_score,
)
from skyshield.skyshield_priority import PriorityQueueManager


@pytest.fixture
def zones():
    return ZoneManager.from_config([
        {"id": "NFZ", "kind": "no_fly", "center": [0, 0], "radius": 100},
        {"id": "HQ", "kind": "asset", "center": [500, 0], "radius": 50},
    ])


@pytest.fixture
def engine(zones):
    return ThreatReasoningEngine(zones)


# ============================================================
# ZONES
# ============================================================

class TestZone:

    def test_circle_contains_strict(self):
        z = Zone("z", ZoneKind.NO_FLY, (0.0, 0.0), 10.0)
        assert z.contains((3, 4))
        assert not z.contains((10, 0))

    def test_polygon_contains(self):
        square = ((0, 0), (10, 0), (10, 10), (0, 10))
        z = Zone("sq", ZoneKind.ASSET, (5.0, 5.0), 1.0, square)
        assert z.contains((9, 9))      # outside the circle, inside the polygon
        assert not z.contains((11, 5))

    def test_is_near_includes_padding(self):
        z = Zone("z", ZoneKind.ASSET, (0.0, 0.0), 50.0)
        assert z.is_near((65, 0), 20.0)
        assert not z.is_near((71, 0), 20.0)

    def test_heading_toward(self):
        z = Zone("z", ZoneKind.NO_FLY, (0.0, 0.0), 10.0)
        assert z.is_heading_toward((100, 0), (-5, 0))
        assert not z.is_heading_toward((100, 0), (0, 5))
        assert not z.is_heading_toward((100, 0), (0, 0))

    def test_from_config_skips_malformed(self, caplog):
        with caplog.at_level(logging.WARNING):
            zm = ZoneManager.from_config([
                {"id": "ok", "kind": "asset", "center": [0, 0], "radius": 5},
                {"id": "bad", "kind": "asset", "radius": 5},
                {"id": "odd", "kind": "volcano", "center": [0, 0], "radius": 5},
            ])
        assert len(zm) == 1
        assert len(zm.assets) == 1
        assert "Skipping zone" in caplog.text


# ============================================================
# BEHAVIOUR + INTENT
# ============================================================

class TestMotionBehaviorClassifier:

    def test_too_few_samples(self):
        clf = MotionBehaviorClassifier()
        for i in range(4):
            clf.add_position(i, 0)
        assert clf.classify() is BehaviorType.UNKNOWN

    def test_straight(self):
        clf = MotionBehaviorClassifier()
        for i in range(10):
            clf.add_position(i * 5.0, i * 2.0)
        assert clf.classify() is BehaviorType.STRAIGHT

    def test_zigzag(self):
        clf = MotionBehaviorClassifier()
        for i in range(8):
            clf.add_position(float(i), float(i % 2))
        assert clf.classify() is BehaviorType.ZIGZAG

    def test_history_bounded(self):
        clf = MotionBehaviorClassifier(history=12)
        for i in range(30):
            clf.add_position(i, 0)
        assert len(clf) == 12

    def test_parse_labels(self):
        assert BehaviorType.parse("Zig_Zag") is BehaviorType.ZIGZAG
        assert BehaviorType.parse("zigzag") is BehaviorType.ZIGZAG
        assert BehaviorType.parse("CIRCLE") is BehaviorType.CIRCLE
        assert BehaviorType.parse("hover") is BehaviorType.UNKNOWN
        assert BehaviorType.parse(None) is BehaviorType.UNKNOWN


class TestIntentEstimator:

    def test_priority_order(self, zones):
        ie = IntentEstimator(zones)
        assert ie.estimate((300, 0), (-10, 0), BehaviorType.UNKNOWN).intent is IntentType.ENTERING_NOFLY
        assert ie.estimate((300, 0), (-10, 0), BehaviorType.UNKNOWN).confidence == 0.9
        assert ie.estimate((300, 0), (10, 0), BehaviorType.CIRCLE).intent is IntentType.APPROACHING_ASSET
        assert ie.estimate((300, 300), (0, 10), BehaviorType.STRAIGHT).intent is IntentType.FLEEING
        assert ie.estimate((300, 300), (0, 10), BehaviorType.FLEEING).intent is IntentType.FLEEING
        assert ie.estimate((300, 300), (0, 10), BehaviorType.CIRCLE).intent is IntentType.SCANNING
        assert ie.estimate((300, 300), (0, 10), BehaviorType.ZIGZAG).intent is IntentType.SCANNING
        assert ie.estimate((300, 300), (0, 10), BehaviorType.WEAVING).intent is IntentType.LOITERING
        unknown = ie.estimate((300, 300), (0, 10), BehaviorType.UNKNOWN)
        assert unknown.intent is IntentType.UNKNOWN
        assert unknown.confidence == 0.3

    def test_inside_no_fly_is_not_entering(self, zones):
        ie = IntentEstimator(zones)
        r = ie.estimate((10, 0), (-1, 0), BehaviorType.UNKNOWN)
        assert r.intent is IntentType.UNKNOWN


# ============================================================
# REASONING
# ============================================================

class TestThreatReasoningEngine:

    def test_inside_no_fly_circling(self, engine):
        a = engine.compute_threat((10, 0), (-1, 0), BehaviorType.CIRCLE, 1.0)
        assert a.score == pytest.approx(0.4 + 0.15 + 0.2)
        assert a.intent is IntentType.SCANNING
        assert "Inside no-fly zone." in a.reasoning
        assert a.reasoning.endswith("Fusion confidence: 1.00")

    def test_confidence_scales(self, engine):
        a = engine.compute_threat((10, 0), (-1, 0), "circle", 0.5)
        assert a.score == pytest.approx(0.75 * 0.5)

    def test_confidence_clamped(self, engine):
        a = engine.compute_threat((10, 0), (-1, 0), "circle", 3.0)
        assert a.score == pytest.approx(0.75)
        assert "Fusion confidence: 3.00" in a.reasoning

    def test_near_asset(self, engine):
        a = engine.compute_threat((560, 0), (0, 10), BehaviorType.STRAIGHT, 1.0)
        assert a.score == pytest.approx(0.3)
        assert "Near critical asset." in a.reasoning

    def test_entering_no_fly(self, engine):
        a = engine.compute_threat((300, 0), (-10, 0), BehaviorType.UNKNOWN, 1.0)
        assert a.score == pytest.approx(0.3)
        assert a.intent is IntentType.ENTERING_NOFLY

    def test_fleeing_clamps_at_zero(self, engine):
        a = engine.compute_threat((1000, 1000), (10, 10), BehaviorType.FLEEING, 1.0)
        assert a.score == 0.0
        assert "Behavior: fleeing." in a.reasoning

    def test_missing_data(self, engine):
        a = engine.compute_threat(None, (1, 0), BehaviorType.CIRCLE, 1.0)
        assert a.score == 0.0
        assert a.reasoning == "Insufficient data"
        b = engine.compute_threat((float("nan"), 0), (1, 0), BehaviorType.CIRCLE, 1.0)
        assert b.reasoning == "Insufficient data"


# ============================================================
# ESCALATION
# ============================================================

class TestThreatAlertEscalator:

    def test_level_thresholds(self):
        assert level_for_score(0.19) is ThreatLevel.OBSERVED
        assert level_for_score(0.2) is ThreatLevel.WARNING
        assert level_for_score(0.4) is ThreatLevel.THREAT
        assert level_for_score(0.6) is ThreatLevel.CRITICAL

    def test_listener_on_change_only(self):
        calls = []
        esc = ThreatAlertEscalator(lambda *a: calls.append(a))
        esc.update("t", 0.1, (0, 0))
        esc.update("t", 0.45, (1, 0))
        esc.update("t", 0.45, (2, 0))
        esc.update("t", 0.7, (3, 0))
        assert [(c[1], c[2]) for c in calls] == [
            (ThreatLevel.OBSERVED, ThreatLevel.THREAT),
            (ThreatLevel.THREAT, ThreatLevel.CRITICAL),
        ]
        assert esc.level("t") is ThreatLevel.CRITICAL
        assert esc.position("t") == (3.0, 0.0)
        assert esc.level("other") is ThreatLevel.OBSERVED


# ============================================================
# PRIORITY QUEUE
# ============================================================

class TestPriorityQueueManager:

    @pytest.fixture
    def pq(self, engine):
        return PriorityQueueManager(engine, clock=lambda: 0.0)

    def test_freshness_boundary(self, pq):
        T = 10_000.0
        pq.update("t1", (10, 0), (-1, 0), "circle", 1.0, timestamp_ms=T)
        assert [r.threat_id for r in pq.top_threats(5, now_ms=T + 4999)] == ["t1"]
        assert pq.top_threats(5, now_ms=T + 5001) == []

    def test_descending_and_truncated(self, pq):
        pq.update("near", (560, 0), (0, 10), "straight", 1.0, timestamp_ms=0)    # 0.30
        pq.update("hot", (10, 0), (-1, 0), "circle", 1.0, timestamp_ms=0)       # 0.75
        pq.update("half", (10, 0), (-1, 0), "circle", 0.5, timestamp_ms=0)      # 0.375
        top = pq.top_threats(2, now_ms=100)
        assert [r.threat_id for r in top] == ["hot", "half"]
        scores = [r.score for r in pq.top_threats(10, now_ms=100)]
        assert scores == sorted(scores, reverse=True)
        assert len(scores) == 3

    def test_irrelevant_filtered(self, pq):
        pq.update("calm", (1000, 1000), (10, 10), "fleeing", 1.0, timestamp_ms=0)
        assert pq.top_threats(5, now_ms=1) == []
        assert pq.get("calm").score == 0.0

    def test_upsert_in_place(self, pq):
        pq.update("t", (10, 0), (-1, 0), "circle", 1.0, timestamp_ms=0)
        pq.update("t", (10, 0), (-1, 0), "circle", 0.5, timestamp_ms=10)
        assert len(pq) == 1
        assert pq.get("t").score == pytest.approx(0.375)
        assert pq.top_threat(now_ms=20).threat_id == "t"

    def test_cleanup_and_remove(self, pq):
        pq.update("old", (10, 0), (-1, 0), "circle", 1.0, timestamp_ms=0)
        pq.update("new", (10, 0), (-1, 0), "circle", 1.0, timestamp_ms=9000)
        assert pq.cleanup(5000, now_ms=10_000) == 1
        assert pq.get("old") is None
        assert pq.remove("new")
        assert not pq.remove("new")

    def test_negative_count_rejected(self, pq):
        with pytest.raises(ValueError):
            pq.top_threats(-1)
