"""SkyShield v1.0.0: counter-drone command-and-control pipeline.

Trust-weighted multi-sensor fusion, zone-aware threat scoring, ranked
interceptor assignment and kill-chain / swarm state tracking.

Quick Start::

    from skyshield import ControlPipeline, Observation, load_config
    pipe = ControlPipeline(load_config("skyshield.yaml"))
    pipe.swarm.register("d1", (0.0, 0.0), role="striker")
    report = pipe.tick([Observation(0, 900, 10, -12, 0, 80, 3.14, "radar-a")])
    report.top_threats
"""

__version__ = "1.0.0"
__license__ = "AGPL-3.0-or-later"

# ---------------------------------------------------------------------------
# Shared types
# ---------------------------------------------------------------------------
from .skyshield_types import (
    Observation,
    BehaviorType,
    IntentType,
    ThreatLevel,
    KillChainStage,
    KILL_CHAIN,
    wrap_angle,
)

# ---------------------------------------------------------------------------
# Trust + fusion
# ---------------------------------------------------------------------------
from .skyshield_trust import SensorTrustModel
from .skyshield_fusion import (
    FusionStrategy,
    ConstantVelocityFusion,
    HeadingAwareFusion,
    RuleBasedFusion,
    DecisionTreeFusion,
    HybridFusion,
    MultiLayerFusion,
    FallbackFusion,
    FUSION_STRATEGIES,
    create_fusion_strategy,
    SensorFusionEngine,
    TrackManager,
)

# ---------------------------------------------------------------------------
# Zones + threat reasoning + ranking
# ---------------------------------------------------------------------------
from .skyshield_zones import Zone, ZoneKind, ZoneManager
from .skyshield_threat import (
    MotionBehaviorClassifier,
    IntentEstimator,
    IntentEstimate,
    ThreatReasoningEngine,
    ThreatAssessment,
    ThreatAlertEscalator,
)
from .skyshield_priority import ThreatRecord, PriorityQueueManager

# ---------------------------------------------------------------------------
# Planning, engagement, swarm
# ---------------------------------------------------------------------------
from .skyshield_planner import InterceptionPlanner, InterceptAssignment
from .skyshield_engagement import EngagementManager
from .skyshield_swarm import (
    DroneStatus,
    DroneRole,
    DroneAgent,
    AgentSnapshot,
    SwarmManager,
    AgentRunner,
)

# ---------------------------------------------------------------------------
# Health, config, pipeline
# ---------------------------------------------------------------------------
from .skyshield_health import (
    HealthStatus,
    SensorHealthMonitor,
    FallbackController,
    ModuleHealthBoard,
)
from .skyshield_config import SkyShieldConfig, ConfigError, ConfigWatcher, load_config
from .skyshield_pipeline import ControlPipeline, ControlLoop, TickReport, PersistenceSink

__all__ = [
    # Types
    "Observation", "BehaviorType", "IntentType", "ThreatLevel",
    "KillChainStage", "KILL_CHAIN", "wrap_angle",
    # Fusion
    "SensorTrustModel", "FusionStrategy", "ConstantVelocityFusion",
    "HeadingAwareFusion", "RuleBasedFusion", "DecisionTreeFusion",
    "HybridFusion", "MultiLayerFusion", "FallbackFusion",
    "FUSION_STRATEGIES", "create_fusion_strategy", "SensorFusionEngine",
    "TrackManager",
    # Threat
    "Zone", "ZoneKind", "ZoneManager", "MotionBehaviorClassifier",
    "IntentEstimator", "IntentEstimate", "ThreatReasoningEngine",
    "ThreatAssessment", "ThreatAlertEscalator", "ThreatRecord",
    "PriorityQueueManager",
    # Engagement / swarm
    "InterceptionPlanner", "InterceptAssignment", "EngagementManager",
    "DroneStatus", "DroneRole", "DroneAgent", "AgentSnapshot",
    "SwarmManager", "AgentRunner",
    # Health / config / pipeline
    "HealthStatus", "SensorHealthMonitor", "FallbackController",
    "ModuleHealthBoard", "SkyShieldConfig", "ConfigError", "ConfigWatcher",
    "load_config", "ControlPipeline", "ControlLoop", "TickReport",
    "PersistenceSink",
]
