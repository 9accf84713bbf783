from .models import (
    Lifecycle, Health, RoundState, OutcomeStatus, PollStatus,
    FleetMember, DeploymentPlan, DeploymentConfig, DeploymentRound,
    PollResult, DeploymentEvent, DeploymentOutcome,
)
from .errors import (
    DeploymentError, Busy, LaunchFailure, HealthCheckFailure, HealthCheckTimeout,
    RegistryError, Cancelled, CommitFailure,
)
from .engine import DeploymentEngine
from .health import HealthPoller
from .lease import FleetLeaseManager, default_lease_manager
from .events import EventLog
from .retry import RetryPolicy, call_with_retry
from .failure import FailureInjector
from .fleet import (
    Fleet, FleetRegistry, HealthOracle, InstanceLauncher,
    InMemoryFleetRegistry, SimulatedLauncher, ScriptedHealthOracle, simulated_fleet,
)

__all__ = [
    "Lifecycle", "Health", "RoundState", "OutcomeStatus", "PollStatus",
    "FleetMember", "DeploymentPlan", "DeploymentConfig", "DeploymentRound",
    "PollResult", "DeploymentEvent", "DeploymentOutcome",
    "DeploymentError", "Busy", "LaunchFailure", "HealthCheckFailure", "HealthCheckTimeout",
    "RegistryError", "Cancelled", "CommitFailure",
    "DeploymentEngine", "HealthPoller", "FleetLeaseManager", "default_lease_manager", "EventLog",
    "RetryPolicy", "call_with_retry", "FailureInjector",
    "Fleet", "FleetRegistry", "HealthOracle", "InstanceLauncher",
    "InMemoryFleetRegistry", "SimulatedLauncher", "ScriptedHealthOracle", "simulated_fleet",
]
