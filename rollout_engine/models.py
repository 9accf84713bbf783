import json
import math
import time
from dataclasses import dataclass, field, fields, asdict
from enum import Enum


class Lifecycle(str, Enum):
    PROVISIONING = "provisioning"
    IN_SERVICE = "in_service"
    DRAINING = "draining"
    TERMINATED = "terminated"


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RoundState(str, Enum):
    LAUNCHING = "launching"
    WARMING = "warming"
    HEALTH_CHECKING = "health_checking"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class PollStatus(str, Enum):
    ALL_HEALTHY = "all_healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class FleetMember:
    member_id: str
    version: str
    lifecycle: Lifecycle = Lifecycle.IN_SERVICE
    health: Health = Health.UNKNOWN
    created_at: float = field(default_factory=time.time)
    round_index: int = None  # Round that launched this member, None if it predates the deployment

    @property
    def is_active(self):
        return self.lifecycle != Lifecycle.TERMINATED


@dataclass(frozen=True)
class DeploymentPlan:
    """What to deploy and how much capacity must stay in service"""
    target_version: str
    desired_capacity: int
    min_healthy_percentage: float
    warmup_s: float = 0.0

    def validate(self):
        if not self.target_version:
            raise ValueError("target_version must be set")
        if self.desired_capacity < 1:
            raise ValueError("desired_capacity must be >= 1")
        if not 0 < self.min_healthy_percentage <= 100:
            raise ValueError("min_healthy_percentage must be in (0, 100]")
        if self.warmup_s < 0:
            raise ValueError("warmup_s must be >= 0")

    @property
    def batch_size(self):
        # How many members may be out of service at once while keeping P% capacity
        return max(1, math.floor(self.desired_capacity * (100 - self.min_healthy_percentage) / 100))

    @property
    def min_healthy_count(self):
        return math.ceil(self.desired_capacity * self.min_healthy_percentage / 100)


@dataclass
class DeploymentConfig:
    """Operational knobs for a deployment run"""
    poll_interval_s: float = 1.0  # Delay between health polls
    health_timeout_s: float = 300.0  # Round-level budget for the health check phase
    launch_timeout_s: float = None  # Timeout per launch call
    terminate_timeout_s: float = None  # Timeout per terminate call
    retry_max_attempts: int = 3  # Retries for transient registry faults
    retry_base_delay_s: float = 0.1
    retry_max_delay_s: float = 5.0

    def validate(self):
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.health_timeout_s <= 0:
            raise ValueError("health_timeout_s must be > 0")
        if self.retry_max_attempts < 0:
            raise ValueError("retry_max_attempts must be >= 0")

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        config = cls(**data)
        config.validate()
        return config

    @classmethod
    def from_file(cls, path):
        with open(path) as f:
            return cls.from_dict(json.load(f))


@dataclass
class DeploymentRound:
    """One batch of members being replaced together"""
    index: int
    replaced: list = field(default_factory=list)  # Old member ids this round retires
    launched: list = field(default_factory=list)  # New member ids this round created
    state: RoundState = RoundState.LAUNCHING
    failure_reason: str = None
    health: "PollResult" = None


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    member_id: str = None  # First member observed UNHEALTHY
    statuses: dict = field(default_factory=dict)
    polls: int = 0
    elapsed_s: float = 0.0


@dataclass(frozen=True)
class DeploymentEvent:
    seq: int
    kind: str
    round_index: int = None
    in_service: int = None
    detail: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DeploymentOutcome:
    """Terminal record of a deployment run"""
    status: OutcomeStatus
    version: str = None  # Target version when SUCCEEDED
    previous_version: str = None
    reason: str = None
    rounds_committed: int = 0
    rounds: tuple = ()
    replaced: tuple = ()  # Old member ids that were retired
    launched: tuple = ()  # New member ids left in service
    skipped: tuple = ()  # Member ids already on the target version
    events: tuple = ()
    elapsed_s: float = 0.0

    @property
    def succeeded(self):
        return self.status == OutcomeStatus.SUCCEEDED

    def to_dict(self):
        return asdict(self)
