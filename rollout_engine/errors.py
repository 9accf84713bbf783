class DeploymentError(Exception):
    """Base class for deployment failures"""


class Busy(DeploymentError):
    """Another deployment holds the lease for this fleet"""

    def __init__(self, fleet_id):
        super().__init__(f"deployment already in progress for fleet {fleet_id}")
        self.fleet_id = fleet_id


class LaunchFailure(DeploymentError):
    def __init__(self, message, launched=()):
        super().__init__(message)
        self.launched = list(launched)  # Members that did start before the failure


class HealthCheckFailure(DeploymentError):
    def __init__(self, member_id):
        super().__init__(f"member {member_id} reported UNHEALTHY")
        self.member_id = member_id


class HealthCheckTimeout(DeploymentError):
    def __init__(self, timeout_s, pending):
        pending = sorted(pending)
        super().__init__(f"health checks timed out after {timeout_s}s waiting on {', '.join(pending)}")
        self.timeout_s = timeout_s
        self.pending = pending


class RegistryError(DeploymentError):
    """Transient collaborator fault, safe to retry"""


class Cancelled(DeploymentError):
    def __init__(self):
        super().__init__("cancelled")


class CommitFailure(DeploymentError):
    """Replaced members could not be retired after their replacements became healthy"""
