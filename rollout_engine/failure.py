from .models import Health


class FailureInjector:
    """Scripted faults for the simulated collaborators"""

    def __init__(self, fail_launches=None, health_scripts=None, check_faults=None,
                 registry_faults=0, fail_terminations=None, delay=0):
        self.fail_launches = set(fail_launches or ())  # Member ids whose launch raises
        self.health_scripts = {k: [Health(s) for s in v] for k, v in (health_scripts or {}).items()}
        self.check_faults = check_faults or {}  # Member id -> transient faults before a check answers
        self.registry_faults = registry_faults  # Transient faults before list() answers
        self.fail_terminations = set(fail_terminations or ())
        self.delay = delay
        self.checks = {}
        self.check_attempts = {}

    def delay_seconds(self):
        return self.delay

    def should_fail_launch(self, member_id):
        return member_id in self.fail_launches

    def should_fail_termination(self, member_id):
        return member_id in self.fail_terminations

    def should_fail_check(self, member_id):
        self.check_attempts[member_id] = self.check_attempts.get(member_id, 0) + 1
        return self.check_attempts[member_id] <= self.check_faults.get(member_id, 0)

    def should_fail_list(self):
        if self.registry_faults > 0:
            self.registry_faults -= 1
            return True
        return False

    def next_health(self, member_id):
        """Next scripted status for a member; the last entry repeats, unscripted members are healthy"""
        script = self.health_scripts.get(member_id)
        count = self.checks.get(member_id, 0)
        self.checks[member_id] = count + 1
        if not script:
            return Health.HEALTHY
        return script[min(count, len(script) - 1)]
