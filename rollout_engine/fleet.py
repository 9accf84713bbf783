import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import List, Protocol
from .models import FleetMember, Health, Lifecycle
from .errors import RegistryError
from .failure import FailureInjector
from .logger import get_logger


class FleetRegistry(Protocol):
    async def list(self) -> List[FleetMember]: ...

    async def register(self, member: FleetMember) -> None: ...

    async def deregister(self, member_id: str) -> None: ...


class HealthOracle(Protocol):
    async def check(self, member_id: str) -> Health: ...


class InstanceLauncher(Protocol):
    async def launch(self, version: str) -> FleetMember: ...

    async def terminate(self, member_id: str) -> None: ...


@dataclass
class Fleet:
    """Handle on one fleet and the collaborators that act on it"""
    fleet_id: str
    registry: FleetRegistry
    launcher: InstanceLauncher
    health_oracle: HealthOracle


class InMemoryFleetRegistry:
    """Registry backed by a dict; records in-service capacity after every change"""

    def __init__(self, members=(), failure_injector=None):
        self.failure_injector = failure_injector or FailureInjector()
        self.members = {m.member_id: m for m in members}
        self.capacity_history = [self.in_service_count()]
        self.logger = get_logger("registry")

    def in_service_count(self):
        return sum(1 for m in self.members.values() if m.lifecycle == Lifecycle.IN_SERVICE)

    def _record(self):
        self.capacity_history.append(self.in_service_count())

    async def list(self):
        if self.failure_injector.should_fail_list():
            raise RegistryError("registry temporarily unavailable")
        return list(self.members.values())

    async def register(self, member):
        self.members[member.member_id] = member
        self.logger.debug(f"Registered {member.member_id} ({member.version})")
        self._record()

    async def deregister(self, member_id):
        if self.members.pop(member_id, None) is None:
            self.logger.debug(f"Deregister of unknown member {member_id} ignored")
            return
        self.logger.debug(f"Deregistered {member_id}")
        self._record()

    def versions(self):
        counts = {}
        for m in self.members.values():
            counts[m.version] = counts.get(m.version, 0) + 1
        return counts


class SimulatedLauncher:
    """Launches members with predictable ids: <version>-<n>"""

    def __init__(self, failure_injector=None, clock=time.time):
        self.failure_injector = failure_injector or FailureInjector()
        self.clock = clock
        self.counter = itertools.count(1)
        self.running = set()
        self.launched = []
        self.terminated = []
        self.logger = get_logger("launcher")

    async def launch(self, version):
        member_id = f"{version}-{next(self.counter)}"
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        if self.failure_injector.should_fail_launch(member_id):
            raise RuntimeError(f"simulated launch failure for {member_id}")

        member = FleetMember(member_id, version, Lifecycle.PROVISIONING, Health.UNKNOWN, self.clock())
        self.running.add(member_id)
        self.launched.append(member_id)
        self.logger.debug(f"Launched {member_id}")
        return member

    async def terminate(self, member_id):
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        if self.failure_injector.should_fail_termination(member_id):
            raise RuntimeError(f"simulated termination failure for {member_id}")

        self.running.discard(member_id)
        self.terminated.append(member_id)
        self.logger.debug(f"Terminated {member_id}")


class ScriptedHealthOracle:
    def __init__(self, failure_injector=None):
        self.failure_injector = failure_injector or FailureInjector()
        self.calls = []

    async def check(self, member_id):
        self.calls.append(member_id)
        if self.failure_injector.should_fail_check(member_id):
            raise RegistryError(f"health endpoint for {member_id} unreachable")
        return self.failure_injector.next_health(member_id)


def simulated_fleet(fleet_id, members, failure_injector=None):
    """Fleet wired to in-memory collaborators that share one FailureInjector"""
    injector = failure_injector or FailureInjector()
    return Fleet(
        fleet_id=fleet_id,
        registry=InMemoryFleetRegistry(members, injector),
        launcher=SimulatedLauncher(injector),
        health_oracle=ScriptedHealthOracle(injector),
    )
