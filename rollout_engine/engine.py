import asyncio
import time
from dataclasses import dataclass, field
from .models import (
    Health, Lifecycle, RoundState, OutcomeStatus, PollStatus,
    DeploymentConfig, DeploymentRound, DeploymentOutcome,
)
from .errors import (
    DeploymentError, LaunchFailure, HealthCheckFailure, HealthCheckTimeout,
    RegistryError, Cancelled, CommitFailure,
)
from .events import EventLog
from .health import HealthPoller
from .lease import default_lease_manager
from .retry import RetryPolicy, call_with_retry
from .logger import get_logger


@dataclass
class _Run:
    """Mutable state of one deploy() call"""
    fleet: object
    plan: object
    config: DeploymentConfig
    retry: RetryPolicy
    events: EventLog
    cancel_event: asyncio.Event = None
    members: dict = field(default_factory=dict)
    rounds: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    previous_version: str = None
    started: float = 0.0

    def cancelled(self):
        return self.cancel_event is not None and self.cancel_event.is_set()

    def in_service(self):
        return sum(1 for m in self.members.values() if m.lifecycle == Lifecycle.IN_SERVICE)


class DeploymentEngine:
    def __init__(self, lease_manager=None, listeners=None, clock=time.monotonic):
        self.lease_manager = lease_manager if lease_manager is not None else default_lease_manager()
        self.listeners = list(listeners or [])
        self.clock = clock
        self.logger = get_logger("engine")

    @staticmethod
    def plan_batches(members, batch_size):
        """Split members into consecutive batches of at most batch_size"""
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        member_list = list(members)
        return [member_list[i:i + batch_size] for i in range(0, len(member_list), batch_size)]

    @staticmethod
    def select_replacements(members, target_version):
        """Active members not on target_version, oldest first, ties broken by id"""
        old = [m for m in members if m.is_active and m.version != target_version]
        return sorted(old, key=lambda m: (m.created_at, m.member_id))

    def _emit(self, run, kind, round_index=None, **detail):
        return run.events.append(kind, round_index, run.in_service(), **detail)

    async def deploy(self, fleet, plan, config=None, cancel_event=None, dry_run=False):
        """Replace every member of the fleet not on plan.target_version, one round at a time"""
        plan.validate()
        config = config if config else DeploymentConfig()
        config.validate()

        # Raises Busy before touching anything
        token = self.lease_manager.acquire(fleet.fleet_id)
        try:
            run = _Run(
                fleet=fleet,
                plan=plan,
                config=config,
                retry=RetryPolicy.from_config(config),
                events=EventLog(self.listeners),
                cancel_event=cancel_event,
                started=self.clock(),
            )
            return await self._deploy(run, dry_run)
        finally:
            self.lease_manager.release(fleet.fleet_id, token)

    async def _deploy(self, run, dry_run):
        plan = run.plan
        self.logger.info(
            f"Starting deployment of {plan.target_version} to fleet {run.fleet.fleet_id} "
            f"(batch size {plan.batch_size}, floor {plan.min_healthy_count}, dry_run={dry_run})"
        )
        try:
            listed = await call_with_retry(run.fleet.registry.list, run.retry, "fleet listing")
        except RegistryError as e:
            return self._finish(run, OutcomeStatus.FAILED, reason=f"could not list fleet: {e}")

        run.members = {m.member_id: m for m in listed if m.is_active}
        self._emit(run, "deployment_started", target_version=plan.target_version,
                   batch_size=plan.batch_size, min_healthy=plan.min_healthy_count,
                   fleet_size=len(run.members))
        run.skipped = sorted(m.member_id for m in run.members.values() if m.version == plan.target_version)
        old = self.select_replacements(run.members.values(), plan.target_version)
        if old:
            run.previous_version = old[0].version

        if len(run.members) != plan.desired_capacity:
            self.logger.warning(
                f"Fleet {run.fleet.fleet_id} has {len(run.members)} members, plan expects {plan.desired_capacity}"
            )
        self.logger.info(f"Found {len(old)} members to replace, {len(run.skipped)} already on {plan.target_version}")

        batches = self.plan_batches(old, plan.batch_size)
        self.logger.info(f"Created {len(batches)} rounds for deployment")

        if dry_run:
            for index, batch in enumerate(batches, start=1):
                self._emit(run, "round_planned", index, replaced=[m.member_id for m in batch])
            self.logger.info(f"DRY RUN: would replace {len(old)} members in {len(batches)} rounds")
            return self._finish(run, OutcomeStatus.SUCCEEDED, version=plan.target_version,
                                reason=f"dry run: {len(batches)} rounds planned")

        for index, batch in enumerate(batches, start=1):
            if run.cancelled():
                self.logger.warning(f"Deployment cancelled before round {index}")
                return self._finish(run, OutcomeStatus.FAILED, reason="cancelled")

            deployment_round = DeploymentRound(index=index, replaced=[m.member_id for m in batch])
            run.rounds.append(deployment_round)

            try:
                await self._run_round(run, deployment_round)
            except CommitFailure as e:
                deployment_round.state = RoundState.FAILED
                deployment_round.failure_reason = str(e)
                self.logger.error(f"Round {index} could not retire replaced members: {e}")
                return self._finish(run, OutcomeStatus.FAILED, reason=f"round {index} commit failed: {e}")
            except DeploymentError as e:
                return await self._abort_round(run, deployment_round, e)
            except asyncio.CancelledError:
                # Task cancelled from outside: retire what this round launched unless it was already committing
                if deployment_round.state != RoundState.COMMITTING:
                    self.logger.warning(f"Deployment task cancelled during round {index}, rolling back")
                    await asyncio.shield(self.rollback(run.fleet, deployment_round, run.members, run.config))
                raise

        self.logger.info(f"SUCCESS: fleet {run.fleet.fleet_id} is on {plan.target_version}")
        return self._finish(run, OutcomeStatus.SUCCEEDED, version=plan.target_version)

    async def _run_round(self, run, deployment_round):
        plan, config = run.plan, run.config
        index = deployment_round.index
        self.logger.info(f"Starting round {index} replacing {deployment_round.replaced}")
        self._emit(run, "round_started", index, replaced=list(deployment_round.replaced))

        deployment_round.state = RoundState.LAUNCHING
        await self._launch_round(run, deployment_round)
        self._emit(run, "round_launched", index, launched=list(deployment_round.launched))
        if run.cancelled():
            raise Cancelled()

        deployment_round.state = RoundState.WARMING
        self._emit(run, "round_warming", index, warmup_s=plan.warmup_s)
        if plan.warmup_s > 0 and await self._wait_or_cancel(run, plan.warmup_s):
            raise Cancelled()

        deployment_round.state = RoundState.HEALTH_CHECKING
        self._emit(run, "round_health_checking", index)
        poller = HealthPoller(run.fleet.health_oracle, config.poll_interval_s,
                              config.health_timeout_s, run.retry, self.clock)
        result = await poller.poll(deployment_round.launched, run.cancel_event)
        deployment_round.health = result
        for member_id, status in result.statuses.items():
            run.members[member_id].health = status

        if result.status == PollStatus.UNHEALTHY:
            raise HealthCheckFailure(result.member_id)
        if result.status == PollStatus.TIMED_OUT:
            pending = [m for m, s in result.statuses.items() if s != Health.HEALTHY]
            raise HealthCheckTimeout(config.health_timeout_s, pending)
        if result.status == PollStatus.CANCELLED:
            raise Cancelled()
        self._emit(run, "round_healthy", index, polls=result.polls, elapsed_s=result.elapsed_s)

        deployment_round.state = RoundState.COMMITTING
        await self._commit_round(run, deployment_round)
        deployment_round.state = RoundState.COMMITTED
        self._emit(run, "round_committed", index, retired=list(deployment_round.replaced))
        self.logger.info(f"Round {index} committed: {len(deployment_round.launched)} members on {plan.target_version}")

    async def _wait_or_cancel(self, run, delay):
        """Sleep for delay; True if the cancel event fired first"""
        if run.cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _launch_member(self, run, deployment_round):
        fleet, config = run.fleet, run.config
        try:
            if config.launch_timeout_s and config.launch_timeout_s > 0:
                member = await asyncio.wait_for(fleet.launcher.launch(run.plan.target_version),
                                                timeout=config.launch_timeout_s)
            else:
                member = await fleet.launcher.launch(run.plan.target_version)
        except asyncio.TimeoutError:
            raise LaunchFailure(f"launch timed out after {config.launch_timeout_s}s")
        except LaunchFailure:
            raise
        except Exception as e:
            raise LaunchFailure(f"launch failed: {e}") from e

        member.lifecycle = Lifecycle.PROVISIONING
        member.health = Health.UNKNOWN
        member.round_index = deployment_round.index
        run.members[member.member_id] = member
        deployment_round.launched.append(member.member_id)
        self.logger.debug(f"Launched {member.member_id} in round {deployment_round.index}")

        try:
            await call_with_retry(lambda: fleet.registry.register(member), run.retry,
                                  f"registration of {member.member_id}")
        except RegistryError as e:
            raise LaunchFailure(f"could not register {member.member_id}: {e}") from e
        return member

    async def _launch_round(self, run, deployment_round):
        """Launch one replacement per retired member; every launch is joined before failing the round"""
        count = len(deployment_round.replaced)
        outcomes = await asyncio.gather(
            *(self._launch_member(run, deployment_round) for _ in range(count)),
            return_exceptions=True,
        )
        deployment_round.launched.sort()

        failures = [o for o in outcomes if isinstance(o, BaseException)]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure
        if failures:
            self.logger.error(f"Round {deployment_round.index}: {len(failures)} of {count} launches failed")
            raise LaunchFailure(
                f"{len(failures)} of {count} launches failed: {failures[0]}",
                launched=deployment_round.launched,
            )

    async def _terminate(self, fleet, member_id, config):
        if config.terminate_timeout_s and config.terminate_timeout_s > 0:
            await asyncio.wait_for(fleet.launcher.terminate(member_id), timeout=config.terminate_timeout_s)
        else:
            await fleet.launcher.terminate(member_id)

    async def _retire_member(self, run, member):
        try:
            await self._terminate(run.fleet, member.member_id, run.config)
        except asyncio.TimeoutError:
            raise CommitFailure(f"terminating {member.member_id} timed out")
        except Exception as e:
            raise CommitFailure(f"could not terminate {member.member_id}: {e}") from e

        try:
            await call_with_retry(lambda: run.fleet.registry.deregister(member.member_id), run.retry,
                                  f"deregistration of {member.member_id}")
        except RegistryError as e:
            raise CommitFailure(f"could not deregister {member.member_id}: {e}") from e
        member.lifecycle = Lifecycle.TERMINATED

    async def _commit_round(self, run, deployment_round):
        # New members take traffic before any old member leaves
        for member_id in deployment_round.launched:
            member = run.members[member_id]
            member.lifecycle = Lifecycle.IN_SERVICE
            member.health = Health.HEALTHY
        self._emit(run, "round_committing", deployment_round.index, retiring=list(deployment_round.replaced))

        retiring = [run.members[member_id] for member_id in deployment_round.replaced]
        for member in retiring:
            member.lifecycle = Lifecycle.DRAINING

        outcomes = await asyncio.gather(*(self._retire_member(run, m) for m in retiring),
                                        return_exceptions=True)
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        for failure in failures:
            if not isinstance(failure, CommitFailure):
                raise failure
        if failures:
            raise CommitFailure("; ".join(str(f) for f in failures))

    async def rollback(self, fleet, deployment_round, members, config=None):
        """Retire the members launched by a failed round.

        Only the in-flight round is undone: members committed by earlier
        rounds and the old members this round meant to replace stay as they
        are. Errors are logged and collected, never raised.
        """
        config = config if config else DeploymentConfig()
        retry = RetryPolicy.from_config(config)
        deployment_round.state = RoundState.FAILED
        self.logger.warning(f"Rolling back round {deployment_round.index}: "
                            f"terminating {len(deployment_round.launched)} new members")

        async def undo(member_id):
            member = members.get(member_id)
            if member is not None:
                member.lifecycle = Lifecycle.DRAINING
            errors = []
            try:
                await self._terminate(fleet, member_id, config)
            except Exception as e:
                self.logger.error(f"Rollback could not terminate {member_id}: {e!r}")
                errors.append(f"terminate {member_id}: {e!r}")
            try:
                await call_with_retry(lambda: fleet.registry.deregister(member_id), retry,
                                      f"deregistration of {member_id}")
            except RegistryError as e:
                self.logger.error(f"Rollback could not deregister {member_id}: {e}")
                errors.append(f"deregister {member_id}: {e}")
            if member is not None:
                member.lifecycle = Lifecycle.TERMINATED
            return errors

        results = await asyncio.gather(*(undo(member_id) for member_id in deployment_round.launched))
        errors = [e for member_errors in results for e in member_errors]
        self.logger.info(f"Rollback of round {deployment_round.index} completed with {len(errors)} errors")
        return errors

    async def _abort_round(self, run, deployment_round, error):
        index = deployment_round.index
        deployment_round.failure_reason = str(error)
        self.logger.error(f"Round {index} failed: {error}")
        self._emit(run, "rollback_triggered", index, reason=str(error), error=type(error).__name__)

        errors = await self.rollback(run.fleet, deployment_round, run.members, run.config)
        self._emit(run, "rollback_completed", index,
                   terminated=list(deployment_round.launched), errors=errors)

        if isinstance(error, Cancelled):
            return self._finish(run, OutcomeStatus.FAILED, reason="cancelled")

        reason = f"round {index} failed: {error}; deployment partially applied up to round {index - 1}"
        previous = run.members[deployment_round.replaced[0]].version
        return self._finish(run, OutcomeStatus.ROLLED_BACK, reason=reason, previous_version=previous)

    def _finish(self, run, status, reason=None, version=None, previous_version=None):
        committed = [r for r in run.rounds if r.state == RoundState.COMMITTED]
        elapsed = self.clock() - run.started
        self._emit(run, "deployment_finished", status=status.value, reason=reason,
                   rounds_committed=len(committed))

        if status != OutcomeStatus.SUCCEEDED:
            self.logger.warning(f"Deployment {status.value}: {reason} ({len(committed)} rounds committed)")

        return DeploymentOutcome(
            status=status,
            version=version,
            previous_version=previous_version or run.previous_version,
            reason=reason,
            rounds_committed=len(committed),
            rounds=tuple(run.rounds),
            replaced=tuple(m for r in committed for m in r.replaced),
            launched=tuple(m for r in committed for m in r.launched),
            skipped=tuple(run.skipped),
            events=tuple(run.events.events),
            elapsed_s=elapsed,
        )
