import asyncio
import time
from .models import Health, PollResult, PollStatus
from .retry import RetryPolicy, call_with_retry
from .logger import get_logger


class HealthPoller:
    """Bounded polling of the health oracle for a set of members"""

    def __init__(self, oracle, interval_s, timeout_s, retry_policy=None, clock=time.monotonic):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.oracle = oracle
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.logger = get_logger("health")

    async def _check(self, member_id):
        status = await call_with_retry(
            lambda: self.oracle.check(member_id),
            self.retry_policy,
            description=f"health check of {member_id}",
        )
        return Health(status)

    async def _wait(self, delay, cancel_event):
        """Sleep for delay, returning True if cancelled first"""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def poll(self, member_ids, cancel_event=None):
        """Poll until all members are HEALTHY, one is UNHEALTHY, time runs out or we are cancelled.

        UNKNOWN is never a verdict; the member just stays pending. Members that
        reached HEALTHY are not polled again.
        """
        start = self.clock()
        statuses = {member_id: Health.UNKNOWN for member_id in member_ids}
        pending = sorted(statuses)
        polls = 0

        def result(status, member_id=None):
            return PollResult(
                status=status,
                member_id=member_id,
                statuses=dict(statuses),
                polls=polls,
                elapsed_s=self.clock() - start,
            )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning("Health polling cancelled")
                return result(PollStatus.CANCELLED)

            if pending:
                remaining = max(0.0, self.timeout_s - (self.clock() - start))
                polls += 1
                try:
                    # A check that never answers must not outlive the round budget
                    observed = await asyncio.wait_for(
                        asyncio.gather(*(self._check(member_id) for member_id in pending)),
                        timeout=remaining,
                    )
                except asyncio.TimeoutError:
                    self.logger.warning(f"Health checks did not answer within {self.timeout_s}s for {pending}")
                    return result(PollStatus.TIMED_OUT)
                for member_id, status in zip(pending, observed):
                    statuses[member_id] = status
                    self.logger.debug(f"Poll {polls}: {member_id} is {status.value}")

                unhealthy = [m for m in pending if statuses[m] == Health.UNHEALTHY]
                if unhealthy:
                    self.logger.warning(f"Member {unhealthy[0]} reported UNHEALTHY after {polls} polls")
                    return result(PollStatus.UNHEALTHY, unhealthy[0])

                pending = [m for m in pending if statuses[m] != Health.HEALTHY]

            if not pending:
                self.logger.info(f"All {len(statuses)} members healthy after {polls} polls")
                return result(PollStatus.ALL_HEALTHY)

            remaining = self.timeout_s - (self.clock() - start)
            if remaining <= 0:
                self.logger.warning(f"Health polling timed out after {self.timeout_s}s, still waiting on {pending}")
                return result(PollStatus.TIMED_OUT)

            if await self._wait(min(self.interval_s, remaining), cancel_event):
                self.logger.warning("Health polling cancelled")
                return result(PollStatus.CANCELLED)
