import time
from .models import DeploymentEvent
from .logger import get_logger


class EventLog:
    """Append-only, ordered record of what a deployment did.

    Listeners get every event as it is appended. Events only inform, so a
    listener that raises is logged and skipped.
    """

    def __init__(self, listeners=None, clock=time.time):
        self.events = []
        self.listeners = list(listeners or [])
        self.clock = clock
        self.logger = get_logger("events")

    def append(self, kind, round_index=None, in_service=None, **detail):
        event = DeploymentEvent(
            seq=len(self.events) + 1,
            kind=kind,
            round_index=round_index,
            in_service=in_service,
            detail=detail,
            timestamp=self.clock(),
        )
        self.events.append(event)
        self.logger.debug(f"event #{event.seq} {kind} round={round_index} {detail}")

        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                self.logger.exception(f"Event listener {listener!r} failed on {kind}")
        return event

    def of_kind(self, kind):
        return [e for e in self.events if e.kind == kind]
