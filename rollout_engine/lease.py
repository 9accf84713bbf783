import threading
import uuid
from contextlib import contextmanager
from .errors import Busy
from .logger import get_logger


class FleetLeaseManager:
    """Hands out at most one deployment lease per fleet id"""

    def __init__(self):
        self._leases = {}
        self._lock = threading.Lock()
        self.logger = get_logger("lease")

    def acquire(self, fleet_id):
        with self._lock:
            if fleet_id in self._leases:
                self.logger.error(f"Lease for fleet {fleet_id} is already held")
                raise Busy(fleet_id)
            token = uuid.uuid4().hex
            self._leases[fleet_id] = token
        self.logger.debug(f"Lease acquired for fleet {fleet_id}")
        return token

    def release(self, fleet_id, token):
        with self._lock:
            if self._leases.get(fleet_id) != token:
                # Stale token, the lease belongs to someone else now
                self.logger.warning(f"Ignoring release of fleet {fleet_id} with a stale token")
                return False
            del self._leases[fleet_id]
        self.logger.debug(f"Lease released for fleet {fleet_id}")
        return True

    def is_held(self, fleet_id):
        with self._lock:
            return fleet_id in self._leases

    @contextmanager
    def lease(self, fleet_id):
        token = self.acquire(fleet_id)
        try:
            yield token
        finally:
            self.release(fleet_id, token)


_DEFAULT_LEASES = FleetLeaseManager()


def default_lease_manager():
    """Lease manager shared by every engine in the process that is not given its own"""
    return _DEFAULT_LEASES
