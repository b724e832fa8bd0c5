"""Session lifecycle states and per-key locks."""
import threading
from contextlib import contextmanager

STATE_STARTING = "starting"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_TERMINATED = "terminated"

LIVE_STATES = {STATE_STARTING, STATE_RUNNING}
TERMINAL_STATES = {STATE_COMPLETED, STATE_FAILED, STATE_TERMINATED}


class KeyedLocks:
    """One re-entrant lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._locks = {}  # key -> [RLock, users]

    @contextmanager
    def hold(self, key):
        with self._lock:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.RLock(), 0]
                self._locks[key] = slot
            slot[1] += 1
        slot[0].acquire()
        try:
            yield
        finally:
            slot[0].release()
            with self._lock:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._locks)
