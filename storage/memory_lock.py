# storage/memory_lock.py
import time
from threading import Lock

from orchestrator.errors import LockHeld


class InMemoryLeaseLock:
    """Process-local lease lock with the same expiry rule as DynamoLeaseLock."""

    def __init__(self, ttl_seconds=300, clock=time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.entries = {}
        self.lock = Lock()

    def ensure_table(self, **kwargs):
        return None

    def acquire(self, lock_id):
        with self.lock:
            now = self.clock()
            expires = self.entries.get(lock_id)
            if expires is not None and expires >= now:
                raise LockHeld(f"lock {lock_id} is already held")
            self.entries[lock_id] = now + self.ttl_seconds

    def release(self, lock_id):
        with self.lock:
            self.entries.pop(lock_id, None)

    def is_held(self, lock_id):
        with self.lock:
            expires = self.entries.get(lock_id)
            return expires is not None and expires >= self.clock()
