"""
Repair lock: one self-healing session per project at a time.

In-memory only. It is authoritative while this supervisor process is alive;
surviving a supervisor crash is the job of the session lock file written by
sessions.py.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RepairLock:
    session_id: str
    cwd: str
    acquired_at: float = field(default_factory=time.time)
    attempt: int = 0


class RepairLocks:
    """Per-project mutual exclusion for repair sessions."""

    def __init__(self):
        self._locks: dict[str, RepairLock] = {}
        self._lock = threading.Lock()

    def acquire(self, cwd: str) -> Optional[RepairLock]:
        """Acquire the repair lock. Returns None if it is already held."""
        with self._lock:
            if cwd in self._locks:
                return None
            lock = RepairLock(session_id=str(uuid.uuid4()), cwd=cwd)
            self._locks[cwd] = lock
        logger.debug(f"Repair lock {lock.session_id[:8]} acquired for {cwd}")
        return lock

    def release(self, cwd: str):
        with self._lock:
            lock = self._locks.pop(cwd, None)
        if lock:
            logger.debug(f"Repair lock {lock.session_id[:8]} released for {cwd}")

    def is_locked(self, cwd: str) -> bool:
        with self._lock:
            return cwd in self._locks

    def get_active(self, cwd: str) -> Optional[RepairLock]:
        with self._lock:
            return self._locks.get(cwd)

    def increment_attempt(self, cwd: str):
        with self._lock:
            lock = self._locks.get(cwd)
            if lock:
                lock.attempt += 1
