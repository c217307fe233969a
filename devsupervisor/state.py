"""
In-memory runtime state, keyed by project path.

One DevServerState is built at application startup and handed to the
process runner and the self-healing loop, so tests can use a fresh one.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional


class CrashHistory:
    """Sliding window of crash timestamps per project."""

    def __init__(self, window: float, max_crashes: int, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.max_crashes = max_crashes
        self._clock = clock
        self._history: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _pruned(self, key: str, now: float) -> list[float]:
        cutoff = now - self.window
        history = [t for t in self._history.get(key, []) if t > cutoff]
        if history:
            self._history[key] = history
        else:
            self._history.pop(key, None)
        return history

    def record(self, key: str):
        with self._lock:
            now = self._clock()
            self._history.setdefault(key, []).append(now)
            self._pruned(key, now)

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._pruned(key, self._clock()))

    def is_crash_loop(self, key: str) -> bool:
        return self.count(key) >= self.max_crashes

    def clear(self, key: str):
        with self._lock:
            self._history.pop(key, None)

    def clear_all(self):
        with self._lock:
            self._history.clear()


class Cooldowns:
    """Per-project expiry times during which agent-assisted repair is refused."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires: dict[str, float] = {}
        self._lock = threading.Lock()

    def enter(self, key: str, duration: float) -> float:
        with self._lock:
            expires_at = self._clock() + duration
            self._expires[key] = expires_at
            return expires_at

    def is_active(self, key: str) -> bool:
        with self._lock:
            expires_at = self._expires.get(key)
            if expires_at is None:
                return False
            if self._clock() >= expires_at:
                del self._expires[key]
                return False
            return True

    def remaining(self, key: str) -> float:
        with self._lock:
            expires_at = self._expires.get(key)
        if expires_at is None:
            return 0.0
        return max(0.0, expires_at - self._clock())

    def clear(self, key: str):
        with self._lock:
            self._expires.pop(key, None)


@dataclass
class ProcessInfo:
    """A dev server process owned by the runner."""

    cwd: str
    process: object  # subprocess.Popen
    started_at: datetime = field(default_factory=datetime.now)
    url: Optional[str] = None
    stopping: bool = False


class DevServerState:
    """Process table, URL table, in-flight starts, crash history and cooldowns."""

    def __init__(
        self,
        crash_loop_window: float = 60.0,
        crash_loop_max: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lock = threading.Lock()
        self.processes: dict[str, ProcessInfo] = {}
        self.starting: set[str] = set()
        self.crash_history = CrashHistory(crash_loop_window, crash_loop_max, clock=clock)
        self.cooldowns = Cooldowns(clock=clock)

    def get(self, cwd: str) -> Optional[ProcessInfo]:
        with self.lock:
            return self.processes.get(cwd)

    def set(self, cwd: str, info: ProcessInfo):
        with self.lock:
            self.processes[cwd] = info

    def pop(self, cwd: str) -> Optional[ProcessInfo]:
        with self.lock:
            return self.processes.pop(cwd, None)

    def discard(self, cwd: str, info: ProcessInfo):
        """Forget `info` only if it is still the registered process for `cwd`."""
        with self.lock:
            if self.processes.get(cwd) is info:
                del self.processes[cwd]

    def url(self, cwd: str) -> Optional[str]:
        with self.lock:
            info = self.processes.get(cwd)
            return info.url if info else None

    def running_keys(self) -> list[str]:
        with self.lock:
            return list(self.processes.keys())

    def begin_start(self, cwd: str) -> bool:
        """Mark a start in flight. False if one is already running or starting."""
        with self.lock:
            if cwd in self.starting or cwd in self.processes:
                return False
            self.starting.add(cwd)
            return True

    def end_start(self, cwd: str):
        with self.lock:
            self.starting.discard(cwd)

    def is_starting(self, cwd: str) -> bool:
        with self.lock:
            return cwd in self.starting
