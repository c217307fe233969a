"""
Repair phases and progress events.

Every transition of the self-healing loop is published as a RepairEvent
through the RepairEventHub. Observers (the SSE stream, tests) are called
fire-and-forget; a failing observer never affects the loop.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class RepairPhase(str, Enum):
    # Legacy mode (process-level restart only)
    CRASH_DETECTED_LEGACY = "crash-detected"
    LOCK_ACQUIRED = "lock-acquired"
    WAITING = "waiting"
    RESTARTING = "restarting"
    HEALTH_CHECK = "health-check"
    RECOVERED = "recovered"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"

    # Agent-assisted mode (code-level repair)
    CRASH_DETECTED = "crash_detected"
    REPAIR_STARTED = "repair_started"
    AWAITING_AGENT = "awaiting_agent"
    AGENT_STARTED = "agent_started"
    AGENT_READING_LOG = "agent_reading_log"
    AGENT_APPLYING_FIX = "agent_applying_fix"
    AGENT_WROTE_FILES = "agent_wrote_files"
    READY_TO_RESTART = "ready_to_restart"
    VERIFYING_FIX = "verifying_fix"
    COOLDOWN = "cooldown"
    FAILED_REQUIRES_HUMAN = "failed_requires_human"


TERMINAL_PHASES = frozenset([
    RepairPhase.RECOVERED,
    RepairPhase.EXHAUSTED,
    RepairPhase.ABORTED,
    RepairPhase.FAILED_REQUIRES_HUMAN,
])

# Phases only the external repair agent reports
AGENT_PHASES = frozenset([
    RepairPhase.AGENT_STARTED,
    RepairPhase.AGENT_READING_LOG,
    RepairPhase.AGENT_APPLYING_FIX,
    RepairPhase.AGENT_WROTE_FILES,
])

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"
LEVEL_SUCCESS = "success"


@dataclass
class RepairEvent:
    session_id: str
    cwd: str
    phase: RepairPhase
    attempt: int
    max_attempts: int
    message: str
    timestamp: float = field(default_factory=time.time)
    detail: Optional[dict[str, Any]] = None
    repair_id: Optional[str] = None
    level: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "phase": self.phase.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "message": self.message,
            "timestamp": self.timestamp,
            "detail": self.detail,
            "repair_id": self.repair_id,
            "level": self.level,
        }


class RepairEventHub:
    """Fans repair events out to registered observers."""

    def __init__(self):
        self._observers: list[Callable[[RepairEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, observer: Callable[[RepairEvent], None]):
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: Callable[[RepairEvent], None]):
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def emit(self, event: RepairEvent):
        level = f" [{event.level}]" if event.level else ""
        log = logger.warning if event.level in (LEVEL_WARNING, LEVEL_ERROR) else logger.info
        log(f"[self-heal] [{event.session_id[:8]}]{level} {event.phase.value}: {event.message}")

        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception as e:
                logger.error(f"Repair event observer failed: {e}")
