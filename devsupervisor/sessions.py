"""
Repair session registry for agent-assisted repair.

Bridges two actors: the self-healing loop, which blocks in wait_for_phase(),
and the external repair agent, which reports progress through
update_phase() (via the HTTP API). Each session is mirrored to a
.dev-repair.lock file in the project directory carrying this supervisor's
identity, so a restarted supervisor can recognise and discard a lock left
behind by a dead one.

Flow:
    1. The loop creates a session and calls wait_for_phase()
    2. The agent reports progress -> update_phase()
    3. update_phase() resolves matching waiters -> the loop continues
"""

import asyncio
import json
import logging
import os
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import psutil

from .events import AGENT_PHASES, RepairPhase

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".dev-repair.lock"
LATEST_CRASH_LOG = ".dev-crash.log"
CRASH_LOG_PATTERN = re.compile(r"^\.dev-crash\.[a-f0-9]{8}\.log$")
CRASH_LOG_MAX_AGE = 3600  # seconds
CRASH_LOG_TAIL_LINES = 30


class WaitResult(str, Enum):
    SIGNALED = "signaled"
    TIMEOUT = "timeout"


def supervisor_identity() -> dict:
    """Identity of this supervisor process: pid plus its creation time."""
    pid = os.getpid()
    try:
        started = psutil.Process(pid).create_time()
    except psutil.Error:
        started = None
    return {"pid": pid, "startedAt": started}


@dataclass
class RepairStep:
    phase: RepairPhase
    message: str
    timestamp: float = field(default_factory=time.time)
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "details": self.details,
        }


@dataclass
class RepairSession:
    repair_id: str
    cwd: str
    exit_code: int
    crash_log_path: str  # relative to the project root
    max_attempts: int
    phase: RepairPhase = RepairPhase.CRASH_DETECTED
    attempt: int = 0
    created_at: float = field(default_factory=time.time)
    pid: int = field(default_factory=os.getpid)
    agent_engaged: bool = False
    files_changed: int = 0
    lines_changed: int = 0
    health_url: Optional[str] = None
    step_history: list[RepairStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "repair_id": self.repair_id,
            "cwd": self.cwd,
            "exit_code": self.exit_code,
            "crash_log_path": self.crash_log_path,
            "phase": self.phase.value,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "pid": self.pid,
            "agent_engaged": self.agent_engaged,
            "files_changed": self.files_changed,
            "lines_changed": self.lines_changed,
            "health_url": self.health_url,
            "step_history": [s.to_dict() for s in self.step_history],
        }


@dataclass
class _Waiter:
    repair_id: str
    targets: frozenset
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop


def _settle(future: asyncio.Future, result: WaitResult):
    if not future.done():
        future.set_result(result)


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _crash_report(repair_id: str, exit_code: int, cwd: str, output: str, unique_log: str = None) -> str:
    header = [
        "=== Dev Server Crash Report ===",
        f"Repair ID: {repair_id}",
        f"Time: {datetime.now(timezone.utc).isoformat()}",
        f"Exit Code: {exit_code}",
        f"Project: {cwd}",
    ]
    if unique_log:
        header.append(f"Unique log: {unique_log}")
    header += ["", f"--- Output (last {CRASH_LOG_TAIL_LINES} lines) ---", "", ""]
    return "\n".join(header) + output + "\n"


def cleanup_stale_crash_logs(cwd: str, max_age: float = CRASH_LOG_MAX_AGE):
    """Delete per-repair crash logs whose report time is older than max_age seconds."""
    try:
        entries = list(os.scandir(cwd))
    except OSError:
        return

    now = datetime.now(timezone.utc)
    for entry in entries:
        if not CRASH_LOG_PATTERN.match(entry.name):
            continue
        try:
            with open(entry.path, encoding="utf-8") as f:
                match = re.search(r"Time:\s*(.+)", f.read())
            if not match:
                continue
            written = datetime.fromisoformat(match.group(1).strip())
            if written.tzinfo is None:
                written = written.replace(tzinfo=timezone.utc)
            if (now - written).total_seconds() > max_age:
                os.unlink(entry.path)
                logger.debug(f"Removed stale crash log {entry.name}")
        except (OSError, ValueError) as e:
            logger.debug(f"Skipping crash log {entry.name}: {e}")


class RepairSessionRegistry:
    """Active repair sessions keyed by project path."""

    def __init__(self, identity: dict = None):
        self.identity = identity or supervisor_identity()
        self._sessions: dict[str, RepairSession] = {}
        self._waiters: dict[str, list[_Waiter]] = {}
        self._lock = threading.Lock()

    # Lock file

    def _write_lock_file(self, session: RepairSession):
        data = {
            "repairId": session.repair_id,
            "pid": self.identity["pid"],
            "startedAt": self.identity.get("startedAt"),
            "attempt": session.attempt,
            "status": session.phase.value,
            "createdAt": session.created_at,
            "crashLogPath": session.crash_log_path,
        }
        try:
            (Path(session.cwd) / LOCK_FILENAME).write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write repair lock file for {session.cwd}: {e}")

    @staticmethod
    def _remove_lock_file(cwd: str):
        try:
            (Path(cwd) / LOCK_FILENAME).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove repair lock file for {cwd}: {e}")

    def rehydrate_lock(self, cwd: str) -> Optional[dict]:
        """
        Inspect a lock file left on disk.

        A lock written by a different supervisor (pid or start time mismatch)
        is stale: it is deleted and None is returned. A lock carrying our own
        identity is returned as-is.
        """
        path = Path(cwd) / LOCK_FILENAME
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable repair lock for {cwd}, removing: {e}")
            self._remove_lock_file(cwd)
            return None

        same_pid = data.get("pid") == self.identity["pid"]
        same_start = data.get("startedAt") in (None, self.identity.get("startedAt"))
        if not (same_pid and same_start):
            logger.info(f"Stale repair lock for {cwd} (pid {data.get('pid')} vs {self.identity['pid']}), removing")
            self._remove_lock_file(cwd)
            return None
        return data

    # Sessions

    def create(self, cwd: str, exit_code: int, max_attempts: int, crash_output: str) -> RepairSession:
        """Create a repair session, write its crash logs and lock file."""
        repair_id = str(uuid.uuid4())
        crash_log_path = f".dev-crash.{repair_id[:8]}.log"

        try:
            (Path(cwd) / crash_log_path).write_text(
                _crash_report(repair_id, exit_code, cwd, crash_output), encoding="utf-8"
            )
        except OSError as e:
            logger.error(f"Failed to write crash log for {cwd}: {e}")

        try:
            (Path(cwd) / LATEST_CRASH_LOG).write_text(
                _crash_report(repair_id, exit_code, cwd, crash_output, unique_log=crash_log_path),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"Failed to write {LATEST_CRASH_LOG} for {cwd}: {e}")

        cleanup_stale_crash_logs(cwd)

        session = RepairSession(
            repair_id=repair_id,
            cwd=cwd,
            exit_code=exit_code,
            crash_log_path=crash_log_path,
            max_attempts=max_attempts,
            pid=self.identity["pid"],
        )
        with self._lock:
            self._sessions[cwd] = session
            self._write_lock_file(session)
        logger.info(f"Repair session {repair_id[:8]} created for {cwd}")
        return session

    def get(self, cwd: str) -> Optional[RepairSession]:
        with self._lock:
            return self._sessions.get(cwd)

    def _by_repair_id(self, repair_id: str) -> Optional[RepairSession]:
        for session in self._sessions.values():
            if session.repair_id == repair_id:
                return session
        return None

    def get_by_repair_id(self, repair_id: str) -> Optional[RepairSession]:
        with self._lock:
            return self._by_repair_id(repair_id)

    def has(self, cwd: str) -> bool:
        with self._lock:
            return cwd in self._sessions

    def update_phase(
        self,
        repair_id: str,
        phase: Union[RepairPhase, str],
        message: str,
        details: dict = None,
    ) -> bool:
        """Advance a session's phase and wake matching waiters. False if the session is unknown."""
        phase = RepairPhase(phase)
        with self._lock:
            session = self._by_repair_id(repair_id)
            if not session:
                return False

            session.phase = phase
            session.step_history.append(RepairStep(phase=phase, message=message, details=details))

            if phase in AGENT_PHASES and not session.agent_engaged:
                session.agent_engaged = True
                logger.info(f"Agent engaged with repair {repair_id[:8]}")

            if phase == RepairPhase.AGENT_WROTE_FILES and details:
                session.files_changed = _as_int(details.get("filesChanged", details.get("files_changed")))
                session.lines_changed = _as_int(details.get("linesChanged", details.get("lines_changed")))

            self._write_lock_file(session)

            pending = self._waiters.get(repair_id, [])
            woken = [w for w in pending if phase in w.targets]
            remaining = [w for w in pending if phase not in w.targets]
            if remaining:
                self._waiters[repair_id] = remaining
            else:
                self._waiters.pop(repair_id, None)

        self._wake(woken, WaitResult.SIGNALED)
        return True

    def increment_attempt(self, cwd: str) -> int:
        with self._lock:
            session = self._sessions.get(cwd)
            if not session:
                return 0
            session.attempt += 1
            self._write_lock_file(session)
            return session.attempt

    def set_health_url(self, cwd: str, url: str):
        with self._lock:
            session = self._sessions.get(cwd)
            if session:
                session.health_url = url

    def remove(self, cwd: str):
        """Remove a session and its lock file. Pending waiters resolve as TIMEOUT."""
        with self._lock:
            session = self._sessions.pop(cwd, None)
            woken = self._waiters.pop(session.repair_id, []) if session else []
        self._remove_lock_file(cwd)
        if session:
            logger.info(f"Repair session {session.repair_id[:8]} removed")
        self._wake(woken, WaitResult.TIMEOUT)

    # Waiting

    @staticmethod
    def _wake(waiters: list[_Waiter], result: WaitResult):
        for waiter in waiters:
            try:
                waiter.loop.call_soon_threadsafe(_settle, waiter.future, result)
            except RuntimeError:
                # The waiter's event loop is already closed
                pass

    def _unregister(self, waiter: _Waiter):
        with self._lock:
            pending = self._waiters.get(waiter.repair_id)
            if not pending or waiter not in pending:
                return
            pending.remove(waiter)
            if not pending:
                del self._waiters[waiter.repair_id]

    async def wait_for_phase(
        self,
        repair_id: str,
        targets: Union[RepairPhase, str, Iterable[Union[RepairPhase, str]]],
        timeout: float,
    ) -> WaitResult:
        """
        Wait until the session reaches one of `targets`, or time out.

        Returns SIGNALED at once if the session is already in a target phase,
        and TIMEOUT at once if the session does not exist. Removing the
        session while waiting resolves as TIMEOUT.
        """
        if isinstance(targets, (RepairPhase, str)):
            targets = [targets]
        target_set = frozenset(RepairPhase(t) for t in targets)
        loop = asyncio.get_running_loop()

        with self._lock:
            session = self._by_repair_id(repair_id)
            if session is None:
                return WaitResult.TIMEOUT
            if session.phase in target_set:
                return WaitResult.SIGNALED
            waiter = _Waiter(repair_id, target_set, loop.create_future(), loop)
            self._waiters.setdefault(repair_id, []).append(waiter)

        try:
            return await asyncio.wait_for(waiter.future, timeout)
        except asyncio.TimeoutError:
            # The phase may have landed while the timeout was firing
            with self._lock:
                session = self._by_repair_id(repair_id)
                if session is not None and session.phase in target_set:
                    return WaitResult.SIGNALED
            return WaitResult.TIMEOUT
        finally:
            self._unregister(waiter)

    def waiter_count(self, repair_id: str) -> int:
        with self._lock:
            return len(self._waiters.get(repair_id, []))

    # Agent task payload

    def repair_task(self, cwd: str, max_files: int, max_loc: int) -> dict:
        """What the external agent needs to pick up a pending repair."""
        session = self.get(cwd)
        if not session:
            return {"pending": False}

        return {
            "pending": True,
            "repair_id": session.repair_id,
            "crash_log_path": session.crash_log_path,
            "exit_code": session.exit_code,
            "attempt": session.attempt,
            "max_attempts": session.max_attempts,
            "phase": session.phase.value,
            "health_url": session.health_url,
            "last_events": [
                {"phase": s.phase.value, "message": s.message, "ts": s.timestamp}
                for s in session.step_history[-5:]
            ],
            "instructions": [
                f"Read the crash log at {session.crash_log_path} in the project root.",
                f"Report progress to /api/repair/{session.repair_id}/progress as you go "
                "(agent_started, agent_reading_log, agent_applying_fix, agent_wrote_files).",
                "Report files_changed and lines_changed with agent_wrote_files.",
                "Do not start or stop the dev server yourself; the supervisor restarts it.",
            ],
            "safety_limits": {
                "max_files": max_files,
                "max_lines_changed": max_loc,
                "no_terminal_injection": True,
            },
        }
