"""
Self-healing loop for crashed dev servers.

Called when the process runner reports a post-start crash. Two modes,
selected by config.agent_repair (env AGENT_REPAIR):

    Legacy mode:
        crash -> lock -> backoff -> cleanup -> restart -> health check
              -> recovered | exhausted

    Agent mode:
        crash -> session -> wait for the repair agent -> safety gate
              -> quiet period -> cleanup -> restart -> health check
              -> recovered | exhausted + cooldown

The agent discovers the pending repair through the HTTP API, fixes the code
and reports progress; the loop waits on those reports before restarting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .cleanup import cleanup_stale_dev_server
from .config import config
from .events import (
    AGENT_PHASES,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_SUCCESS,
    LEVEL_WARNING,
    RepairEvent,
    RepairEventHub,
    RepairPhase,
)
from .health import check_health
from .locks import RepairLocks
from .project_config import ProjectConfigStore
from .resolver import Plan, plan_for_repair
from .sessions import RepairSessionRegistry, WaitResult
from .state import DevServerState

logger = logging.getLogger(__name__)

UNKNOWN_SESSION = "unknown"


@dataclass
class HealingSettings:
    agent_repair: bool = False
    max_attempts: int = 3
    base_delay: float = 2.0
    health_timeout: float = 5.0
    health_retries: int = 3
    health_retry_delay: float = 1.0
    agent_engage_timeout: float = 30.0
    agent_write_timeout: float = 120.0
    quiet_period: float = 2.0
    max_files: int = 8
    max_loc: int = 300
    cooldown: float = 600.0

    @classmethod
    def from_config(cls, cfg=None) -> "HealingSettings":
        cfg = cfg or config
        return cls(
            agent_repair=cfg.agent_repair,
            max_attempts=cfg.repair_max_attempts,
            base_delay=cfg.repair_base_delay,
            health_timeout=cfg.health_timeout,
            health_retries=cfg.health_retries,
            health_retry_delay=cfg.health_retry_delay,
            agent_engage_timeout=cfg.agent_engage_timeout,
            agent_write_timeout=cfg.agent_write_timeout,
            quiet_period=cfg.repair_quiet_period,
            max_files=cfg.repair_max_files,
            max_loc=cfg.repair_max_loc,
            cooldown=cfg.repair_cooldown,
        )


Emit = Callable[..., None]


class SelfHealer:
    """Restarts crashed dev servers, optionally waiting for an external repair agent."""

    def __init__(
        self,
        runner,
        store: ProjectConfigStore,
        locks: RepairLocks,
        sessions: RepairSessionRegistry,
        state: DevServerState,
        events: RepairEventHub,
        settings: HealingSettings = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        health_check=check_health,
        cleanup=cleanup_stale_dev_server,
        plan_resolver: Callable[..., Plan] = plan_for_repair,
    ):
        self.runner = runner
        self.store = store
        self.locks = locks
        self.sessions = sessions
        self.state = state
        self.events = events
        self.settings = settings or HealingSettings.from_config()
        self._sleep = sleep
        self._health_check = health_check
        self._cleanup = cleanup
        self._resolve_plan = plan_resolver

    def is_repairing(self, cwd: str) -> bool:
        return self.locks.is_locked(cwd)

    async def heal(self, cwd: str, exit_code: int, crash_output: str, max_attempts: int = None) -> bool:
        """Run the self-healing loop. Returns True if the dev server recovered."""
        max_attempts = max_attempts or self.settings.max_attempts
        if self.settings.agent_repair:
            return await self._agent_repair(cwd, exit_code, crash_output, max_attempts)
        return await self._legacy_repair(cwd, exit_code, crash_output, max_attempts)

    # Shared steps

    def _backoff(self, attempt: int) -> float:
        return self.settings.base_delay * (2 ** attempt)

    async def _restart_and_verify(
        self,
        cwd: str,
        plan: Plan,
        attempt: int,
        max_attempts: int,
        emit: Emit,
        cleanup_phase: RepairPhase,
        agent_engaged: bool = False,
    ) -> bool:
        """Clean up, restart and health-check once. True if the server is healthy."""
        cleaned = await asyncio.to_thread(self._cleanup, cwd, plan.port)
        if cleaned.anything_cleaned:
            emit(
                cleanup_phase,
                f"Cleaned up stale artifacts: {len(cleaned.locks_removed)} lock(s), "
                f"{len(cleaned.processes_killed)} process(es)",
                detail=cleaned.to_dict(),
            )

        self.runner.clear_crash_history(cwd)
        emit(RepairPhase.RESTARTING, f"Restart attempt {attempt + 1}/{max_attempts}...")

        result = await self.runner.start(plan)
        if not result.url:
            if result.error is None:
                # Running but never announced a URL: nothing to verify against
                await self.runner.stop(cwd)
            emit(
                RepairPhase.FAILED,
                f"Restart failed: {result.error or 'no URL detected'}",
                LEVEL_ERROR,
                {"error": result.error, "attempt": attempt + 1},
            )
            return False

        self.sessions.set_health_url(cwd, result.url)
        emit(RepairPhase.HEALTH_CHECK, f"Verifying server health at {result.url}...", detail={"url": result.url})
        health = await self._health_check(
            result.url,
            timeout=self.settings.health_timeout,
            retries=self.settings.health_retries,
            retry_delay=self.settings.health_retry_delay,
        )

        if health.healthy:
            recovered = "Dev server recovered after agent repair!" if agent_engaged else "Dev server recovered!"
            emit(
                RepairPhase.RECOVERED,
                f"{recovered} ({health.latency_ms}ms, HTTP {health.status_code})",
                LEVEL_SUCCESS,
                {
                    "url": result.url,
                    "statusCode": health.status_code,
                    "latencyMs": health.latency_ms,
                    "agentEngaged": agent_engaged,
                },
            )
            return True

        await self.runner.stop(cwd)
        emit(
            RepairPhase.FAILED,
            f"Health check failed: {health.error or f'HTTP {health.status_code}'}",
            LEVEL_ERROR,
            {"url": result.url, "statusCode": health.status_code, "error": health.error},
        )
        return False

    # Legacy mode

    async def _legacy_repair(self, cwd: str, exit_code: int, crash_output: str, max_attempts: int) -> bool:
        def emit(phase: RepairPhase, message: str, level: str = None, detail: dict = None):
            lock = self.locks.get_active(cwd)
            self.events.emit(RepairEvent(
                session_id=lock.session_id if lock else UNKNOWN_SESSION,
                cwd=cwd,
                phase=phase,
                attempt=lock.attempt if lock else 0,
                max_attempts=max_attempts,
                message=message,
                detail=detail,
                level=level,
            ))

        lock = self.locks.acquire(cwd)
        if not lock:
            emit(RepairPhase.ABORTED, "Self-healing already in progress for this project", LEVEL_WARNING)
            return False

        try:
            emit(
                RepairPhase.CRASH_DETECTED_LEGACY,
                f"Dev server crashed (exit code {exit_code})",
                LEVEL_ERROR,
                {"exitCode": exit_code, "outputLines": len(crash_output.split("\n"))},
            )
            emit(RepairPhase.LOCK_ACQUIRED, f"Repair session {lock.session_id[:8]} started")

            plan = self._resolve_plan(cwd, self.store)

            for attempt in range(max_attempts):
                self.locks.increment_attempt(cwd)
                delay = self._backoff(attempt)
                emit(
                    RepairPhase.WAITING,
                    f"Waiting {delay:.0f}s before restart attempt {attempt + 1}/{max_attempts}...",
                    detail={"delay": delay},
                )
                await self._sleep(delay)

                if await self._restart_and_verify(cwd, plan, attempt, max_attempts, emit, RepairPhase.RESTARTING):
                    return True

            emit(
                RepairPhase.EXHAUSTED,
                f"All {max_attempts} repair attempts failed. Manual intervention required.",
                LEVEL_ERROR,
                {"crashLogPath": ".dev-crash.log"},
            )
            return False
        except Exception as e:
            logger.exception(f"Self-healing loop failed for {cwd}")
            emit(RepairPhase.ABORTED, f"Self-healing stopped by an unexpected error: {e}", LEVEL_ERROR)
            return False
        finally:
            self.locks.release(cwd)

    # Agent mode

    async def _agent_repair(self, cwd: str, exit_code: int, crash_output: str, max_attempts: int) -> bool:
        cooldowns = self.state.cooldowns
        if cooldowns.is_active(cwd):
            lock = self.locks.get_active(cwd)
            self.events.emit(RepairEvent(
                session_id=lock.session_id if lock else UNKNOWN_SESSION,
                cwd=cwd,
                phase=RepairPhase.ABORTED,
                attempt=0,
                max_attempts=max_attempts,
                message="In cooldown period, skipping auto-repair",
                detail={"cooldownRemaining": round(cooldowns.remaining(cwd))},
                level=LEVEL_WARNING,
            ))
            return False

        lock = self.locks.acquire(cwd)
        if not lock:
            self.events.emit(RepairEvent(
                session_id=UNKNOWN_SESSION,
                cwd=cwd,
                phase=RepairPhase.ABORTED,
                attempt=0,
                max_attempts=max_attempts,
                message="Self-healing already in progress for this project",
                level=LEVEL_WARNING,
            ))
            return False

        session = None
        try:
            session = self.sessions.create(cwd, exit_code, max_attempts, crash_output)
            repair_id = session.repair_id

            def emit(phase: RepairPhase, message: str, level: str = LEVEL_INFO, detail: dict = None):
                # The agent reads the session, so every phase is recorded there too
                self.sessions.update_phase(repair_id, phase, message, detail)
                self.events.emit(RepairEvent(
                    session_id=repair_id,
                    cwd=cwd,
                    phase=phase,
                    attempt=session.attempt,
                    max_attempts=max_attempts,
                    message=message,
                    detail=detail,
                    repair_id=repair_id,
                    level=level,
                ))

            emit(
                RepairPhase.CRASH_DETECTED,
                f"Dev server crashed (exit code {exit_code})",
                LEVEL_ERROR,
                {
                    "exitCode": exit_code,
                    "outputLines": len(crash_output.split("\n")),
                    "crashLogPath": session.crash_log_path,
                },
            )
            emit(
                RepairPhase.REPAIR_STARTED,
                f"Repair session {repair_id[:8]} started, waiting for the repair agent",
                detail={"repairId": repair_id, "crashLogPath": session.crash_log_path},
            )

            plan = self._resolve_plan(cwd, self.store)

            for attempt in range(max_attempts):
                self.sessions.increment_attempt(cwd)
                self.locks.increment_attempt(cwd)
                emit(
                    RepairPhase.AWAITING_AGENT,
                    f"Waiting for the repair agent to engage (attempt {attempt + 1}/{max_attempts})...",
                    detail={"crashLogPath": session.crash_log_path},
                )

                engaged = await self.sessions.wait_for_phase(
                    repair_id, AGENT_PHASES, self.settings.agent_engage_timeout
                ) == WaitResult.SIGNALED

                if engaged:
                    if session.phase != RepairPhase.AGENT_WROTE_FILES:
                        written = await self.sessions.wait_for_phase(
                            repair_id, RepairPhase.AGENT_WROTE_FILES, self.settings.agent_write_timeout
                        )
                        if written == WaitResult.TIMEOUT:
                            emit(
                                RepairPhase.READY_TO_RESTART,
                                "Agent timed out writing files, attempting restart anyway",
                                LEVEL_WARNING,
                            )

                    if (
                        session.files_changed > self.settings.max_files
                        or session.lines_changed > self.settings.max_loc
                    ):
                        emit(
                            RepairPhase.FAILED_REQUIRES_HUMAN,
                            f"Agent changes exceed safety threshold ({session.files_changed} files, "
                            f"~{session.lines_changed} LOC). Please review manually.",
                            LEVEL_ERROR,
                            {
                                "filesChanged": session.files_changed,
                                "linesChanged": session.lines_changed,
                                "maxFiles": self.settings.max_files,
                                "maxLoc": self.settings.max_loc,
                            },
                        )
                        return False

                    emit(
                        RepairPhase.READY_TO_RESTART,
                        f"File writes complete, waiting {self.settings.quiet_period:g}s for watchers to settle...",
                    )
                    await self._sleep(self.settings.quiet_period)
                else:
                    emit(RepairPhase.READY_TO_RESTART, "No agent activity, attempting restart (transient crash?)")

                if await self._restart_and_verify(
                    cwd, plan, attempt, max_attempts, emit, RepairPhase.READY_TO_RESTART, agent_engaged=engaged
                ):
                    return True

            emit(
                RepairPhase.EXHAUSTED,
                f"All {max_attempts} repair attempts failed.",
                LEVEL_ERROR,
                {"crashLogPath": session.crash_log_path},
            )
            cooldowns.enter(cwd, self.settings.cooldown)
            emit(
                RepairPhase.COOLDOWN,
                f"Entering {self.settings.cooldown / 60:g}-minute cooldown period...",
                LEVEL_WARNING,
                {"cooldown": self.settings.cooldown, "cooldownExpiresAt": time.time() + self.settings.cooldown},
            )
            emit(
                RepairPhase.FAILED_REQUIRES_HUMAN,
                "All repair attempts exhausted. Manual intervention required.",
                LEVEL_ERROR,
                {"crashLogPath": session.crash_log_path},
            )
            return False
        except Exception as e:
            logger.exception(f"Agent repair loop failed for {cwd}")
            self.events.emit(RepairEvent(
                session_id=session.repair_id if session else lock.session_id,
                cwd=cwd,
                phase=RepairPhase.FAILED_REQUIRES_HUMAN,
                attempt=session.attempt if session else 0,
                max_attempts=max_attempts,
                message=f"Repair stopped by an unexpected error: {e}",
                repair_id=session.repair_id if session else None,
                level=LEVEL_ERROR,
            ))
            return False
        finally:
            if session:
                self.sessions.remove(cwd)
            self.locks.release(cwd)
