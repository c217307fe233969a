"""
Dev supervisor FastAPI application.

Provides a REST API for resolving, starting and stopping project dev servers,
managing their persisted configuration, and coordinating agent-assisted
repairs. Post-start crashes are handed to the self-healing loop; its progress
is streamed to clients over Server-Sent Events at /api/repair/events.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .commands import ALLOWED_BINS, command_to_string, extract_script_name, parse_command_string, script_exists
from .config import config
from .events import AGENT_PHASES, LEVEL_INFO, RepairEvent, RepairEventHub, RepairPhase
from .healer import HealingSettings, SelfHealer
from .locks import RepairLocks
from .models import initialize_db
from .process import CrashReport, ProcessRunner
from .project_config import ProjectConfigStore
from .resolver import CONFIDENCE_HIGH, CONFIDENCE_LOW, Detection, Plan, needs_verification, plan_for_project
from .sessions import RepairSessionRegistry
from .state import DevServerState

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

file_handler = RotatingFileHandler(
    config.supervisor_log,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)
output_logger = logging.getLogger("devsupervisor.output")

# Initialize database
initialize_db()

# Shared runtime state, built once and handed to every component
state = DevServerState(crash_loop_window=config.crash_loop_window, crash_loop_max=config.crash_loop_max)
store = ProjectConfigStore()
locks = RepairLocks()
sessions = RepairSessionRegistry()
events = RepairEventHub()
runner = ProcessRunner.from_config(state, store, config)
healer = SelfHealer(runner, store, locks, sessions, state, events, settings=HealingSettings.from_config(config))

main_loop: Optional[asyncio.AbstractEventLoop] = None

SSE_KEEPALIVE = 15  # seconds


def on_crash(report: CrashReport):
    """Hand a post-start crash to the self-healing loop (called from the exit watcher thread)."""
    if locks.is_locked(report.cwd) or sessions.has(report.cwd):
        logger.info(f"Repair already in progress for {report.cwd}, ignoring crash")
        return
    if main_loop is None or main_loop.is_closed():
        logger.warning(f"No event loop to run self-healing for {report.cwd}")
        return

    future = asyncio.run_coroutine_threadsafe(
        healer.heal(report.cwd, report.exit_code, report.output),
        main_loop,
    )
    future.add_done_callback(_log_heal_outcome)


def _log_heal_outcome(future):
    if future.cancelled():
        return
    error = future.exception()
    if error:
        logger.error(f"Self-healing loop error: {error}")


def on_output(cwd: str, text: str):
    output_logger.debug(f"[{os.path.basename(cwd)}] {text.rstrip()}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    global main_loop

    logger.info("Starting dev supervisor...")
    main_loop = asyncio.get_running_loop()

    runner.set_crash_handler(on_crash)
    runner.set_output_callback(on_output)

    # Discard repair locks left behind by a previous supervisor
    for project_path in store.known_projects():
        if os.path.isdir(project_path):
            sessions.rehydrate_lock(project_path)

    yield

    logger.info("Shutting down dev supervisor...")
    await runner.stop_all()
    main_loop = None


app = FastAPI(
    title="Dev Supervisor",
    description="Dev server supervisor with self-healing restarts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for API
class StartRequest(BaseModel):
    path: str = Field(..., description="Absolute project path")
    command: Optional[str] = Field(None, description="Raw dev command, e.g. 'pnpm run dev'")


class StopRequest(BaseModel):
    path: Optional[str] = Field(None, description="Project to stop; all projects when omitted")


class PathRequest(BaseModel):
    path: str = Field(..., description="Absolute project path")


class OverrideRequest(BaseModel):
    path: str = Field(..., description="Absolute project path")
    command: str = Field(..., description="Raw dev command")
    port: Optional[int] = Field(None, ge=1, le=65535, description="Port the dev server listens on")


class ProgressRequest(BaseModel):
    phase: RepairPhase = Field(..., description="Agent phase being reported")
    message: str = Field("", description="Human-readable progress message")
    details: Optional[dict] = Field(None, description="Extra data, e.g. filesChanged/linesChanged")


class StatusResponse(BaseModel):
    running: bool
    url: Optional[str] = None
    pid: Optional[int] = None
    starting: bool = False
    crash_loop: bool = False
    crash_count: int = 0
    repair_in_progress: bool = False
    cooldown_remaining: float = 0.0


# Helper functions
def _project_path(path: Optional[str]) -> str:
    """Validate and normalise a project path from a request."""
    if not path or not os.path.isabs(path):
        raise HTTPException(status_code=400, detail="Invalid project path: must be absolute")
    return os.path.normpath(path)


def _parse_command(raw: str):
    cmd = parse_command_string(raw.strip())
    if not cmd:
        allowed = ", ".join(sorted(ALLOWED_BINS))
        raise HTTPException(status_code=400, detail=f'Invalid command: "{raw}". Only {allowed} are allowed.')
    return cmd


def _unresolved(error: str, plan: Plan) -> dict:
    return {
        "error": error,
        "error_code": "DEV_COMMAND_UNRESOLVED",
        "needs_configuration": True,
        "plan": plan.to_dict(),
    }


# Resolution
@app.get("/api/plan")
async def get_plan(path: str = Query(..., description="Absolute project path")):
    """Resolve the dev command for a project (uncached)."""
    cwd = _project_path(path)
    plan = await asyncio.to_thread(plan_for_project, cwd, store)
    return {
        "plan": plan.to_dict(),
        "needs_verification": needs_verification(plan, store.get(cwd)),
    }


# Dev server lifecycle
@app.post("/api/dev/start")
async def start_dev_server(data: StartRequest):
    """Start a project's dev server and wait until it is ready."""
    cwd = _project_path(data.path)
    if not os.path.isdir(cwd):
        raise HTTPException(status_code=400, detail=f"Not a directory: {cwd}")

    raw = (data.command or "").strip()
    if raw:
        cmd = _parse_command(raw)
        plan = Plan(
            cwd=cwd,
            manager=cmd.bin,
            command=cmd,
            confidence=CONFIDENCE_HIGH,
            reasons=["User-provided command"],
            detection=Detection(script=extract_script_name(cmd)),
        )
    else:
        plan = await asyncio.to_thread(plan_for_project, cwd, store)
        if plan.confidence == CONFIDENCE_LOW:
            logger.info(f"Refusing auto-start: low confidence ({command_to_string(plan.command)})")
            return _unresolved("Could not auto-detect dev command. Please configure it manually.", plan)

    script = extract_script_name(plan.command)
    if script and script_exists(plan.effective_cwd, script) is False:
        logger.info(f'Script "{script}" not found in package.json, refusing to start ({command_to_string(plan.command)})')
        store.clear(cwd)
        return _unresolved(
            f'Script "{script}" does not exist in package.json. Please configure the dev command.',
            plan,
        )

    result = await runner.start(plan)
    return result.to_dict()


@app.post("/api/dev/stop")
async def stop_dev_server(data: StopRequest):
    """Stop one project's dev server, or all of them."""
    if data.path:
        cwd = _project_path(data.path)
        await runner.stop(cwd)
        return {"stopped": [cwd]}

    stopped = state.running_keys()
    await runner.stop_all()
    return {"stopped": stopped}


@app.get("/api/dev/status", response_model=StatusResponse)
async def get_dev_status(path: str = Query(..., description="Absolute project path")):
    cwd = _project_path(path)
    status = runner.get_status(cwd)
    return StatusResponse(
        **status,
        repair_in_progress=locks.is_locked(cwd) or sessions.has(cwd),
        cooldown_remaining=state.cooldowns.remaining(cwd),
    )


@app.post("/api/dev/clear-crash-history")
async def clear_crash_history(data: PathRequest):
    cwd = _project_path(data.path)
    runner.clear_crash_history(cwd)
    logger.info(f"Crash history cleared for {cwd}")
    return {"ok": True}


# Persisted configuration
@app.get("/api/config")
async def get_config(path: str = Query(..., description="Absolute project path")):
    cwd = _project_path(path)
    persisted = store.get(cwd)
    return persisted.to_dict() if persisted else None


@app.put("/api/config/override")
async def set_override(data: OverrideRequest):
    """Pin the dev command (and optionally the port) for a project."""
    cwd = _project_path(data.path)
    cmd = _parse_command(data.command)
    store.set_user_override(cwd, cmd, data.port)
    logger.info(f"User override set for {cwd}: {command_to_string(cmd)}")
    return {"ok": True}


@app.delete("/api/config/override")
async def clear_override(path: str = Query(..., description="Absolute project path")):
    cwd = _project_path(path)
    store.clear_user_override(cwd)
    return {"ok": True}


@app.delete("/api/config")
async def clear_config(path: str = Query(..., description="Absolute project path")):
    cwd = _project_path(path)
    store.clear(cwd)
    return {"ok": True}


# Agent-assisted repair
@app.get("/api/repair/task")
async def get_repair_task(path: str = Query(..., description="Absolute project path")):
    """Pending repair for a project, as the repair agent needs it."""
    cwd = _project_path(path)
    return sessions.repair_task(cwd, config.repair_max_files, config.repair_max_loc)


@app.post("/api/repair/{repair_id}/progress")
async def report_repair_progress(repair_id: str, data: ProgressRequest):
    """Report repair agent progress. Only agent phases are accepted."""
    if data.phase not in AGENT_PHASES:
        allowed = ", ".join(sorted(p.value for p in AGENT_PHASES))
        raise HTTPException(status_code=400, detail=f"Invalid phase '{data.phase.value}'. Allowed: {allowed}")

    if not sessions.update_phase(repair_id, data.phase, data.message, data.details):
        raise HTTPException(status_code=404, detail=f"Repair session '{repair_id}' not found")

    session = sessions.get_by_repair_id(repair_id)
    if session:
        events.emit(RepairEvent(
            session_id=repair_id,
            cwd=session.cwd,
            phase=data.phase,
            attempt=session.attempt,
            max_attempts=session.max_attempts,
            message=data.message or data.phase.value,
            detail=data.details,
            repair_id=repair_id,
            level=LEVEL_INFO,
        ))
    return {"ok": True, "phase": data.phase.value}


@app.get("/api/repair/events")
async def stream_repair_events():
    """Stream repair events as Server-Sent Events."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def observer(event: RepairEvent):
        loop.call_soon_threadsafe(queue.put_nowait, event.to_dict())

    events.subscribe(observer)

    async def event_stream():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            events.unsubscribe(observer)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/supervisor/logs")
async def get_supervisor_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent supervisor log entries."""
    try:
        with open(config.supervisor_log, "r") as f:
            all_lines = f.readlines()
            return {"lines": all_lines[-lines:], "total": len(all_lines)}
    except FileNotFoundError:
        return {"lines": [], "total": 0}
