"""
Process runner for project dev servers.

One running process per project path. Lifecycle:
    start -> wait for "ready" -> running
    stop -> SIGTERM the process tree -> SIGKILL after a grace period

Readiness detection:
    1. Scan stdout/stderr for a localhost URL
    2. On startup timeout, HEAD-probe common ports

Commands are pre-validated SafeCommands and always executed as an argv
vector, never through a shell. Startup failures are classified from stderr
and remediated (retry, install dependencies, free the port) within a
bounded number of attempts. Post-start crashes are recorded in the crash
history and reported to the registered crash handler.
"""

import asyncio
import logging
import os
import re
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import psutil

from .cleanup import listening_pids
from .commands import PACKAGE_MANAGERS, SafeCommand, command_to_string, validate_command, validate_plan
from .health import probe_ports
from .project_config import ProjectConfigStore
from .resolver import Plan, detect_package_manager
from .state import DevServerState, ProcessInfo

logger = logging.getLogger(__name__)

READY_URL_PATTERN = re.compile(r"https?://(?:localhost|127\.0\.0\.1):\d+")
PORT_PATTERN = re.compile(r"(?:address already in use\s+\S*?:|\bport\s+)(\d{2,5})", re.IGNORECASE)

EXTRA_PATHS = [
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/opt/homebrew/sbin",
    "~/.nvm/current/bin",
    "~/.volta/bin",
    "~/.fnm/current/bin",
    "/usr/local/share/npm/bin",
]

OUTPUT_TAIL_LINES = 200
CRASH_OUTPUT_LINES = 30
ERROR_EXCERPT_CHARS = 500
EBADF_RETRY_DELAY = 0.5
PORT_FREE_DELAY = 1.0
INSTALL_TIMEOUT = 600


class StartupError(str, Enum):
    EBADF = "ebadf"
    MISSING_DEPS = "missing-deps"
    PORT_IN_USE = "port-in-use"


def detect_ready_url(text: str) -> Optional[str]:
    """Find a localhost URL announced by a dev server."""
    match = READY_URL_PATTERN.search(text)
    return match.group(0) if match else None


def classify_startup_error(output: str) -> Optional[StartupError]:
    """Map captured stderr to a known, remediable failure."""
    lower = output.lower()
    if "ebadf" in lower or "bad file descriptor" in lower:
        return StartupError.EBADF
    if (
        "cannot find module" in lower
        or "module not found" in lower
        or "err_module_not_found" in lower
        or "could not resolve" in lower
        or ("enoent" in lower and "node_modules" in lower)
    ):
        return StartupError.MISSING_DEPS
    if "eaddrinuse" in lower or ("port" in lower and "already in use" in lower):
        return StartupError.PORT_IN_USE
    return None


def extract_port(output: str) -> Optional[int]:
    """Extract the port from `address already in use HOST:NNNN` or `port NNNN`."""
    match = PORT_PATTERN.search(output)
    return int(match.group(1)) if match else None


def build_env(base: dict = None) -> dict:
    """Environment for dev servers: base env, no browser auto-open, common tool paths."""
    env = dict(os.environ if base is None else base)
    env["BROWSER"] = "none"
    current = env.get("PATH") or "/usr/bin:/bin"
    parts = current.split(os.pathsep)
    missing = [p for p in (os.path.expanduser(x) for x in EXTRA_PATHS) if p not in parts]
    if missing:
        env["PATH"] = os.pathsep.join(missing + [current])
    return env


def terminate_tree(pid: int, timeout: float, graceful: bool = True):
    """Terminate a process and all its descendants. Safe to call on dead processes."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        procs = [parent] + parent.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = [parent]

    if graceful:
        for proc in procs:
            try:
                proc.send_signal(signal.SIGTERM)
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.warning(f"Cannot signal pid {proc.pid}: {e}")
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        if alive:
            logger.warning(f"Process tree {pid} did not stop gracefully, forcing kill")
    else:
        alive = procs

    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot kill pid {proc.pid}: {e}")
    psutil.wait_procs(alive, timeout=2)


def free_port(port: int) -> list[int]:
    """Forcibly kill whatever listens on a port."""
    killed = []
    for pid in listening_pids(port):
        if pid == os.getpid():
            continue
        try:
            os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(f"Could not free port {port} (pid {pid}): {e}")
            continue
        killed.append(pid)
    return killed


@dataclass
class StartResult:
    url: Optional[str] = None
    pid: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {"url": self.url, "pid": self.pid, "error": self.error, "error_code": self.error_code}


@dataclass
class CrashReport:
    cwd: str
    exit_code: int
    output: str


@dataclass
class _Spawned:
    """A child process during startup, plus everything its threads collected."""

    cwd: str
    process: Optional[subprocess.Popen] = None
    url: Optional[str] = None
    exited: bool = False
    exit_code: Optional[int] = None
    capturing: bool = True
    stderr: list[str] = field(default_factory=list)
    tail: deque = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    settled: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    readers: list[threading.Thread] = field(default_factory=list)
    on_exit: Optional[Callable[[Optional[int]], None]] = None

    @property
    def stderr_text(self) -> str:
        return "".join(self.stderr)

    def tail_text(self, lines: int) -> str:
        with self.lock:
            return "".join(list(self.tail)[-lines:])


class ProcessRunner:
    """Owns the live dev server process of each project."""

    def __init__(
        self,
        state: DevServerState,
        store: ProjectConfigStore,
        startup_timeout: float = 20.0,
        probe_ports: list[int] = None,
        probe_timeout: float = 2.0,
        start_retries: int = 3,
        kill_timeout: float = 5.0,
        base_env: dict = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        port_prober: Callable = probe_ports,
    ):
        self.state = state
        self.store = store
        self.startup_timeout = startup_timeout
        self.probe_ports = list(probe_ports or [])
        self.probe_timeout = probe_timeout
        self.start_retries = start_retries
        self.kill_timeout = kill_timeout
        self._base_env = base_env
        self._popen = popen
        self._port_prober = port_prober
        self._sleep = asyncio.sleep
        self._on_crash: Optional[Callable[[CrashReport], None]] = None
        self._on_output: Optional[Callable[[str, str], None]] = None

    @classmethod
    def from_config(cls, state: DevServerState, store: ProjectConfigStore, cfg) -> "ProcessRunner":
        return cls(
            state,
            store,
            startup_timeout=cfg.startup_timeout,
            probe_ports=cfg.probe_ports,
            probe_timeout=cfg.probe_timeout,
            start_retries=cfg.start_retries,
            kill_timeout=cfg.kill_timeout,
        )

    def set_crash_handler(self, callback: Callable[[CrashReport], None]):
        """Set callback for post-start crashes: callback(CrashReport)."""
        self._on_crash = callback

    def set_output_callback(self, callback: Callable[[str, str], None]):
        """Set callback for process output: callback(cwd, text)."""
        self._on_output = callback

    # Queries

    def is_running(self, cwd: str) -> bool:
        return self.state.get(cwd) is not None

    def get_url(self, cwd: str) -> Optional[str]:
        return self.state.url(cwd)

    def get_pid(self, cwd: str) -> Optional[int]:
        info = self.state.get(cwd)
        return info.process.pid if info else None

    def is_in_crash_loop(self, cwd: str) -> bool:
        return self.state.crash_history.is_crash_loop(cwd)

    def clear_crash_history(self, cwd: str):
        self.state.crash_history.clear(cwd)

    def get_status(self, cwd: str) -> dict:
        info = self.state.get(cwd)
        return {
            "running": info is not None,
            "url": info.url if info else None,
            "pid": info.process.pid if info else None,
            "starting": self.state.is_starting(cwd),
            "crash_loop": self.is_in_crash_loop(cwd),
            "crash_count": self.state.crash_history.count(cwd),
        }

    # Output capture

    def _capture_output(self, spawned: _Spawned, stream, is_stderr: bool):
        """Read a child's stream line by line, watching for the ready URL."""
        try:
            for line in iter(stream.readline, b""):
                text = line.decode("utf-8", errors="replace")
                with spawned.lock:
                    spawned.tail.append(text)
                    if is_stderr and spawned.capturing:
                        spawned.stderr.append(text)

                if spawned.url is None:
                    url = detect_ready_url(text)
                    if url:
                        logger.info(f"START [{Path(spawned.cwd).name}] URL detected: {url}")
                        spawned.url = url
                        spawned.settled.set()

                if self._on_output:
                    try:
                        self._on_output(spawned.cwd, text)
                    except Exception as e:
                        logger.error(f"Output callback failed for {spawned.cwd}: {e}")
        except (OSError, ValueError) as e:
            logger.debug(f"Output capture ended for {spawned.cwd}: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _watch_exit(self, spawned: _Spawned):
        code = spawned.process.wait()
        for reader in spawned.readers:
            reader.join(timeout=2)
        with spawned.lock:
            spawned.exited = True
            spawned.exit_code = code
            handler = spawned.on_exit
        spawned.settled.set()
        if handler:
            handler(code)

    def _spawn(self, plan: Plan) -> _Spawned:
        spawned = _Spawned(cwd=plan.cwd)
        name = Path(plan.cwd).name
        logger.info(f"START [{name}] Spawning: {command_to_string(plan.command)} (shell: false)")

        try:
            spawned.process = self._popen(
                plan.command.argv(),
                cwd=plan.effective_cwd,
                env=build_env(self._base_env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                shell=False,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"FAIL [{name}] Spawn failed: {e}")
            spawned.stderr.append(f"Failed to spawn process: {e}")
            spawned.exited = True
            spawned.settled.set()
            return spawned

        logger.info(f"START [{name}] Process started (pid={spawned.process.pid})")
        for stream, is_stderr in ((spawned.process.stdout, False), (spawned.process.stderr, True)):
            reader = threading.Thread(
                target=self._capture_output,
                args=(spawned, stream, is_stderr),
                daemon=True,
            )
            spawned.readers.append(reader)
            reader.start()

        threading.Thread(target=self._watch_exit, args=(spawned,), daemon=True).start()
        return spawned

    def _attach_exit_handler(self, spawned: _Spawned, info: ProcessInfo):
        cwd = spawned.cwd

        def on_exit(code: Optional[int]):
            self.state.discard(cwd, info)
            if info.stopping:
                logger.info(f"START [{Path(cwd).name}] Process stopped (code={code})")
                return

            logger.info(f"START [{Path(cwd).name}] Process exited post-start (code={code})")
            # Negative return codes mean the process was killed by a signal
            if code is None or code <= 0:
                return

            self.state.crash_history.record(cwd)
            if self._on_crash:
                report = CrashReport(cwd=cwd, exit_code=code, output=spawned.tail_text(CRASH_OUTPUT_LINES))
                try:
                    self._on_crash(report)
                except Exception as e:
                    logger.error(f"Crash handler failed for {cwd}: {e}")

        with spawned.lock:
            already_exited = spawned.exited
            if not already_exited:
                spawned.on_exit = on_exit
        if already_exited:
            on_exit(spawned.exit_code)

    def _register(self, plan: Plan, spawned: _Spawned, url: Optional[str]) -> StartResult:
        # stderr is only kept for classifying startup failures
        with spawned.lock:
            spawned.capturing = False
            spawned.stderr.clear()

        info = ProcessInfo(cwd=plan.cwd, process=spawned.process, url=url)
        self.state.set(plan.cwd, info)

        if url:
            self.state.crash_history.clear(plan.cwd)
            try:
                self.store.record_success(
                    plan.cwd,
                    plan.command,
                    port=plan.port,
                    framework=plan.detection.framework,
                    script_name=plan.detection.script,
                    spawn_cwd=plan.spawn_cwd,
                )
            except Exception as e:
                logger.error(f"Could not persist LastKnownGood for {plan.cwd}: {e}")

        self._attach_exit_handler(spawned, info)
        return StartResult(url=url, pid=spawned.process.pid)

    def _record_failure(self, cwd: str, error: str):
        try:
            self.store.record_failure(cwd, error)
        except Exception as e:
            logger.error(f"Could not persist failure for {cwd}: {e}")

    def _probe_order(self, plan: Plan, stderr: str) -> list[int]:
        preferred = extract_port(stderr) or plan.port
        if preferred:
            return [preferred] + [p for p in self.probe_ports if p != preferred]
        return list(self.probe_ports)

    async def _install_dependencies(self, plan: Plan) -> bool:
        """Run `<pm> install` in the spawn directory. True on success."""
        pm = plan.manager if plan.manager in PACKAGE_MANAGERS else detect_package_manager(plan.effective_cwd)
        cmd = SafeCommand(pm, ("install",))
        if not validate_command(cmd).ok:
            return False

        logger.info(f"START [{Path(plan.cwd).name}] Installing dependencies with {pm}...")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd.argv(),
                cwd=plan.effective_cwd,
                env=build_env(self._base_env),
                capture_output=True,
                text=True,
                timeout=INSTALL_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"FAIL [{Path(plan.cwd).name}] Dependency install timed out")
            return False
        except OSError as e:
            logger.warning(f"FAIL [{Path(plan.cwd).name}] Dependency install spawn error: {e}")
            return False

        if self._on_output:
            for text in (result.stdout, result.stderr):
                if text:
                    self._on_output(plan.cwd, text)
        logger.info(f"START [{Path(plan.cwd).name}] Dependency install exited (code={result.returncode})")
        return result.returncode == 0

    async def start(self, plan: Plan) -> StartResult:
        """Start the dev server described by `plan` and wait until it is ready."""
        cwd = plan.cwd
        name = Path(cwd).name

        if self.is_running(cwd):
            logger.info(f"START [{name}] Already running")
            return StartResult(error="Dev server already running for this project", error_code="ALREADY_RUNNING")
        if self.state.is_starting(cwd):
            logger.info(f"START [{name}] Already starting")
            return StartResult(error="Dev server is already starting for this project", error_code="ALREADY_STARTING")
        if self.is_in_crash_loop(cwd):
            history = self.state.crash_history
            logger.warning(f"FAIL [{name}] Crash loop detected, refusing restart")
            return StartResult(
                error=(
                    f"Dev server crashed {history.max_crashes} times in the last "
                    f"{history.window:g}s. Fix errors first."
                ),
                error_code="CRASH_LOOP",
            )

        validation = validate_plan(plan)
        if not validation.ok:
            logger.warning(f"FAIL [{name}] Plan validation failed: {validation.error}")
            return StartResult(error=f"Command validation failed: {validation.error}", error_code="INVALID_COMMAND")

        if not self.state.begin_start(cwd):
            return StartResult(error="Dev server is already starting for this project", error_code="ALREADY_STARTING")

        try:
            logger.info(f"START [{name}] Starting: {command_to_string(plan.command)}")

            for attempt in range(self.start_retries + 1):
                spawned = self._spawn(plan)
                await asyncio.to_thread(spawned.settled.wait, self.startup_timeout)

                if spawned.url:
                    logger.info(f"START [{name}] READY at {spawned.url}")
                    return self._register(plan, spawned, spawned.url)

                stderr = spawned.stderr_text

                if spawned.exited and attempt < self.start_retries:
                    kind = classify_startup_error(stderr)

                    if kind == StartupError.EBADF:
                        logger.info(f"START [{name}] EBADF on attempt {attempt + 1}, retrying")
                        await self._sleep(EBADF_RETRY_DELAY)
                        continue

                    if kind == StartupError.MISSING_DEPS:
                        if not await self._install_dependencies(plan):
                            self._record_failure(cwd, "Dependency installation failed")
                            return StartResult(error="Dependency installation failed.", error_code="INSTALL_FAILED")
                        continue

                    if kind == StartupError.PORT_IN_USE:
                        port = extract_port(stderr)
                        if port:
                            logger.info(f"START [{name}] Port {port} in use, killing occupant")
                            free_port(port)
                            await self._sleep(PORT_FREE_DELAY)
                            continue

                    self.state.crash_history.record(cwd)
                    error = f"Dev server crashed on startup.\n\n{stderr[:ERROR_EXCERPT_CHARS]}"
                    logger.warning(f"FAIL [{name}] Crashed on attempt {attempt + 1}")
                    self._record_failure(cwd, error)
                    return StartResult(error=error, error_code="STARTUP_CRASH")

                if not spawned.exited:
                    logger.info(f"START [{name}] URL not detected, probing common ports...")
                    url = await self._port_prober(self._probe_order(plan, stderr), timeout=self.probe_timeout)
                    if url:
                        logger.info(f"START [{name}] READY via probe: {url}")
                    else:
                        logger.warning(f"START [{name}] Server running but URL not detected")
                    return self._register(plan, spawned, url)

            self._record_failure(cwd, "Failed after maximum retries")
            return StartResult(
                error="Could not start the dev server after multiple attempts.",
                error_code="RETRIES_EXHAUSTED",
            )
        finally:
            self.state.end_start(cwd)

    # Stopping

    async def stop(self, cwd: str):
        """Stop a project's dev server and its whole process tree."""
        info = self.state.get(cwd)
        if not info:
            return

        info.stopping = True
        logger.info(f"STOP [{Path(cwd).name}] pid={info.process.pid}")
        if info.process.poll() is None:
            await asyncio.to_thread(terminate_tree, info.process.pid, self.kill_timeout)
        self.state.discard(cwd, info)
        logger.info(f"STOP [{Path(cwd).name}] Stopped")

    async def stop_all(self):
        logger.info("STOP ALL")
        await asyncio.gather(*(self.stop(cwd) for cwd in self.state.running_keys()))
        logger.info("All dev servers stopped")

    def emergency_kill_all(self):
        """SIGKILL every dev server tree immediately (host teardown)."""
        for cwd in self.state.running_keys():
            info = self.state.pop(cwd)
            if not info:
                continue
            info.stopping = True
            logger.info(f"STOP [{Path(cwd).name}] Emergency kill (pid={info.process.pid})")
            terminate_tree(info.process.pid, timeout=0, graceful=False)
        self.state.crash_history.clear_all()
