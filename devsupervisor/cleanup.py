"""
Stale dev server cleanup, scoped to a single project directory.

Before each restart attempt the self-healing loop removes framework lock
files and kills orphaned dev servers that would block a fresh start. Only
processes whose working directory is the project directory (or nested under
it) are ever signalled. A process from another project that happens to hold
the same port is left alone.
"""

import logging
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

# Framework lock files (relative to project root) that block dev server startup
FRAMEWORK_LOCK_FILES = [
    ".next/dev/lock",  # Next.js
    ".nuxt/dev/lock",  # Nuxt 3
]


@dataclass
class CleanupResult:
    locks_removed: list[str] = field(default_factory=list)
    processes_killed: list[int] = field(default_factory=list)

    @property
    def anything_cleaned(self) -> bool:
        return bool(self.locks_removed or self.processes_killed)

    def to_dict(self) -> dict:
        return {"locks_removed": self.locks_removed, "processes_killed": self.processes_killed}


def listening_pids(port: int) -> list[int]:
    """PIDs with a listening socket on the given port."""
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as e:
        logger.warning(f"Cannot list network connections: {e}")
        return []

    pids = []
    for conn in connections:
        if conn.pid is None or not conn.laddr:
            continue
        if conn.status == psutil.CONN_LISTEN and conn.laddr.port == port and conn.pid not in pids:
            pids.append(conn.pid)
    return pids


def process_cwd(pid: int) -> Optional[str]:
    """Working directory of a process, or None if it is gone or unreadable."""
    try:
        return psutil.Process(pid).cwd()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def is_within(path: str, root: str) -> bool:
    """True if `path` is `root` or nested under it (by path components)."""
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def remove_framework_locks(cwd: str) -> list[str]:
    removed = []
    for rel in FRAMEWORK_LOCK_FILES:
        full = Path(cwd) / rel
        try:
            full.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove stale lock {rel}: {e}")
            continue
        removed.append(rel)
        logger.info(f"Removed stale lock: {rel}")
    return removed


def kill_stale_port_processes(cwd: str, port: int) -> list[int]:
    """SIGTERM processes listening on `port` whose working directory is inside `cwd`."""
    killed = []
    own_pid = os.getpid()

    for pid in listening_pids(port):
        if pid == own_pid:
            continue
        proc_cwd = process_cwd(pid)
        if not proc_cwd or not is_within(proc_cwd, cwd):
            logger.debug(f"Leaving pid {pid} on port {port} alone (cwd: {proc_cwd})")
            continue
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as e:
            logger.warning(f"Not allowed to kill stale process {pid}: {e}")
            continue
        killed.append(pid)
        logger.info(f"Killed stale process {pid} on port {port} (cwd: {proc_cwd})")

    return killed


def cleanup_stale_dev_server(cwd: str, port: int = None) -> CleanupResult:
    """
    Clean up stale dev server artifacts before a restart attempt.

    1. Removes framework lock files (e.g. .next/dev/lock)
    2. Kills processes listening on the expected port, but only if their
       working directory is at or under `cwd`.
    """
    result = CleanupResult(locks_removed=remove_framework_locks(cwd))
    if port:
        result.processes_killed = kill_stale_port_processes(cwd, port)
    return result
