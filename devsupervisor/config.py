"""
Configuration for the dev server supervisor.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.devsupervisor/ (or DEVSUPERVISOR_HOME).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_ports(name: str, default: str) -> list[int]:
    raw = os.environ.get(name, default)
    return [int(p) for p in raw.split(",") if p.strip()]


@dataclass
class Config:
    """Supervisor configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("DEVSUPERVISOR_HOME", str(Path.home() / ".devsupervisor")))
    db_path: Path = None
    supervisor_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("DEVSUPERVISOR_HOST", "127.0.0.1")
    port: int = int(os.environ.get("DEVSUPERVISOR_PORT", "9910"))

    # Agent-assisted repair (off by default)
    agent_repair: bool = _env_bool("AGENT_REPAIR")

    # Dev server startup
    startup_timeout: float = float(os.environ.get("DEV_SERVER_STARTUP_TIMEOUT", "20"))
    probe_ports: list[int] = field(
        default_factory=lambda: _env_ports(
            "DEV_SERVER_PROBE_PORTS", "3000,3001,4200,4321,5000,5173,5174,8000,8080,8888"
        )
    )
    probe_timeout: float = float(os.environ.get("DEV_SERVER_PROBE_TIMEOUT", "2"))
    start_retries: int = int(os.environ.get("DEV_SERVER_START_RETRIES", "3"))
    kill_timeout: float = float(os.environ.get("DEV_KILL_TIMEOUT", "5"))

    # Crash loop protection
    crash_loop_max: int = int(os.environ.get("CRASH_LOOP_MAX", "3"))
    crash_loop_window: float = float(os.environ.get("CRASH_LOOP_WINDOW", "60"))

    # Self-healing loop
    repair_max_attempts: int = int(os.environ.get("REPAIR_MAX_ATTEMPTS", "3"))
    repair_base_delay: float = float(os.environ.get("REPAIR_BASE_DELAY", "2"))
    health_timeout: float = float(os.environ.get("REPAIR_HEALTH_TIMEOUT", "5"))
    health_retries: int = int(os.environ.get("REPAIR_HEALTH_RETRIES", "3"))
    health_retry_delay: float = float(os.environ.get("REPAIR_HEALTH_RETRY_DELAY", "1"))

    # Agent repair
    agent_engage_timeout: float = float(os.environ.get("AGENT_ENGAGE_TIMEOUT", "30"))
    agent_write_timeout: float = float(os.environ.get("AGENT_WRITE_TIMEOUT", "120"))
    repair_quiet_period: float = float(os.environ.get("REPAIR_QUIET_PERIOD", "2"))
    repair_max_files: int = int(os.environ.get("REPAIR_MAX_FILES", "8"))
    repair_max_loc: int = int(os.environ.get("REPAIR_MAX_LOC", "300"))
    repair_cooldown: float = float(os.environ.get("REPAIR_COOLDOWN", "600"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.data_dir = Path(self.data_dir)
        self.db_path = self.data_dir / "devsupervisor.db"
        self.supervisor_log = self.data_dir / "devsupervisor.log"

        self.data_dir.mkdir(parents=True, exist_ok=True)


config = Config()

HOST = config.host
PORT = config.port
