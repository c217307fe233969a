"""
Safe command model for dev server processes.

Commands are never stored or executed as single shell strings. A SafeCommand
is a binary from a small allow-list plus an argv vector whose items have been
checked for shell metacharacters and dangerous words. Everything that reaches
subprocess goes through validate_command() first.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Package managers the resolver can produce
PACKAGE_MANAGERS = ("npm", "pnpm", "yarn", "bun")

# Package managers plus the bare runtime and its script runner
ALLOWED_BINS = frozenset(PACKAGE_MANAGERS + ("node", "npx"))

FORBIDDEN_CHARS = re.compile(r"[;|&><$`\n\\]")

FORBIDDEN_WORDS = frozenset(["curl", "wget", "bash", "sh", "zsh", "fish", "rm", "sudo"])

# Package manager subcommands that are not references to package.json scripts
PM_SUBCOMMANDS = frozenset([
    "install", "i", "ci", "init", "publish", "pack", "link", "unlink",
    "add", "remove", "upgrade", "update", "exec", "dlx", "create",
    "x", "cache", "config", "set", "get", "info", "why", "ls", "list",
    "outdated", "prune", "rebuild", "audit", "fund", "login", "logout",
    "whoami", "version", "help", "bin", "prefix", "root",
])


@dataclass(frozen=True)
class SafeCommand:
    """A pre-validated command: allow-listed binary plus argv."""

    bin: str
    args: tuple[str, ...] = ()

    def __post_init__(self):
        # Accept lists from JSON/pydantic but keep the value hashable
        object.__setattr__(self, "args", tuple(self.args))

    def argv(self) -> list[str]:
        return [self.bin, *self.args]

    def to_dict(self) -> dict:
        return {"bin": self.bin, "args": list(self.args)}

    @classmethod
    def from_dict(cls, data: dict) -> "SafeCommand":
        return cls(bin=data["bin"], args=tuple(data.get("args") or ()))


@dataclass
class ValidationResult:
    ok: bool
    error: Optional[str] = None


def is_allowed_bin(bin: str) -> bool:
    """Check that a binary is in the allow-list."""
    return bin in ALLOWED_BINS


def is_clean_arg(arg: str) -> bool:
    """Check that an argument has no shell metacharacters and is not a dangerous word."""
    if FORBIDDEN_CHARS.search(arg):
        return False
    if arg.lower().strip() in FORBIDDEN_WORDS:
        return False
    return True


def validate_command(cmd: SafeCommand) -> ValidationResult:
    """Validate a SafeCommand: binary allow-listed, every argument clean."""
    if not is_allowed_bin(cmd.bin):
        allowed = ", ".join(sorted(ALLOWED_BINS))
        return ValidationResult(False, f'Binary "{cmd.bin}" is not in the allowlist: {allowed}')
    for arg in cmd.args:
        if not is_clean_arg(arg):
            return ValidationResult(False, f'Argument "{arg}" contains forbidden characters or patterns')
    return ValidationResult(True)


def validate_plan(plan) -> ValidationResult:
    """Validate an entire Plan: command, absolute cwd and port range."""
    result = validate_command(plan.command)
    if not result.ok:
        return result

    if not plan.cwd or not os.path.isabs(plan.cwd):
        return ValidationResult(False, f'cwd must be an absolute path, got: "{plan.cwd}"')

    if plan.port is not None and not (1 <= plan.port <= 65535):
        return ValidationResult(False, f"Port {plan.port} is out of range (1-65535)")

    return ValidationResult(True)


def extract_script_name(cmd: SafeCommand) -> Optional[str]:
    """
    Return the package.json script a command refers to, if any.

    npm run dev -> "dev", yarn dev -> "dev", npm start -> "start",
    npx vite -> None, node server.js -> None, npm install -> None.
    """
    if cmd.bin not in PACKAGE_MANAGERS or not cmd.args:
        return None

    if cmd.args[0] == "run" and len(cmd.args) >= 2:
        return cmd.args[1]

    if cmd.args[0] not in PM_SUBCOMMANDS:
        return cmd.args[0]

    return None


def parse_command_string(raw: str) -> Optional[SafeCommand]:
    """Parse a user-provided command string into a SafeCommand, or None if invalid."""
    parts = (raw or "").split()
    if not parts:
        return None

    cmd = SafeCommand(bin=parts[0], args=tuple(parts[1:]))
    result = validate_command(cmd)
    if not result.ok:
        logger.info(f"Rejected command {raw!r}: {result.error}")
        return None
    return cmd


def command_to_string(cmd: SafeCommand) -> str:
    """Display form of a command. Never executed."""
    return " ".join(cmd.argv())


def read_package_json(directory) -> Optional[dict]:
    """Read package.json from a directory. Returns None if missing or unparseable."""
    try:
        with open(Path(directory) / "package.json", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def script_exists(directory, script: str) -> Optional[bool]:
    """
    Check whether package.json in `directory` declares `script`.

    Returns None when package.json cannot be read, so callers can decide
    whether an unknown answer should block them.
    """
    pkg = read_package_json(directory)
    if pkg is None:
        return None
    scripts = pkg.get("scripts") or {}
    return bool(scripts.get(script))
