"""
Dev server command resolver.

Decides which command starts a project's dev server. Local, deterministic and
read-only: it looks at package.json, lock files and .env files, never the
network. Resolution order:

    1. User override (explicit user choice)
    2. LastKnownGood (previously worked, script still exists)
    3. Framework detection (dependencies + preferred script)
    4. Generic script detection (dev, start, develop, serve)
    5. Monorepo workspace / nested subdirectory delegation
    6. Low-confidence fallback (caller must confirm before starting)
"""

import logging
import os
import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from .commands import (
    PACKAGE_MANAGERS,
    SafeCommand,
    command_to_string,
    extract_script_name,
    read_package_json,
    validate_plan,
)
from .project_config import PersistedDevConfig, ProjectConfigStore

logger = logging.getLogger(__name__)

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

GENERIC_SCRIPTS = ("dev", "start", "develop", "serve")
DEFAULT_PORT = 3000
ENV_FILES = (".env", ".env.local", ".env.development")
VERIFY_AFTER_FAILURE_SECONDS = 5 * 60


@dataclass(frozen=True)
class FrameworkPattern:
    id: str
    packages: tuple[str, ...]
    prefer_script: str
    dev_port: int
    config_files: tuple[str, ...] = ()


FRAMEWORK_PATTERNS = [
    FrameworkPattern("nextjs", ("next",), "dev", 3000, ("next.config.js", "next.config.ts", "next.config.mjs")),
    FrameworkPattern("nuxt", ("nuxt",), "dev", 3000, ("nuxt.config.ts", "nuxt.config.js")),
    FrameworkPattern("remix", ("@remix-run/react", "@remix-run/dev"), "dev", 5173),
    FrameworkPattern("astro", ("astro",), "dev", 4321, ("astro.config.mjs", "astro.config.ts")),
    FrameworkPattern("sveltekit", ("@sveltejs/kit",), "dev", 5173, ("svelte.config.js",)),
    FrameworkPattern("vite", ("vite",), "dev", 5173, ("vite.config.ts", "vite.config.js", "vite.config.mjs")),
    FrameworkPattern("gatsby", ("gatsby",), "develop", 8000),
    FrameworkPattern("cra", ("react-scripts",), "start", 3000),
    FrameworkPattern("angular", ("@angular/core", "@angular/cli"), "start", 4200, ("angular.json",)),
    FrameworkPattern("vue", ("vue", "@vue/cli-service"), "dev", 5173),
    FrameworkPattern("express", ("express",), "dev", 3000),
    FrameworkPattern("nestjs", ("@nestjs/core",), "start:dev", 3000),
]


@dataclass
class Detection:
    """How a plan was determined."""

    framework: Optional[str] = None
    script: Optional[str] = None
    used_last_known_good: bool = False
    used_monorepo_workspace: bool = False

    def to_dict(self) -> dict:
        return {
            "framework": self.framework,
            "script": self.script,
            "used_last_known_good": self.used_last_known_good,
            "used_monorepo_workspace": self.used_monorepo_workspace,
        }


@dataclass
class Plan:
    """The complete plan for starting a dev server.

    `cwd` is the project root used as the tracking key. When the dev project
    lives in a subdirectory, `spawn_cwd` is where the process is spawned.
    """

    cwd: str
    manager: str
    command: SafeCommand
    confidence: str
    port: Optional[int] = None
    spawn_cwd: Optional[str] = None
    reasons: list[str] = field(default_factory=list)
    detection: Detection = field(default_factory=Detection)

    @property
    def effective_cwd(self) -> str:
        return self.spawn_cwd or self.cwd

    def to_dict(self) -> dict:
        return {
            "cwd": self.cwd,
            "spawn_cwd": self.spawn_cwd,
            "manager": self.manager,
            "command": self.command.to_dict(),
            "command_string": command_to_string(self.command),
            "port": self.port,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "detection": self.detection.to_dict(),
        }


def _log(cwd, msg: str):
    logger.info(f"RESOLVE [{Path(cwd).name}] {msg}")


def detect_package_manager(project_path) -> str:
    """Detect the package manager from lock files."""
    root = Path(project_path)
    if (root / "bun.lockb").exists() or (root / "bun.lock").exists():
        return "bun"
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (root / "yarn.lock").exists():
        return "yarn"
    return "npm"


def build_run_command(pm: str, script: str) -> SafeCommand:
    """Build `<pm> start`, `<pm> <script>` (yarn/pnpm) or `<pm> run <script>`."""
    if script == "start":
        return SafeCommand(pm, ("start",))
    if pm in ("yarn", "pnpm"):
        return SafeCommand(pm, (script,))
    return SafeCommand(pm, ("run", script))


def read_port_from_env(cwd) -> Optional[int]:
    """Read a PORT declaration from the project's .env files, first match wins."""
    for name in ENV_FILES:
        env_path = Path(cwd) / name
        if not env_path.is_file():
            continue
        try:
            value = dotenv_values(env_path).get("PORT")
        except (OSError, UnicodeDecodeError):
            continue
        if value and re.fullmatch(r"\s*\d+\s*", value):
            return int(value)
    return None


def _manager_for(cmd: SafeCommand, project_path) -> str:
    return cmd.bin if cmd.bin in PACKAGE_MANAGERS else detect_package_manager(project_path)


def _script_still_exists(directory, script: Optional[str]) -> Optional[bool]:
    """True/False when package.json answers, None when it cannot be read."""
    if not script:
        return True
    pkg = read_package_json(directory)
    if pkg is None:
        return None
    return bool((pkg.get("scripts") or {}).get(script))


def _workspace_globs(pkg: dict) -> list[str]:
    workspaces = pkg.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if not isinstance(workspaces, list):
        return []
    return [w for w in workspaces if isinstance(w, str)]


def find_workspace_cwd(root_path) -> Optional[str]:
    """Return the first declared workspace that has a dev or start script."""
    pkg = read_package_json(root_path)
    if not pkg:
        return None

    for ws in _workspace_globs(pkg):
        ws_path = Path(root_path) / re.sub(r"/\*$", "", ws)
        if not ws_path.is_dir():
            continue
        ws_pkg = read_package_json(ws_path)
        scripts = (ws_pkg or {}).get("scripts") or {}
        if scripts.get("dev") or scripts.get("start"):
            return str(ws_path)
    return None


def find_nested_project(project_path) -> Optional[tuple[str, str]]:
    """Scan first-level subdirectories for a package with a dev script."""
    try:
        entries = sorted(os.scandir(project_path), key=lambda e: e.name)
    except OSError:
        return None

    for entry in entries:
        if not entry.is_dir() or entry.name.startswith(".") or entry.name == "node_modules":
            continue
        sub_pkg = read_package_json(entry.path)
        if not sub_pkg:
            continue
        scripts = sub_pkg.get("scripts") or {}
        for script in GENERIC_SCRIPTS:
            if script in scripts:
                return entry.path, script
    return None


def _delegate(sub_path: str, reasons: list[str], store) -> Plan:
    sub_plan = resolve_plan(sub_path, store)
    return replace(
        sub_plan,
        reasons=reasons + sub_plan.reasons,
        detection=replace(sub_plan.detection, used_monorepo_workspace=True),
    )


def _from_user_override(project_path: str, persisted: PersistedDevConfig, reasons: list[str]) -> Optional[Plan]:
    override = persisted.user_override
    _log(project_path, "Using user override")
    reasons.append("User-configured command")

    script = extract_script_name(override.command)
    if _script_still_exists(project_path, script) is False:
        reasons.append(f'User override script "{script}" no longer exists in package.json')
        return None

    plan = Plan(
        cwd=project_path,
        manager=_manager_for(override.command, project_path),
        command=override.command,
        port=override.port,
        confidence=CONFIDENCE_HIGH,
        reasons=reasons,
        detection=Detection(script=script),
    )
    result = validate_plan(plan)
    if result.ok:
        return plan
    reasons.append(f"User override failed validation: {result.error}")
    return None


def _from_last_known_good(project_path: str, persisted: PersistedDevConfig, reasons: list[str]) -> Optional[Plan]:
    lkg = persisted.last_known_good
    check_path = lkg.spawn_cwd or project_path
    if not lkg.script_name:
        return None

    exists = _script_still_exists(check_path, lkg.script_name)
    if exists is None:
        reasons.append("Could not read package.json to validate LastKnownGood")
        return None
    if not exists:
        reasons.append(f'LastKnownGood script "{lkg.script_name}" no longer exists in package.json')
        return None

    where = f" (in {Path(lkg.spawn_cwd).name})" if lkg.spawn_cwd else ""
    _log(project_path, f"Using LastKnownGood: {command_to_string(lkg.command)}{where}")
    reasons.append(f'LastKnownGood (script "{lkg.script_name}" still exists)')
    plan = Plan(
        cwd=project_path,
        spawn_cwd=lkg.spawn_cwd,
        manager=_manager_for(lkg.command, project_path),
        command=lkg.command,
        port=lkg.port,
        confidence=CONFIDENCE_HIGH,
        reasons=reasons,
        detection=Detection(framework=lkg.framework, script=lkg.script_name, used_last_known_good=True),
    )
    result = validate_plan(plan)
    if result.ok:
        return plan
    reasons.append(f"LastKnownGood failed validation: {result.error}")
    return None


def resolve_plan(project_path: str, store: Optional[ProjectConfigStore] = None) -> Plan:
    """Resolve the dev server plan for a project. Pure and read-only."""
    project_path = str(project_path)
    reasons: list[str] = []
    persisted = store.get(project_path) if store else None

    # 1. User override
    if persisted and persisted.user_override:
        plan = _from_user_override(project_path, persisted, reasons)
        if plan:
            return plan

    # 2. LastKnownGood
    if persisted and persisted.last_known_good:
        plan = _from_last_known_good(project_path, persisted, reasons)
        if plan:
            return plan

    pkg_path = Path(project_path) / "package.json"
    if pkg_path.exists():
        pkg = read_package_json(project_path)
        if pkg is None:
            reasons.append("Failed to parse package.json")
        else:
            deps = {}
            deps.update(pkg.get("dependencies") or {})
            deps.update(pkg.get("devDependencies") or {})
            scripts = pkg.get("scripts") or {}
            pm = detect_package_manager(project_path)
            env_port = read_port_from_env(project_path)

            # 3. Framework detection
            for pattern in FRAMEWORK_PATTERNS:
                if not any(p in deps for p in pattern.packages):
                    continue

                script = pattern.prefer_script
                if script not in scripts:
                    script = next((s for s in ("dev", "start", "develop") if s in scripts), None)
                if not script:
                    reasons.append(f"Framework {pattern.id} detected but no matching script found")
                    continue

                port = env_port if env_port is not None else pattern.dev_port
                _log(project_path, f"Framework detected: {pattern.id} -> {pm} run {script} (port {port})")
                reasons.append(f"Detected framework: {pattern.id}")
                reasons.append(f'Using script: "{script}"')
                return Plan(
                    cwd=project_path,
                    manager=pm,
                    command=build_run_command(pm, script),
                    port=port,
                    confidence=CONFIDENCE_HIGH,
                    reasons=reasons,
                    detection=Detection(framework=pattern.id, script=script),
                )

            # 4. Generic script detection
            for script in GENERIC_SCRIPTS:
                if script in scripts:
                    _log(project_path, f'Generic script found: "{script}" -> {pm} run {script}')
                    reasons.append(f'No known framework, using script: "{script}"')
                    return Plan(
                        cwd=project_path,
                        manager=pm,
                        command=build_run_command(pm, script),
                        port=env_port if env_port is not None else DEFAULT_PORT,
                        confidence=CONFIDENCE_MEDIUM,
                        reasons=reasons,
                        detection=Detection(framework="node", script=script),
                    )

            # 5a. Monorepo workspaces
            ws_cwd = find_workspace_cwd(project_path)
            if ws_cwd and os.path.normpath(ws_cwd) != os.path.normpath(project_path):
                _log(project_path, f"Monorepo: delegating to workspace {Path(ws_cwd).name}")
                reasons.append(f"Monorepo: resolved from workspace {Path(ws_cwd).name}")
                return _delegate(ws_cwd, reasons, store)

            # 6a. Scripts exist but none look like a dev server
            if scripts:
                first = next(iter(scripts))
                reasons.append(f"Has {len(scripts)} scripts but none match dev patterns")
                return Plan(
                    cwd=project_path,
                    manager=pm,
                    command=build_run_command(pm, first),
                    port=env_port if env_port is not None else DEFAULT_PORT,
                    confidence=CONFIDENCE_LOW,
                    reasons=reasons,
                    detection=Detection(framework="node"),
                )

            reasons.append("package.json has no scripts")

    # 5b. Nested project in a first-level subdirectory
    nested = find_nested_project(project_path)
    if nested:
        sub_path, script = nested
        _log(project_path, f"Subdirectory project found: {Path(sub_path).name}/ -> delegating")
        reasons.append(f'Found dev script "{script}" in subdirectory {Path(sub_path).name}/')
        return _delegate(sub_path, reasons, store)

    # Docker isn't in the allow-list, so compose projects need manual config
    root = Path(project_path)
    if (root / "docker-compose.yml").exists() or (root / "docker-compose.yaml").exists():
        reasons.append("Docker Compose project detected")
        reasons.append("Docker projects need manual configuration")
        return Plan(
            cwd=project_path,
            manager="npm",
            command=SafeCommand("npm", ("run", "dev")),
            confidence=CONFIDENCE_LOW,
            reasons=reasons,
            detection=Detection(framework="docker"),
        )

    # 6. Low-confidence fallback
    pm = detect_package_manager(project_path)
    reasons.append("Could not determine dev command - needs manual configuration")
    return Plan(
        cwd=project_path,
        manager=pm,
        command=build_run_command(pm, "dev"),
        confidence=CONFIDENCE_LOW,
        reasons=reasons,
    )


def needs_verification(plan: Plan, persisted: Optional[PersistedDevConfig], now: float = None) -> bool:
    """True when the plan is low confidence or the project failed within the last five minutes."""
    if plan.confidence == CONFIDENCE_LOW:
        return True

    if persisted and persisted.last_failure:
        now = time.time() if now is None else now
        if now - persisted.last_failure.timestamp < VERIFY_AFTER_FAILURE_SECONDS:
            return True

    return False


def plan_for_project(project_path: str, store: Optional[ProjectConfigStore] = None) -> Plan:
    """Resolve and keep the project root as the tracking key.

    When delegation resolved a subdirectory, it becomes the spawn directory.
    """
    plan = resolve_plan(project_path, store)
    if os.path.normpath(plan.cwd) != os.path.normpath(project_path):
        plan = replace(plan, spawn_cwd=plan.cwd, cwd=str(project_path))
    return plan


def plan_for_repair(project_path: str, store: Optional[ProjectConfigStore] = None) -> Plan:
    """Plan used by the self-healing loop: LastKnownGood first, then full resolution."""
    persisted = store.get(project_path) if store else None
    if persisted and persisted.last_known_good:
        lkg = persisted.last_known_good
        return Plan(
            cwd=str(project_path),
            spawn_cwd=lkg.spawn_cwd,
            manager=_manager_for(lkg.command, project_path),
            command=lkg.command,
            port=lkg.port,
            confidence=CONFIDENCE_HIGH,
            reasons=["Using last known good configuration"],
            detection=Detection(framework=lkg.framework, script=lkg.script_name, used_last_known_good=True),
        )
    return plan_for_project(project_path, store)
