"""
Persistent per-project dev server config.

Wraps the ProjectConfig table with the operations the resolver, runner and
HTTP API need: get/set/merge/delete plus the high-level record_success,
record_failure and user override helpers.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .commands import SafeCommand, command_to_string
from .models import ProjectConfig, database

logger = logging.getLogger(__name__)


@dataclass
class LastKnownGood:
    command: SafeCommand
    port: Optional[int] = None
    framework: Optional[str] = None
    script_name: Optional[str] = None
    spawn_cwd: Optional[str] = None
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "command": self.command.to_dict(),
            "port": self.port,
            "framework": self.framework,
            "scriptName": self.script_name,
            "spawnCwd": self.spawn_cwd,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LastKnownGood":
        return cls(
            command=SafeCommand.from_dict(data["command"]),
            port=data.get("port"),
            framework=data.get("framework"),
            script_name=data.get("scriptName"),
            spawn_cwd=data.get("spawnCwd"),
            updated_at=data.get("updatedAt") or 0.0,
        )


@dataclass
class LastFailure:
    error: str
    timestamp: float

    def to_dict(self) -> dict:
        return {"error": self.error, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "LastFailure":
        return cls(error=data.get("error", ""), timestamp=data.get("timestamp") or 0.0)


@dataclass
class UserOverride:
    command: SafeCommand
    port: Optional[int] = None
    set_at: float = 0.0

    def to_dict(self) -> dict:
        return {"command": self.command.to_dict(), "port": self.port, "setAt": self.set_at}

    @classmethod
    def from_dict(cls, data: dict) -> "UserOverride":
        return cls(
            command=SafeCommand.from_dict(data["command"]),
            port=data.get("port"),
            set_at=data.get("setAt") or 0.0,
        )


@dataclass
class PersistedDevConfig:
    last_known_good: Optional[LastKnownGood] = None
    last_failure: Optional[LastFailure] = None
    user_override: Optional[UserOverride] = None

    def to_dict(self) -> dict:
        return {
            "last_known_good": self.last_known_good.to_dict() if self.last_known_good else None,
            "last_failure": self.last_failure.to_dict() if self.last_failure else None,
            "user_override": self.user_override.to_dict() if self.user_override else None,
        }


_FIELDS = {
    "last_known_good": LastKnownGood,
    "last_failure": LastFailure,
    "user_override": UserOverride,
}


def _decode(row: ProjectConfig) -> PersistedDevConfig:
    values = {}
    for name, kind in _FIELDS.items():
        raw = getattr(row, name)
        if not raw:
            values[name] = None
            continue
        try:
            values[name] = kind.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable {name} for {row.project_path}: {e}")
            values[name] = None
    return PersistedDevConfig(**values)


class ProjectConfigStore:
    """Per-project config records keyed by absolute project path."""

    def get(self, project_path: str) -> Optional[PersistedDevConfig]:
        row = ProjectConfig.get_or_none(ProjectConfig.project_path == project_path)
        if not row:
            return None
        return _decode(row)

    def set(self, project_path: str, persisted: PersistedDevConfig):
        with database.atomic():
            row = ProjectConfig.get_or_none(ProjectConfig.project_path == project_path)
            if not row:
                row = ProjectConfig(project_path=project_path)
            for name in _FIELDS:
                value = getattr(persisted, name)
                setattr(row, name, json.dumps(value.to_dict()) if value else None)
            row.save()

    def merge(self, project_path: str, **partial):
        """Merge fields into the existing record. Passing None clears a field."""
        unknown = set(partial) - set(_FIELDS)
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        existing = self.get(project_path) or PersistedDevConfig()
        for name, value in partial.items():
            setattr(existing, name, value)
        self.set(project_path, existing)

    def delete(self, project_path: str):
        ProjectConfig.delete().where(ProjectConfig.project_path == project_path).execute()

    def known_projects(self) -> list[str]:
        return [row.project_path for row in ProjectConfig.select(ProjectConfig.project_path)]

    def record_success(
        self,
        project_path: str,
        command: SafeCommand,
        port: int = None,
        framework: str = None,
        script_name: str = None,
        spawn_cwd: str = None,
    ):
        """Record a successful startup as LastKnownGood and clear any previous failure."""
        self.merge(
            project_path,
            last_known_good=LastKnownGood(
                command=command,
                port=port,
                framework=framework,
                script_name=script_name,
                spawn_cwd=spawn_cwd,
                updated_at=time.time(),
            ),
            last_failure=None,
        )
        logger.info(f"[{Path(project_path).name}] Saved LastKnownGood: {command_to_string(command)}")

    def record_failure(self, project_path: str, error: str):
        self.merge(project_path, last_failure=LastFailure(error=error, timestamp=time.time()))

    def set_user_override(self, project_path: str, command: SafeCommand, port: int = None):
        self.merge(
            project_path,
            user_override=UserOverride(command=command, port=port, set_at=time.time()),
        )
        logger.info(f"[{Path(project_path).name}] User override set: {command_to_string(command)}")

    def clear_user_override(self, project_path: str):
        if self.get(project_path):
            self.merge(project_path, user_override=None)

    def clear(self, project_path: str):
        """Clear all persisted config for a project."""
        self.delete(project_path)
        logger.info(f"[{Path(project_path).name}] Cleared persisted dev server config")
