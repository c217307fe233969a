"""
Database models for the dev server supervisor.

Uses Peewee ORM with SQLite. Stores the per-project dev server config:
the last command that reached a healthy state, the last startup failure,
and the user's explicit command override.
"""

import json
import os
from datetime import datetime

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(db_path=None):
    """Initialize database connection and create tables."""
    db_path = str(db_path or config.db_path)
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    db = SqliteDatabase(
        db_path,
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
        check_same_thread=False,
    )
    database.initialize(db)
    database.create_tables([ProjectConfig], safe=True)
    return db


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


def _load(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


class ProjectConfig(BaseModel):
    """Persisted dev server config for one project path."""

    id = AutoField()
    project_path = CharField(unique=True, index=True)
    last_known_good = TextField(null=True)  # JSON: command, port, framework, scriptName, spawnCwd, updatedAt
    last_failure = TextField(null=True)  # JSON: error, timestamp
    user_override = TextField(null=True)  # JSON: command, port, setAt
    created_at = DateTimeField(default=datetime.now)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "project_configs"

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def to_dict(self) -> dict:
        return {
            "project_path": self.project_path,
            "last_known_good": _load(self.last_known_good),
            "last_failure": _load(self.last_failure),
            "user_override": _load(self.user_override),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
