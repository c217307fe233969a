import json
import os
import tempfile

# Keep the supervisor's data dir (db, log) out of the user's home during tests
os.environ.setdefault("DEVSUPERVISOR_HOME", tempfile.mkdtemp(prefix="devsupervisor-test-"))

import pytest

from devsupervisor.models import initialize_db
from devsupervisor.project_config import ProjectConfigStore


@pytest.fixture
def db(tmp_path):
    database = initialize_db(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return ProjectConfigStore()


@pytest.fixture
def make_project(tmp_path):
    """Create a project directory with a package.json and optional extra files."""

    def _make(name="app", scripts=None, dependencies=None, dev_dependencies=None, files=None, package=True):
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        if package:
            pkg = {"name": name, "scripts": scripts or {}}
            if dependencies:
                pkg["dependencies"] = dependencies
            if dev_dependencies:
                pkg["devDependencies"] = dev_dependencies
            (root / "package.json").write_text(json.dumps(pkg))
        for rel, content in (files or {}).items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return root

    return _make
