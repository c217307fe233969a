import os
import signal

import pytest

from devsupervisor import cleanup
from devsupervisor.cleanup import cleanup_stale_dev_server, is_within


@pytest.fixture
def killed(monkeypatch):
    sent = []

    def fake_kill(pid, sig):
        sent.append((pid, sig))

    monkeypatch.setattr(os, "kill", fake_kill)
    return sent


def _listeners(monkeypatch, cwds: dict):
    monkeypatch.setattr(cleanup, "listening_pids", lambda port: list(cwds))
    monkeypatch.setattr(cleanup, "process_cwd", lambda pid: cwds.get(pid))


def test_is_within(tmp_path):
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (tmp_path / "app-old").mkdir()

    assert is_within(str(root), str(root))
    assert is_within(str(root / "src"), str(root))
    assert not is_within(str(tmp_path / "app-old"), str(root))
    assert not is_within(str(tmp_path), str(root))


def test_removes_framework_locks(make_project):
    root = make_project(files={".next/dev/lock": "", ".nuxt/dev/lock": ""})

    result = cleanup_stale_dev_server(str(root))

    assert sorted(result.locks_removed) == [".next/dev/lock", ".nuxt/dev/lock"]
    assert not (root / ".next" / "dev" / "lock").exists()
    assert result.anything_cleaned


def test_kills_only_processes_inside_project(make_project, tmp_path, monkeypatch, killed):
    root = make_project("app")
    sibling = make_project("app-old")
    _listeners(monkeypatch, {
        101: str(root),
        102: str(root / "node_modules"),
        103: str(sibling),
        104: "/somewhere/else",
        105: None,
    })
    (root / "node_modules").mkdir()

    result = cleanup_stale_dev_server(str(root), port=3000)

    assert result.processes_killed == [101, 102]
    assert killed == [(101, signal.SIGTERM), (102, signal.SIGTERM)]


def test_never_kills_itself(make_project, monkeypatch, killed):
    root = make_project()
    _listeners(monkeypatch, {os.getpid(): str(root)})

    result = cleanup_stale_dev_server(str(root), port=3000)

    assert result.processes_killed == []
    assert killed == []


def test_no_port_skips_process_scan(make_project, monkeypatch):
    root = make_project()

    def boom(port):
        raise AssertionError("should not scan")

    monkeypatch.setattr(cleanup, "listening_pids", boom)
    result = cleanup_stale_dev_server(str(root))

    assert not result.anything_cleaned
