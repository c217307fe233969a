import asyncio
import subprocess
import sys
import threading

import psutil
import pytest

from devsupervisor import process
from devsupervisor.commands import SafeCommand
from devsupervisor.process import (
    ProcessRunner,
    StartupError,
    build_env,
    classify_startup_error,
    detect_ready_url,
    extract_port,
)
from devsupervisor.resolver import Detection, Plan
from devsupervisor.state import DevServerState

READY = "import time; print('  Local:   http://localhost:5173/'); time.sleep(30)"
SILENT = "import time; time.sleep(30)"
CRASH_AFTER_READY = (
    "import sys, time\n"
    "print('ready on http://127.0.0.1:4000')\n"
    "time.sleep(0.3)\n"
    "print('TypeError: boom', file=sys.stderr)\n"
    "sys.exit(1)\n"
)
SYNTAX_ERROR = "import sys; print('SyntaxError: Unexpected token', file=sys.stderr); sys.exit(1)"
EBADF = "import sys; print('Error: spawn EBADF', file=sys.stderr); sys.exit(1)"
MISSING_DEPS = "import sys; print(\"Error: Cannot find module 'vite'\", file=sys.stderr); sys.exit(1)"
PORT_IN_USE = (
    "import sys\n"
    "print('(node:48213) [DEP0040] DeprecationWarning: The punycode module is deprecated.', file=sys.stderr)\n"
    "print('Error: listen EADDRINUSE: address already in use :::3000', file=sys.stderr)\n"
    "sys.exit(1)\n"
)
NOISY_AFTER_READY = (
    "import sys, time\n"
    "print('ready on http://localhost:5173')\n"
    "for i in range(20000):\n"
    "    print(f'[vite] hmr warning {i}', file=sys.stderr)\n"
    "time.sleep(30)\n"
)
WITH_GRANDCHILD = (
    "import subprocess, sys, time\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print(f'grandchild={child.pid}')\n"
    "print('ready on http://localhost:5173')\n"
    "time.sleep(30)\n"
)


class TestClassifiers:
    @pytest.mark.parametrize("output,expected", [
        ("Error: spawn EBADF", StartupError.EBADF),
        ("write: Bad file descriptor", StartupError.EBADF),
        ("Error: Cannot find module 'next'", StartupError.MISSING_DEPS),
        ("[vite] Could not resolve './App'", StartupError.MISSING_DEPS),
        ("ENOENT: no such file node_modules/.bin/vite", StartupError.MISSING_DEPS),
        ("Error: listen EADDRINUSE: address already in use :::3000", StartupError.PORT_IN_USE),
        ("Port 5173 is already in use", StartupError.PORT_IN_USE),
        ("ENOENT: no such file or directory, open 'src/index.ts'", None),
        ("TypeError: x is not a function", None),
    ])
    def test_classify(self, output, expected):
        assert classify_startup_error(output) == expected

    def test_extract_port(self):
        assert extract_port("Error: listen EADDRINUSE: address already in use :::3000") == 3000
        assert extract_port("Port 5173 is already in use") == 5173
        assert extract_port("no port here") is None

    def test_extract_port_skips_node_warning_prefix(self):
        output = (
            "(node:48213) [DEP0040] DeprecationWarning: The punycode module is deprecated.\n"
            "Error: listen EADDRINUSE: address already in use :::3000\n"
        )
        assert classify_startup_error(output) == StartupError.PORT_IN_USE
        assert extract_port(output) == 3000
        assert extract_port("listen EADDRINUSE: address already in use 127.0.0.1:8080") == 8080

    def test_detect_ready_url(self):
        assert detect_ready_url("  ➜  Local:   http://localhost:5173/") == "http://localhost:5173"
        assert detect_ready_url("ready - started server on https://127.0.0.1:3000") == "https://127.0.0.1:3000"
        assert detect_ready_url("Network: http://192.168.1.10:5173") is None

    def test_build_env(self):
        env = build_env({"PATH": "/usr/bin", "HOME": "/home/dev"})
        assert env["BROWSER"] == "none"
        assert env["PATH"].endswith("/usr/bin")
        assert "/usr/local/bin" in env["PATH"].split(":")
        assert env["HOME"] == "/home/dev"


def scripted_popen(*scripts):
    """Popen stand-in that runs one Python script per spawn instead of the dev command."""
    calls = []

    def popen(argv, **kwargs):
        script = scripts[min(len(calls), len(scripts) - 1)]
        calls.append(list(argv))
        return subprocess.Popen([sys.executable, "-u", "-c", script], **kwargs)

    popen.calls = calls
    return popen


async def no_sleep(delay):
    pass


@pytest.fixture
def state():
    return DevServerState(crash_loop_window=60, crash_loop_max=3)


@pytest.fixture
def make_runner(state, store):
    runners = []

    def _make(*scripts, prober=None, startup_timeout=5.0):
        async def default_prober(ports, timeout=2.0):
            return None

        runner = ProcessRunner(
            state,
            store,
            startup_timeout=startup_timeout,
            probe_ports=[3000, 5173],
            start_retries=3,
            kill_timeout=2,
            popen=scripted_popen(*scripts),
            port_prober=prober or default_prober,
        )
        runner._sleep = no_sleep
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        runner.emergency_kill_all()


@pytest.fixture
def plan(tmp_path):
    return Plan(
        cwd=str(tmp_path),
        manager="npm",
        command=SafeCommand("npm", ("run", "dev")),
        confidence="high",
        port=5173,
        detection=Detection(framework="vite", script="dev"),
    )


@pytest.mark.asyncio
async def test_start_detects_url_and_records_success(make_runner, plan, store):
    runner = make_runner(READY)

    result = await runner.start(plan)

    assert result.ok
    assert result.url == "http://localhost:5173"
    assert runner.is_running(plan.cwd)
    assert runner.get_url(plan.cwd) == "http://localhost:5173"
    assert runner._popen.calls == [["npm", "run", "dev"]]

    lkg = store.get(plan.cwd).last_known_good
    assert lkg.command == plan.command
    assert lkg.script_name == "dev"


@pytest.mark.asyncio
async def test_second_start_refused_while_running(make_runner, plan):
    runner = make_runner(READY)
    await runner.start(plan)

    result = await runner.start(plan)

    assert result.error_code == "ALREADY_RUNNING"
    assert len(runner._popen.calls) == 1


@pytest.mark.asyncio
async def test_stop_is_not_a_crash(make_runner, plan):
    runner = make_runner(READY)
    crashes = []
    runner.set_crash_handler(crashes.append)
    result = await runner.start(plan)

    await runner.stop(plan.cwd)
    await runner.stop(plan.cwd)

    assert not runner.is_running(plan.cwd)
    assert crashes == []
    assert result.pid is not None


@pytest.mark.asyncio
async def test_post_start_crash_reports_to_handler(make_runner, plan, state):
    runner = make_runner(CRASH_AFTER_READY)
    reported = threading.Event()
    crashes = []

    def on_crash(report):
        crashes.append(report)
        reported.set()

    runner.set_crash_handler(on_crash)
    result = await runner.start(plan)
    assert result.url == "http://127.0.0.1:4000"

    assert await asyncio.to_thread(reported.wait, 5)
    report = crashes[0]
    assert report.cwd == plan.cwd
    assert report.exit_code == 1
    assert "TypeError: boom" in report.output
    assert not runner.is_running(plan.cwd)
    assert state.crash_history.count(plan.cwd) == 1


@pytest.mark.asyncio
async def test_startup_crash_is_terminal(make_runner, plan, store, state):
    runner = make_runner(SYNTAX_ERROR)

    result = await runner.start(plan)

    assert result.error_code == "STARTUP_CRASH"
    assert "SyntaxError: Unexpected token" in result.error
    assert len(runner._popen.calls) == 1
    assert state.crash_history.count(plan.cwd) == 1
    assert "SyntaxError" in store.get(plan.cwd).last_failure.error


@pytest.mark.asyncio
async def test_crash_loop_refuses_start(make_runner, plan, state):
    runner = make_runner(READY)
    for _ in range(3):
        state.crash_history.record(plan.cwd)

    result = await runner.start(plan)

    assert result.error_code == "CRASH_LOOP"
    assert runner._popen.calls == []

    runner.clear_crash_history(plan.cwd)
    assert (await runner.start(plan)).ok


@pytest.mark.asyncio
async def test_invalid_plan_never_spawns(make_runner, plan):
    runner = make_runner(READY)
    plan.command = SafeCommand("bash", ("-c", "npm run dev"))

    result = await runner.start(plan)

    assert result.error_code == "INVALID_COMMAND"
    assert runner._popen.calls == []


@pytest.mark.asyncio
async def test_ebadf_is_retried(make_runner, plan):
    runner = make_runner(EBADF, READY)

    result = await runner.start(plan)

    assert result.url == "http://localhost:5173"
    assert len(runner._popen.calls) == 2


@pytest.mark.asyncio
async def test_missing_dependencies_are_installed(make_runner, plan):
    runner = make_runner(MISSING_DEPS, READY)
    installs = []

    async def fake_install(p):
        installs.append(p.effective_cwd)
        return True

    runner._install_dependencies = fake_install

    result = await runner.start(plan)

    assert result.ok
    assert installs == [plan.cwd]
    assert len(runner._popen.calls) == 2


@pytest.mark.asyncio
async def test_failed_install_is_terminal(make_runner, plan, store):
    runner = make_runner(MISSING_DEPS, READY)

    async def fake_install(p):
        return False

    runner._install_dependencies = fake_install

    result = await runner.start(plan)

    assert result.error_code == "INSTALL_FAILED"
    assert len(runner._popen.calls) == 1
    assert store.get(plan.cwd).last_failure.error == "Dependency installation failed"


@pytest.mark.asyncio
async def test_retries_are_bounded(make_runner, plan, store):
    runner = make_runner(EBADF)

    result = await runner.start(plan)

    assert result.error_code == "RETRIES_EXHAUSTED"
    assert len(runner._popen.calls) == 4
    assert store.get(plan.cwd).last_failure is not None


@pytest.mark.asyncio
async def test_silent_server_found_by_port_probe(make_runner, plan):
    probed = []

    async def prober(ports, timeout=2.0):
        probed.append(ports)
        return "http://localhost:5173"

    runner = make_runner(SILENT, prober=prober, startup_timeout=0.3)

    result = await runner.start(plan)

    assert result.url == "http://localhost:5173"
    assert probed == [[5173, 3000]]
    assert runner.is_running(plan.cwd)


@pytest.mark.asyncio
async def test_silent_server_without_url_still_running(make_runner, plan, store):
    runner = make_runner(SILENT, startup_timeout=0.3)

    result = await runner.start(plan)

    assert result.ok
    assert result.url is None
    assert runner.is_running(plan.cwd)
    assert store.get(plan.cwd) is None


@pytest.mark.asyncio
async def test_get_status(make_runner, plan):
    runner = make_runner(READY)
    await runner.start(plan)

    status = runner.get_status(plan.cwd)

    assert status["running"]
    assert status["url"] == "http://localhost:5173"
    assert not status["crash_loop"]


@pytest.mark.asyncio
async def test_port_in_use_frees_reported_port_and_retries(make_runner, plan, monkeypatch):
    freed = []
    monkeypatch.setattr(process, "free_port", lambda port: freed.append(port) or [])
    runner = make_runner(PORT_IN_USE, READY)

    result = await runner.start(plan)

    assert result.url == "http://localhost:5173"
    assert freed == [3000]
    assert len(runner._popen.calls) == 2


@pytest.mark.asyncio
async def test_stderr_not_retained_after_ready(make_runner, plan):
    runner = make_runner(NOISY_AFTER_READY)
    spawns = []
    spawn = runner._spawn

    def recording_spawn(p):
        spawns.append(spawn(p))
        return spawns[-1]

    runner._spawn = recording_spawn

    result = await runner.start(plan)
    assert result.ok

    spawned = spawns[0]
    for _ in range(200):
        if spawned.tail_text(1).startswith("[vite] hmr warning 19999"):
            break
        await asyncio.sleep(0.05)
    assert spawned.tail_text(1).startswith("[vite] hmr warning 19999")
    assert spawned.stderr == []


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.mark.asyncio
async def test_stop_kills_grandchildren(make_runner, plan):
    runner = make_runner(WITH_GRANDCHILD)
    lines = []
    runner.set_output_callback(lambda cwd, text: lines.append(text))

    result = await runner.start(plan)
    assert result.ok

    grandchild = int(next(line for line in lines if line.startswith("grandchild=")).split("=")[1])
    assert psutil.pid_exists(grandchild)

    await runner.stop(plan.cwd)

    assert not runner.is_running(plan.cwd)
    assert _gone(grandchild)
