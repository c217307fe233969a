import asyncio

import pytest

from devsupervisor.cleanup import CleanupResult
from devsupervisor.commands import SafeCommand
from devsupervisor.events import RepairEventHub, RepairPhase
from devsupervisor.healer import HealingSettings, SelfHealer
from devsupervisor.health import HealthResult
from devsupervisor.locks import RepairLocks
from devsupervisor.process import StartResult
from devsupervisor.resolver import Plan
from devsupervisor.sessions import RepairSessionRegistry
from devsupervisor.state import DevServerState


class FakeRunner:
    """Runner stand-in returning scripted start results."""

    def __init__(self, results):
        self.results = list(results)
        self.starts = []
        self.stops = []
        self.cleared = []

    async def start(self, plan):
        self.starts.append(plan)
        return self.results.pop(0) if self.results else StartResult(error="no more results")

    async def stop(self, cwd):
        self.stops.append(cwd)

    def clear_crash_history(self, cwd):
        self.cleared.append(cwd)


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, delay):
        self.sleeps.append(delay)


async def healthy(url, **kwargs):
    return HealthResult(healthy=True, url=url, latency_ms=12, status_code=200)


async def unhealthy(url, **kwargs):
    return HealthResult(healthy=False, url=url, latency_ms=5, status_code=500)


def no_cleanup(cwd, port=None):
    return CleanupResult()


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "app"
    root.mkdir()
    return str(root)


@pytest.fixture
def parts():
    hub = RepairEventHub()
    events = []
    hub.subscribe(events.append)
    return {
        "locks": RepairLocks(),
        "sessions": RepairSessionRegistry(identity={"pid": 1, "startedAt": 1.0}),
        "state": DevServerState(),
        "hub": hub,
        "events": events,
        "recorder": Recorder(),
    }


def make_healer(parts, runner, project, health_check=healthy, **settings):
    defaults = dict(
        agent_repair=False,
        max_attempts=3,
        base_delay=2.0,
        agent_engage_timeout=0.2,
        agent_write_timeout=0.5,
        quiet_period=2.0,
    )
    defaults.update(settings)

    def resolver(cwd, store):
        return Plan(cwd=cwd, manager="npm", command=SafeCommand("npm", ("run", "dev")), confidence="high", port=3000)

    return SelfHealer(
        runner,
        store=None,
        locks=parts["locks"],
        sessions=parts["sessions"],
        state=parts["state"],
        events=parts["hub"],
        settings=HealingSettings(**defaults),
        sleep=parts["recorder"].sleep,
        health_check=health_check,
        cleanup=no_cleanup,
        plan_resolver=resolver,
    )


def phases(events):
    return [e.phase for e in events]


class TestLegacyMode:
    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self, parts, project):
        runner = FakeRunner([
            StartResult(error="Dev server crashed on startup."),
            StartResult(url="http://localhost:3000", pid=42),
        ])
        healer = make_healer(parts, runner, project)

        assert await healer.heal(project, 1, "TypeError: boom")

        assert parts["recorder"].sleeps == [2.0, 4.0]
        assert len(runner.starts) == 2
        assert runner.cleared == [project, project]
        assert phases(parts["events"]) == [
            RepairPhase.CRASH_DETECTED_LEGACY,
            RepairPhase.LOCK_ACQUIRED,
            RepairPhase.WAITING,
            RepairPhase.RESTARTING,
            RepairPhase.FAILED,
            RepairPhase.WAITING,
            RepairPhase.RESTARTING,
            RepairPhase.HEALTH_CHECK,
            RepairPhase.RECOVERED,
        ]
        assert parts["events"][-1].attempt == 2
        assert not parts["locks"].is_locked(project)

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self, parts, project):
        runner = FakeRunner([StartResult(url="http://localhost:3000")] * 3)
        healer = make_healer(parts, runner, project, health_check=unhealthy)

        assert not await healer.heal(project, 1, "")

        assert parts["recorder"].sleeps == [2.0, 4.0, 8.0]
        assert runner.stops == [project] * 3
        assert parts["events"][-1].phase == RepairPhase.EXHAUSTED
        assert not parts["locks"].is_locked(project)

    @pytest.mark.asyncio
    async def test_aborts_when_lock_held(self, parts, project):
        runner = FakeRunner([])
        healer = make_healer(parts, runner, project)
        held = parts["locks"].acquire(project)

        assert not await healer.heal(project, 1, "")

        assert phases(parts["events"]) == [RepairPhase.ABORTED]
        assert runner.starts == []
        assert parts["locks"].get_active(project) is held

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_lock(self, parts, project):
        class BrokenRunner(FakeRunner):
            async def start(self, plan):
                raise RuntimeError("kaboom")

        healer = make_healer(parts, BrokenRunner([]), project)

        assert not await healer.heal(project, 1, "")

        assert parts["events"][-1].phase == RepairPhase.ABORTED
        assert "kaboom" in parts["events"][-1].message
        assert not parts["locks"].is_locked(project)


class TestAgentMode:
    @pytest.mark.asyncio
    async def test_transient_crash_without_agent(self, parts, project):
        runner = FakeRunner([StartResult(url="http://localhost:3000")])
        healer = make_healer(parts, runner, project, agent_repair=True)

        assert await healer.heal(project, 1, "boom")

        got = phases(parts["events"])
        assert got[:3] == [RepairPhase.CRASH_DETECTED, RepairPhase.REPAIR_STARTED, RepairPhase.AWAITING_AGENT]
        assert RepairPhase.READY_TO_RESTART in got
        assert got[-1] == RepairPhase.RECOVERED
        assert parts["recorder"].sleeps == []
        assert not parts["sessions"].has(project)
        assert not parts["locks"].is_locked(project)

    @pytest.mark.asyncio
    async def test_safety_gate_blocks_restart(self, parts, project):
        runner = FakeRunner([StartResult(url="http://localhost:3000")])
        healer = make_healer(parts, runner, project, agent_repair=True, agent_engage_timeout=5, agent_write_timeout=5)
        sessions = parts["sessions"]

        task = asyncio.create_task(healer.heal(project, 1, "boom"))
        while not sessions.has(project) or sessions.get(project).phase != RepairPhase.AWAITING_AGENT:
            await asyncio.sleep(0.01)
        repair_id = sessions.get(project).repair_id

        sessions.update_phase(repair_id, RepairPhase.AGENT_STARTED, "on it")
        await asyncio.sleep(0.05)
        sessions.update_phase(
            repair_id, RepairPhase.AGENT_WROTE_FILES, "done", {"filesChanged": 50, "linesChanged": 900}
        )

        assert not await asyncio.wait_for(task, 5)
        assert runner.starts == []
        last = parts["events"][-1]
        assert last.phase == RepairPhase.FAILED_REQUIRES_HUMAN
        assert last.detail["filesChanged"] == 50
        assert last.detail["maxFiles"] == 8
        assert not sessions.has(project)
        assert not parts["locks"].is_locked(project)

    @pytest.mark.asyncio
    async def test_agent_fix_then_quiet_period_then_recovery(self, parts, project):
        runner = FakeRunner([StartResult(url="http://localhost:3000")])
        healer = make_healer(parts, runner, project, agent_repair=True, agent_engage_timeout=5, agent_write_timeout=5)
        sessions = parts["sessions"]

        task = asyncio.create_task(healer.heal(project, 1, "boom"))
        while not sessions.has(project) or sessions.get(project).phase != RepairPhase.AWAITING_AGENT:
            await asyncio.sleep(0.01)
        repair_id = sessions.get(project).repair_id
        sessions.update_phase(
            repair_id, RepairPhase.AGENT_WROTE_FILES, "fixed", {"filesChanged": 1, "linesChanged": 3}
        )

        assert await asyncio.wait_for(task, 5)
        assert parts["recorder"].sleeps == [2.0]
        assert len(runner.starts) == 1
        recovered = parts["events"][-1]
        assert recovered.phase == RepairPhase.RECOVERED
        assert recovered.detail["agentEngaged"]

    @pytest.mark.asyncio
    async def test_exhaustion_enters_cooldown(self, parts, project):
        runner = FakeRunner([StartResult(error="crashed")] * 2)
        healer = make_healer(parts, runner, project, agent_repair=True, max_attempts=2, agent_engage_timeout=0.01)

        assert not await healer.heal(project, 1, "boom")

        got = phases(parts["events"])
        assert got[-3:] == [RepairPhase.EXHAUSTED, RepairPhase.COOLDOWN, RepairPhase.FAILED_REQUIRES_HUMAN]
        assert parts["state"].cooldowns.is_active(project)
        assert not parts["sessions"].has(project)

    @pytest.mark.asyncio
    async def test_cooldown_refuses_without_touching_lock(self, parts, project):
        runner = FakeRunner([])
        healer = make_healer(parts, runner, project, agent_repair=True)
        parts["state"].cooldowns.enter(project, 600)

        assert not await healer.heal(project, 1, "boom")

        assert phases(parts["events"]) == [RepairPhase.ABORTED]
        assert parts["events"][0].level == "warning"
        assert not parts["locks"].is_locked(project)
        assert not parts["sessions"].has(project)
        assert runner.starts == []
