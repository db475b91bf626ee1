"""Tests for the bitcoind process supervisor, driven by a shell-script stand-in."""

import asyncio
import json
import os
import sys

import pytest

from bitcoind_manager.daemon.supervisor import BitcoindSupervisor, LogRing, parse_version_output
from bitcoind_manager.models import ExitEvent, SnapshotEvent, StartEvent, StopEvent, SupervisorState

from conftest import install_fake_bitcoind, make_config

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake bitcoind is a POSIX shell script")

EVENT_TIMEOUT = 5.0


async def _wait_for(predicate, timeout: float = EVENT_TIMEOUT) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


async def _next_exit(subscription, timeout: float = EVENT_TIMEOUT) -> ExitEvent:
    """Skip lifecycle events until the next exit report."""
    while True:
        event = await asyncio.wait_for(subscription.get(), timeout=timeout)
        if isinstance(event, ExitEvent):
            return event


class TestLogRing:
    """Ring buffer of output lines."""

    def test_keeps_last_n_in_order(self):
        ring = LogRing(5)
        for i in range(12):
            ring.append(f"line {i}")
        assert ring.snapshot() == [f"line {i}" for i in range(7, 12)]
        assert len(ring) == 5

    def test_under_capacity(self):
        ring = LogRing(5)
        ring.append("a")
        ring.append("b")
        assert ring.snapshot() == ["a", "b"]

    def test_clear(self):
        ring = LogRing(3)
        ring.append("a")
        ring.clear()
        assert ring.snapshot() == []
        assert ring.capacity == 3

    def test_snapshot_is_a_copy(self):
        ring = LogRing(3)
        ring.append("a")
        snap = ring.snapshot()
        ring.append("b")
        assert snap == ["a"]


class TestParseVersionOutput:
    """`bitcoind --version` parsing."""

    def test_knots(self):
        info = parse_version_output("Bitcoin Knots daemon version v29.2.knots20251010\nCopyright ...\n")
        assert info.implementation == "Bitcoin Knots"
        assert info.version == "v29.2.knots20251010"

    def test_core_with_build_suffix(self):
        info = parse_version_output("Bitcoin Core version v28.1.0+abc.def\n")
        assert info.implementation == "Bitcoin Core"
        assert info.version == "v28.1.0+abc.def"

    def test_garbage(self):
        info = parse_version_output("")
        assert info.implementation == "unknown"
        assert info.version == "unknown"


class TestLifecycle:
    """start/stop/restart against a real child process."""

    @pytest.mark.asyncio
    async def test_start_spawns_and_points_current_symlink(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        try:
            assert await supervisor.start() is True
            status = supervisor.status()
            assert status.running is True
            assert status.state == SupervisorState.RUNNING
            assert status.pid is not None
            assert status.started_at is not None
            assert status.error is None
            assert os.path.realpath(config.paths.current_symlink) == os.path.realpath(config.paths.versions_dir / "v29.2")
            assert supervisor.version_info.implementation == "Bitcoin Knots"
            assert supervisor.version_info.version == "v29.2.knots20251010"
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_when_running_is_noop(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        try:
            await supervisor.start()
            before = supervisor.status()
            assert await supervisor.start() is False
            after = supervisor.status()
            assert after.pid == before.pid
            assert after.started_at == before.started_at
            assert after.running is True
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self, config):
        supervisor = BitcoindSupervisor(config)
        assert await supervisor.stop() is False
        assert supervisor.status().running is False
        assert supervisor.state == SupervisorState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_publishes_stop_without_exit_event(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        assert isinstance(await subscription.get(), SnapshotEvent)

        await supervisor.start()
        await _wait_for(lambda: len(supervisor.ring) >= 2)
        assert await supervisor.stop() is True

        status = supervisor.status()
        assert status.running is False
        assert status.pid is None
        assert status.started_at is None
        assert supervisor.state == SupervisorState.STOPPED
        await asyncio.sleep(0.1)
        started = subscription.queue.get_nowait()
        stopped = subscription.queue.get_nowait()
        assert isinstance(started, StartEvent)
        assert isinstance(stopped, StopEvent)
        assert stopped.pid == started.pid
        assert subscription.queue.empty()
        assert supervisor.exit_info is None

    @pytest.mark.asyncio
    async def test_start_event_names_pid_and_version(self, config, fake_bitcoind):
        fake_bitcoind("v29.1")
        config.paths.settings_file.parent.mkdir(parents=True)
        config.paths.settings_file.write_text(json.dumps({"version": "v29.1"}))
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()
        try:
            await supervisor.start()
            event = await asyncio.wait_for(subscription.get(), timeout=EVENT_TIMEOUT)
            assert event.type == "start"
            assert event.pid == supervisor.status().pid
            assert event.version == "v29.1"
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_publishes_stop_then_start(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()
        try:
            await supervisor.start()
            first_pid = supervisor.status().pid
            await supervisor.restart()
            types = [subscription.queue.get_nowait().type for _ in range(3)]
            assert types == ["start", "stop", "start"]
            assert supervisor.status().pid != first_pid
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_spawns_new_process(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        try:
            await supervisor.start()
            first_pid = supervisor.status().pid
            assert await supervisor.restart() is True
            assert supervisor.status().running is True
            assert supervisor.status().pid != first_pid
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_concurrent_restarts_leave_one_process(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        try:
            await supervisor.start()
            await asyncio.gather(supervisor.restart(), supervisor.restart(), supervisor.start())
            assert supervisor.status().running is True
        finally:
            await supervisor.stop()
        assert supervisor.status().running is False

    @pytest.mark.asyncio
    async def test_stop_escalates_to_sigkill(self, tmp_path):
        config = make_config(tmp_path, stop_timeout=0.5)
        install_fake_bitcoind(config.paths.versions_dir, "v29.2", mode="hang")
        supervisor = BitcoindSupervisor(config)

        await supervisor.start()
        await _wait_for(lambda: len(supervisor.ring) >= 2)
        await asyncio.wait_for(supervisor.stop(), timeout=EVENT_TIMEOUT)

        assert supervisor.status().running is False
        assert supervisor.exit_info is None


class TestVersionSelection:
    """Version comes from the settings store."""

    @pytest.mark.asyncio
    async def test_pinned_version_is_started(self, config, fake_bitcoind):
        fake_bitcoind("v29.1")
        config.paths.settings_file.parent.mkdir(parents=True)
        config.paths.settings_file.write_text(json.dumps({"version": "v29.1"}))
        supervisor = BitcoindSupervisor(config)
        try:
            assert await supervisor.desired_version() == "v29.1"
            assert await supervisor.start() is True
            assert os.path.realpath(config.paths.current_symlink) == os.path.realpath(config.paths.versions_dir / "v29.1")
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_latest_resolves_to_newest(self, config):
        config.paths.settings_file.parent.mkdir(parents=True)
        config.paths.settings_file.write_text(json.dumps({"version": "latest"}))
        assert await BitcoindSupervisor(config).desired_version() == "v29.2"

    @pytest.mark.asyncio
    async def test_missing_store_uses_default(self, config):
        assert await BitcoindSupervisor(config).desired_version() == "v29.2"


class TestFailures:
    """Crashes, missing binaries and their events."""

    @pytest.mark.asyncio
    async def test_unexpected_exit_emits_one_event(self, config, fake_bitcoind):
        fake_bitcoind("v29.2", mode="crash")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        assert (await subscription.get()).running is False

        await supervisor.start()
        started = await asyncio.wait_for(subscription.get(), timeout=EVENT_TIMEOUT)
        event = await asyncio.wait_for(subscription.get(), timeout=EVENT_TIMEOUT)

        assert isinstance(started, StartEvent)
        assert isinstance(event, ExitEvent)
        assert event.info.code == 3
        assert event.info.signal is None
        assert event.info.message == "Bitcoin Knots stopped (code 3)"
        assert "Error: fatal test failure" in event.info.log_tail
        assert "Bitcoin Knots version v29.2.knots20251010" in event.info.log_tail
        assert supervisor.status().running is False
        assert supervisor.state == SupervisorState.CRASHED
        assert supervisor.exit_info == event.info

        await asyncio.sleep(0.1)
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_killed_child_reports_signal(self, config, fake_bitcoind):
        fake_bitcoind("v29.2")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()

        await supervisor.start()
        await _wait_for(lambda: len(supervisor.ring) >= 2)
        os.kill(supervisor.status().pid, 9)
        event = await _next_exit(subscription)

        assert event.info.code is None
        assert event.info.signal == "SIGKILL"
        assert "SIGKILL" in event.info.message
        assert supervisor.status().running is False

    @pytest.mark.asyncio
    async def test_start_after_crash(self, config, fake_bitcoind):
        binary = fake_bitcoind("v29.2", mode="crash")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()
        await supervisor.start()
        await _next_exit(subscription)

        (binary.parent / "mode").write_text("run")
        try:
            assert await supervisor.start() is True
            assert supervisor.state == SupervisorState.RUNNING
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_not_installed_emits_diagnostic_without_spawning(self, config):
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()

        assert await supervisor.start() is False

        event = await asyncio.wait_for(subscription.get(), timeout=EVENT_TIMEOUT)
        missing = config.paths.versions_dir / "v29.2" / "bitcoind"
        expected = f'Bitcoin Knots version "v29.2" is not installed (missing: {missing}).'
        assert event.info.message == expected
        assert event.info.log_tail == [expected]
        assert event.info.code is None
        status = supervisor.status()
        assert status.running is False
        assert status.error == expected
        assert supervisor.state == SupervisorState.STOPPED
        assert supervisor.version_info.version == "v29.2"
        assert not config.paths.current_symlink.exists()

    @pytest.mark.asyncio
    async def test_extra_args_passed_to_daemon(self, tmp_path):
        config = make_config(tmp_path, extra_args="-debug=net, -printtoconsole=1,")
        install_fake_bitcoind(config.paths.versions_dir, "v29.2", mode="crash")
        supervisor = BitcoindSupervisor(config, extra_args=["-regtest"])
        subscription = supervisor.subscribe()
        await subscription.get()

        await supervisor.start()
        event = await _next_exit(subscription)

        expected = f"args: -datadir={config.paths.bitcoin_dir} -regtest -debug=net -printtoconsole=1"
        assert expected in event.info.log_tail

    @pytest.mark.asyncio
    async def test_snapshot_carries_last_exit(self, config, fake_bitcoind):
        fake_bitcoind("v29.2", mode="crash")
        supervisor = BitcoindSupervisor(config)
        first = supervisor.subscribe()
        await first.get()
        await supervisor.start()
        crash = await _next_exit(first)

        late = supervisor.subscribe()
        snapshot = await late.get()
        assert snapshot.type == "snapshot"
        assert snapshot.running is False
        assert snapshot.exit == crash.info

    @pytest.mark.asyncio
    async def test_stop_while_pipes_drain_still_reports_crash(self, config, fake_bitcoind):
        # The child exits while a background process it left behind holds its pipes open
        fake_bitcoind("v29.2", mode="orphan")
        supervisor = BitcoindSupervisor(config)
        subscription = supervisor.subscribe()
        await subscription.get()

        await supervisor.start()
        await _wait_for(lambda: not supervisor.running, timeout=2.0)
        assert supervisor.state == SupervisorState.CRASHED

        assert await supervisor.stop() is False

        event = await _next_exit(subscription, timeout=8.0)
        assert event.info.code == 3
        assert "Error: fatal test failure" in event.info.log_tail
        assert supervisor.exit_info == event.info
        assert supervisor.state == SupervisorState.CRASHED

    @pytest.mark.asyncio
    async def test_over_long_line_does_not_stop_output(self, config, fake_bitcoind):
        fake_bitcoind("v29.2", mode="longline")
        supervisor = BitcoindSupervisor(config)
        try:
            await supervisor.start()
            await _wait_for(lambda: "after the long line" in supervisor.ring.snapshot())
            assert supervisor.running is True
        finally:
            assert await supervisor.stop() is True
        assert supervisor.exit_info is None
