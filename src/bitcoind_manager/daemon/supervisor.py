"""Process supervisor for the bitcoind child process.

Holds at most one child. The version to run is read from the settings store
on every start, so a restart after a settings change picks up a version
switch. The ``current`` symlink under the versions directory is repointed
before spawning so the CLI tools and the daemon resolve the same binary.

Output from both pipes is read line by line, kept in a bounded ring buffer
and forwarded to loguru with ``source="bitcoind"``. When the child exits
without ``stop()`` having been called, the tail of that buffer is captured
into an ExitInfo and published to subscribers. Spawns and requested stops
are published as StartEvent and StopEvent.

Lifecycle calls (start/stop/restart) are serialised by a lock, so
overlapping restarts cannot leave two daemons running.
"""

import asyncio
import os
import re
import signal
import time
import uuid
from collections import deque
from pathlib import Path

from anyio import to_thread
from loguru import logger

from ..config import ManagerConfig
from ..errors import NotInstalledError, SpawnError
from ..models import (
    ExitEvent,
    ExitInfo,
    ManagerStatus,
    SnapshotEvent,
    StartEvent,
    StopEvent,
    SupervisorState,
    VersionInfo,
)
from ..settings.store import SettingsStore
from ..settings.versions import DEFAULT_VERSION, LATEST
from .events import ExitEventChannel, Subscription

VERSION_TAG_RE = re.compile(r"v\d+\.\d+(?:\.\d+)?(?:\.knots\d+)?(?:\+[\w.-]+)?")
_VERSION_SUFFIX_RE = re.compile(r"(?:daemon|RPC client)?\s*version.*$", re.IGNORECASE)

# Seconds allowed for `bitcoind --version`
_VERSION_PROBE_TIMEOUT = 10.0

# Seconds to wait for the pipe readers to drain once the child has exited
_READER_DRAIN_TIMEOUT = 5.0

# StreamReader line limit; bitcoind debug lines can be long
_LINE_LIMIT = 1024 * 1024


class LogRing:
    """Fixed-capacity buffer of the most recent output lines."""

    def __init__(self, capacity: int) -> None:
        self._lines: deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        self._lines.append(line)

    def snapshot(self) -> list[str]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)


def parse_version_output(output: str) -> VersionInfo:
    """Parse the first line of ``bitcoind --version``.

    ``"Bitcoin Knots daemon version v29.2.knots20251010"`` becomes
    implementation ``"Bitcoin Knots"`` and version ``"v29.2.knots20251010"``.
    """
    first_line = output.split("\n", 1)[0]
    implementation = _VERSION_SUFFIX_RE.sub("", first_line).strip() or "unknown"
    match = VERSION_TAG_RE.search(first_line)
    return VersionInfo(implementation=implementation, version=match.group(0) if match else "unknown")


def _repoint_symlink(link: Path, target: Path) -> None:
    """Atomically point ``link`` at ``target`` (the `ln -sfn` behaviour)."""
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}")
    os.symlink(target, tmp)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def _split_returncode(returncode: int) -> tuple[int | None, str | None]:
    """asyncio reports death by signal N as returncode -N."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class BitcoindSupervisor:
    """Spawns, stops and watches the bitcoind process."""

    def __init__(
        self,
        config: ManagerConfig,
        events: ExitEventChannel | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._config = config
        self._paths = config.paths
        self._store = SettingsStore(config.paths.settings_file)
        self._extra_args = [*(extra_args or []), *config.daemon.launch_args()]
        self._stop_timeout = config.daemon.stop_timeout
        self._implementation_name = config.daemon.implementation_name

        self.events = events or ExitEventChannel()
        self.ring = LogRing(config.daemon.log_ring_size)
        self._daemon_log = logger.bind(source="bitcoind")

        self._lock = asyncio.Lock()
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task | None = None
        self._expecting_exit = False
        self._state = SupervisorState.STOPPED
        self._started_at: float | None = None
        self._last_error: str | None = None
        self._exit_info: ExitInfo | None = None
        self._version_info = VersionInfo()

    # --- read-only views -----------------------------------------------------

    @property
    def running(self) -> bool:
        return self._process is not None

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def exit_info(self) -> ExitInfo | None:
        return self._exit_info

    @property
    def version_info(self) -> VersionInfo:
        """Identity of the binary behind the `current` symlink at last start."""
        return self._version_info

    def status(self) -> ManagerStatus:
        return ManagerStatus(
            running=self.running,
            state=self._state,
            started_at=self._started_at,
            pid=self._process.pid if self._process is not None else None,
            error=self._last_error,
        )

    def subscribe(self) -> Subscription:
        """Attach a subscriber; its first event is a snapshot of the current state."""
        subscription = self.events.subscribe()
        subscription.queue.put_nowait(SnapshotEvent(running=self.running, exit=self._exit_info))
        return subscription

    # --- lifecycle ---------------------------------------------------------------

    async def start(self) -> bool:
        """Start bitcoind unless a child already exists.

        Returns:
            True if a new process was spawned.
        """
        async with self._lock:
            return await self._start()

    async def stop(self) -> bool:
        """Stop bitcoind gracefully and wait for it to exit.

        Returns:
            True if a running process was stopped.
        """
        async with self._lock:
            return await self._stop()

    async def restart(self) -> bool:
        async with self._lock:
            await self._stop()
            return await self._start()

    async def shutdown(self) -> None:
        """Stop the child and detach the watcher. Called once on manager exit."""
        await self.stop()

    async def desired_version(self) -> str:
        """Version selected in the settings store, with 'latest' resolved."""
        record = await self._store.read()
        version = record.get("version")
        if not isinstance(version, str) or not version:
            return DEFAULT_VERSION
        return DEFAULT_VERSION if version == LATEST else version

    async def refresh_version_info(self) -> VersionInfo:
        """Run ``<binary> --version`` and cache the parsed identity."""
        binary = str(self._paths.launch_binary)
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            try:
                stdout, _ = await asyncio.wait_for(process.communicate(), timeout=_VERSION_PROBE_TIMEOUT)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                raise
            self._version_info = parse_version_output(stdout.decode("utf-8", errors="replace"))
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not read version from {binary}: {e}")
            self._version_info = VersionInfo()
        return self._version_info

    def _is_installed(self, version: str) -> bool:
        return os.access(self._paths.version_binary(version), os.X_OK)

    def _record_not_installed(self, version: str) -> None:
        error = NotInstalledError(version, str(self._paths.version_binary(version)))
        message = str(error)
        # Show the intended version rather than whatever `current` points at
        self._version_info = self._version_info.model_copy(update={"version": version})
        self._last_error = message
        self._exit_info = ExitInfo(code=None, signal=None, log_tail=[message], message=message)
        logger.error(message)
        self.events.publish(ExitEvent(info=self._exit_info))

    async def _start(self) -> bool:
        if self._process is not None:
            return False

        # A crashed child's report must be published before the ring is reused
        if self._watcher is not None and not self._watcher.done():
            await asyncio.shield(self._watcher)

        version = await self.desired_version()
        if not self._is_installed(version):
            self._record_not_installed(version)
            return False

        self._state = SupervisorState.STARTING
        try:
            await to_thread.run_sync(
                _repoint_symlink, self._paths.current_symlink, self._paths.versions_dir / version
            )
        except OSError as e:
            self._fail_spawn(SpawnError(f"Could not switch to {version}: {e}"))
            return False

        await self.refresh_version_info()
        self.ring.clear()

        binary = str(self._paths.launch_binary)
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                f"-datadir={self._paths.bitcoin_dir}",
                *self._extra_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            self._fail_spawn(SpawnError(f"Failed to spawn {binary}: {e}"))
            return False

        self._process = process
        self._started_at = time.time() * 1000
        self._last_error = None
        self._state = SupervisorState.RUNNING
        self._watcher = asyncio.create_task(self._watch(process), name="bitcoind-watcher")
        logger.info(f"Spawned bitcoind {version} pid={process.pid}")
        self.events.publish(StartEvent(pid=process.pid, version=version))
        return True

    def _fail_spawn(self, error: SpawnError) -> None:
        self._last_error = str(error)
        self._state = SupervisorState.STOPPED
        logger.error(str(error))

    async def _stop(self) -> bool:
        process = self._process
        watcher = self._watcher
        if process is None or watcher is None:
            return False

        if process.returncode is not None:
            # Already exited on its own; the watcher reports it as a crash
            await asyncio.shield(watcher)
            return False

        self.events.publish(StopEvent(pid=process.pid))
        self._expecting_exit = True
        try:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

            if self._stop_timeout is None:
                await asyncio.shield(watcher)
            else:
                try:
                    await asyncio.wait_for(asyncio.shield(watcher), timeout=self._stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"bitcoind pid={process.pid} did not exit within {self._stop_timeout}s; sending SIGKILL"
                    )
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await asyncio.shield(watcher)
        finally:
            self._expecting_exit = False
            self._process = None
            self._watcher = None
            self._started_at = None
            self._state = SupervisorState.STOPPED
        logger.info(f"bitcoind pid={process.pid} stopped")
        return True

    # --- child monitoring ----------------------------------------------------------

    def _forward_line(self, raw: bytes, is_stderr: bool) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        self.ring.append(line)
        if is_stderr:
            self._daemon_log.warning(line)
        else:
            self._daemon_log.info(line)

    async def _forward_lines(self, stream: asyncio.StreamReader | None, is_stderr: bool) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                # Longer than the reader limit; the reader has discarded it
                logger.warning(f"Skipped over-long bitcoind output line: {e}")
                continue
            except Exception:
                logger.exception("bitcoind output stream failed")
                return
            if not raw:
                return
            try:
                self._forward_line(raw, is_stderr)
            except Exception:
                logger.exception("Error forwarding bitcoind output line")

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        readers = [
            asyncio.create_task(self._forward_lines(process.stdout, is_stderr=False)),
            asyncio.create_task(self._forward_lines(process.stderr, is_stderr=True)),
        ]
        returncode = await process.wait()
        code, sig = _split_returncode(returncode)
        logger.info(f"bitcoind exited (code={code}, sig={sig})")

        unexpected = not self._expecting_exit and self._process is process
        if unexpected:
            # Not running from here on, even while the pipes drain
            self._process = None
            self._started_at = None
            self._state = SupervisorState.CRASHED

        # A grandchild holding the pipes open must not keep us waiting forever
        _, pending = await asyncio.wait(readers, timeout=_READER_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()

        if not unexpected:
            return

        if sig is not None:
            message = f"{self._implementation_name} stopped (signal {sig})"
        else:
            message = f"{self._implementation_name} stopped (code {code})"
        self._exit_info = ExitInfo(code=code, signal=sig, log_tail=self.ring.snapshot(), message=message)
        logger.error(message)
        self.events.publish(ExitEvent(info=self._exit_info))
