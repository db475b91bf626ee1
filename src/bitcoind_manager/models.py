"""Response and event models for bitcoind-manager.

All models use Pydantic v2 BaseModel with frozen=True for immutability.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SupervisorState(StrEnum):
    """Lifecycle of the supervised bitcoind process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


class LifecycleResult(StrEnum):
    NO_OP = "no_op"
    STARTED = "started"
    STOPPED = "stopped"


class ExitInfo(BaseModel):
    """Diagnostic captured when bitcoind stops without being asked to."""

    model_config = ConfigDict(frozen=True)

    code: int | None = Field(..., description="Exit code, None when killed by a signal or never spawned")
    signal: str | None = Field(..., description="Signal name such as SIGKILL, if any")
    log_tail: list[str] = Field(..., description="Last output lines, oldest first")
    message: str = Field(..., description="Human-readable summary")


class ManagerStatus(BaseModel):
    """Point-in-time view of the supervisor."""

    model_config = ConfigDict(frozen=True)

    running: bool
    state: SupervisorState
    started_at: float | None = Field(None, description="Spawn time, epoch milliseconds")
    pid: int | None = None
    error: str | None = Field(None, description="Last spawn or install error")


class LifecycleResponse(ManagerStatus):
    """Status after a start/stop/restart call plus what the call did."""

    result: LifecycleResult


class VersionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    implementation: str = "unknown"
    version: str = "unknown"


class SnapshotEvent(BaseModel):
    """First event on every subscription: current running flag and last crash."""

    model_config = ConfigDict(frozen=True)

    type: Literal["snapshot"] = "snapshot"
    running: bool
    exit: ExitInfo | None = None


class ExitEvent(BaseModel):
    """Broadcast when bitcoind exits unexpectedly or cannot be started."""

    model_config = ConfigDict(frozen=True)

    type: Literal["exit"] = "exit"
    info: ExitInfo


class StartEvent(BaseModel):
    """Broadcast after bitcoind has been spawned."""

    model_config = ConfigDict(frozen=True)

    type: Literal["start"] = "start"
    pid: int
    version: str


class StopEvent(BaseModel):
    """Broadcast when a requested stop begins, before SIGTERM is sent."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stop"] = "stop"
    pid: int


SupervisorEvent = SnapshotEvent | StartEvent | StopEvent | ExitEvent
