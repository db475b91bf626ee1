"""Node service: the single entry point callers use to drive the manager.

Wires one supervisor, one settings manager, the store monitor and the RPC
client together and exposes the lifecycle calls with their result tags.
"""

from loguru import logger

from .config import ManagerConfig
from .daemon.events import Subscription
from .daemon.supervisor import BitcoindSupervisor
from .models import ExitInfo, LifecycleResponse, LifecycleResult, ManagerStatus, VersionInfo
from .rpc_client import RpcClient
from .settings.manager import SettingsManager, StoreMonitor


class NodeService:
    """Owns the managed bitcoind and its configuration."""

    def __init__(
        self,
        config: ManagerConfig,
        supervisor: BitcoindSupervisor | None = None,
        rpc: RpcClient | None = None,
    ) -> None:
        self.config = config
        self.supervisor = supervisor or BitcoindSupervisor(config)
        self.settings = SettingsManager(config, self.supervisor)
        self.rpc = rpc or RpcClient(config)
        self.monitor = StoreMonitor(
            self.settings.store,
            config.daemon.store_check_interval,
            on_recovered=self.settings.invalidate_cache,
        )

    def _respond(self, result: LifecycleResult) -> LifecycleResponse:
        return LifecycleResponse(**self.status().model_dump(), result=result)

    async def boot(self) -> None:
        """Write the configuration files, start the store monitor, then bitcoind."""
        await self.settings.ensure_config()
        self.monitor.start()
        await self.supervisor.start()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.supervisor.shutdown()
        logger.info("Node service stopped")

    async def version(self) -> VersionInfo:
        """Implementation and version reported live by the running daemon."""
        return await self.rpc.get_version()

    def status(self) -> ManagerStatus:
        return self.supervisor.status()

    async def start(self) -> LifecycleResponse:
        if self.supervisor.running:
            return self._respond(LifecycleResult.NO_OP)
        await self.supervisor.start()
        return self._respond(LifecycleResult.STARTED)

    async def stop(self) -> LifecycleResponse:
        if not self.supervisor.running:
            return self._respond(LifecycleResult.NO_OP)
        await self.supervisor.stop()
        return self._respond(LifecycleResult.STOPPED)

    async def restart(self) -> LifecycleResponse:
        await self.supervisor.restart()
        return self._respond(LifecycleResult.STARTED)

    def exit_info(self) -> ExitInfo | None:
        return self.supervisor.exit_info

    def subscribe(self) -> Subscription:
        """Event stream: one snapshot, then start, stop and unexpected-exit events."""
        return self.supervisor.subscribe()
