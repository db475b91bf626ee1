"""Settings facade: the only writer of the settings store and the config files.

Every mutation runs under one asyncio.Lock, from reading the current record
through validation, derivation, persistence and the daemon restart. Two
overlapping updates therefore apply one after the other instead of racing
on read-modify-write of settings.json.

Pipeline for an update:
    defaults(version) <- current record <- patch
    -> drop keys the version does not know
    -> validate against the version's schema
    -> apply derivation rules
    -> write settings.json, the managed conf, the include banner
    -> restart bitcoind
    -> replace the cached record
"""

import asyncio
import copy
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..config import ManagerConfig
from ..errors import MalformedStoreError, ManagerError
from ..native_conf import generate_conf
from . import metadata
from .derivation import apply_derived_settings
from .metadata import defaults_for, materialize
from .schema import validate_settings
from .store import NativeConfFiles, SettingsStore
from .versions import LATEST, resolve_version

if TYPE_CHECKING:
    from ..daemon.supervisor import BitcoindSupervisor


def filter_for_version(record: Mapping[str, Any], selected: str | None) -> dict[str, Any]:
    """Keep only keys that exist for the selected version."""
    allowed = materialize(resolve_version(selected))
    return {key: value for key, value in record.items() if key in allowed}


class SettingsManager:
    """Owns the cached settings record and applies changes to disk and daemon."""

    def __init__(self, config: ManagerConfig, supervisor: "BitcoindSupervisor | None" = None) -> None:
        paths = config.paths
        keep = config.daemon.backup_retention
        self._config = config
        self._supervisor = supervisor
        self._default_chain = config.daemon.default_chain
        self.store = SettingsStore(paths.settings_file, keep)
        self.conf_files = NativeConfFiles(paths.bitcoin_conf, paths.managed_conf, keep)

        self._lock = asyncio.Lock()
        self._cache: dict[str, Any] | None = None

    def invalidate_cache(self) -> None:
        """Forget the cached record so the next read goes back to disk."""
        self._cache = None

    async def _load_and_validate(self) -> dict[str, Any]:
        partial = await self.store.read()

        # Dev override, e.g. to boot into regtest before settings.json exists
        if "chain" not in partial and self._default_chain:
            partial["chain"] = self._default_chain

        selected = partial.get("version") or LATEST
        merged = {**defaults_for(resolve_version(selected)), **partial}
        return validate_settings(filter_for_version(merged, selected), selected)

    async def _persist(self, record: Mapping[str, Any]) -> None:
        await self.store.write(dict(record))
        await self.conf_files.write_managed(generate_conf(record, self._config))
        await self.conf_files.ensure_include_line()

    async def _restart_daemon(self) -> None:
        if self._supervisor is None:
            logger.info("No supervisor attached; changes apply on the next bitcoind start")
            return
        await self._supervisor.restart()

    async def ensure_config(self) -> dict[str, Any]:
        """Bring settings.json and both config files up to date. Called before the first start."""
        async with self._lock:
            settings = apply_derived_settings(await self._load_and_validate())
            await self._persist(settings)
            self._cache = settings
            logger.info(f"Configuration written for version {settings.get('version', LATEST)}")
            return copy.deepcopy(settings)

    async def _current(self) -> dict[str, Any]:
        if self._cache is None:
            self._cache = await self._load_and_validate()
        return self._cache

    async def get_settings(self) -> dict[str, Any]:
        return copy.deepcopy(await self._current())

    async def update_settings(self, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``patch`` into the current record, persist it and restart bitcoind.

        The target version is the patch's ``version``, else the current one,
        else ``latest``.

        Raises:
            SettingsValidationError: The merged record is invalid; nothing is written.
            UnknownVersionError: The selected version is not supported.
        """
        async with self._lock:
            current = await self._current()
            selected = patch.get("version") or current.get("version") or LATEST
            merged = {**defaults_for(resolve_version(selected)), **current, **patch}
            validated = validate_settings(filter_for_version(merged, selected), selected)
            settings = apply_derived_settings(validated)

            await self._persist(settings)
            await self._restart_daemon()

            self._cache = settings
            logger.info(f"Applied settings update ({', '.join(sorted(patch)) or 'no keys'})")
            return copy.deepcopy(settings)

    async def restore_defaults(self) -> dict[str, Any]:
        """Reset every setting to its default, keeping the selected version.

        Custom lines in bitcoin.conf are left alone.
        """
        async with self._lock:
            try:
                current: Mapping[str, Any] = await self._current()
            except ManagerError as e:
                logger.warning(f"Current settings unreadable ({e}); restoring defaults for latest")
                current = {}
            selected = current.get("version") or LATEST
            defaults = {**defaults_for(resolve_version(selected)), "version": selected}
            if self._default_chain:
                defaults["chain"] = self._default_chain
            defaults = validate_settings(defaults, selected)

            await self._persist(defaults)
            await self._restart_daemon()

            self._cache = defaults
            logger.info(f"Restored default settings for {selected}")
            return copy.deepcopy(defaults)

    async def get_custom_options(self) -> str:
        return await self.conf_files.read_custom_options()

    async def update_custom_options(self, raw_text: str) -> str:
        """Replace the user section of bitcoin.conf and restart bitcoind."""
        async with self._lock:
            user_text = await self.conf_files.write_custom_options(raw_text)
            await self._restart_daemon()
            return user_text

    async def incompatible_settings(self, target_version: str) -> list[str]:
        """Keys of the current record that switching to ``target_version`` would drop."""
        current = await self._current()
        return metadata.incompatible_settings(current, resolve_version(target_version))


class StoreMonitor:
    """Periodically checks that settings.json parses, recovering it when it does not."""

    def __init__(
        self,
        store: SettingsStore,
        interval: float,
        on_recovered: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._interval = interval
        self._on_recovered = on_recovered
        self._task: asyncio.Task | None = None

    async def check_once(self) -> bool:
        """Run one check.

        Returns:
            True if the store was corrupt and has been reset.
        """
        try:
            await self._store.read_strict()
            return False
        except MalformedStoreError as e:
            logger.warning(str(e))
        await self._store.recover()
        if self._on_recovered is not None:
            self._on_recovered()
        return True

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="settings-store-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check_once()
            except Exception:
                logger.exception("Settings store check failed")
