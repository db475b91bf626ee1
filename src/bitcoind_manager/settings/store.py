"""On-disk persistence for the settings store and the bitcoind config files.

Three targets, all written through ``write_with_backup``:
- settings.json: the JSON settings store (one flat object)
- the managed config file, regenerated wholesale on every apply
- bitcoin.conf, owned by the user; only the banner and the include line
  pointing at the managed file are enforced, everything else is kept as is

Blocking filesystem work runs in a worker thread via anyio so the event
loop keeps serving supervisor output while files are written.
"""

import json
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger

from ..core.file_io import CORRUPT_SUFFIX, backup_path_for, prune_backups, write_with_backup
from ..errors import MalformedStoreError

BANNER_COMMENT = "# Load additional configuration file, relative to the data directory."


class SettingsStore:
    """The JSON settings store (settings.json)."""

    def __init__(self, path: Path, keep_backups: int | None = None) -> None:
        self.path = Path(path)
        self.keep_backups = keep_backups

    def _read_strict_sync(self) -> dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedStoreError(str(self.path), str(e)) from e
        if not isinstance(data, dict):
            raise MalformedStoreError(str(self.path), f"expected a JSON object, got {type(data).__name__}")
        return data

    async def read_strict(self) -> dict[str, Any]:
        """Read the store; a missing file is an empty record.

        Raises:
            MalformedStoreError: If the file exists but is not a JSON object.
        """
        return await to_thread.run_sync(self._read_strict_sync)

    async def read(self) -> dict[str, Any]:
        """Read the store, treating unparsable content as an empty record.

        Corruption is repaired by ``StoreMonitor``, not at request time.
        """
        try:
            return await self.read_strict()
        except MalformedStoreError as e:
            logger.warning(f"{e}; using defaults until the store is recovered")
            return {}

    async def write(self, record: dict[str, Any]) -> None:
        payload = json.dumps(record, indent=2) + "\n"
        await to_thread.run_sync(write_with_backup, self.path, payload, self.keep_backups)
        logger.debug(f"Saved settings to {self.path}")

    def _recover_sync(self) -> Path:
        backup = backup_path_for(self.path, suffix=CORRUPT_SUFFIX)
        self.path.replace(backup)
        if self.keep_backups is not None:
            prune_backups(self.path, self.keep_backups, suffix=CORRUPT_SUFFIX)
        write_with_backup(self.path, "{}\n")
        return backup

    async def recover(self) -> Path:
        """Move a corrupt store aside and reinitialise it with an empty object.

        Returns:
            Path the corrupt file was moved to.
        """
        backup = await to_thread.run_sync(self._recover_sync)
        logger.error(f"Settings store {self.path} was corrupt; moved to {backup} and reset")
        return backup


class NativeConfFiles:
    """The managed config file and the user-owned bitcoin.conf that includes it."""

    def __init__(self, bitcoin_conf: Path, managed_conf: Path, keep_backups: int | None = None) -> None:
        self.bitcoin_conf = Path(bitcoin_conf)
        self.managed_conf = Path(managed_conf)
        self.keep_backups = keep_backups
        self.include_line = f"includeconf={self.managed_conf.name}"
        self.banner = f"{BANNER_COMMENT}\n{self.include_line}"

    async def write_managed(self, content: str) -> None:
        await to_thread.run_sync(write_with_backup, self.managed_conf, content, self.keep_backups)
        logger.debug(f"Wrote {self.managed_conf}")

    def with_banner(self, contents: str) -> str:
        """Prepend the banner if missing and keep only the first include line."""
        if not contents.startswith(self.banner):
            contents = f"{self.banner}\n{contents}"

        seen_include = False
        kept = []
        for line in contents.split("\n"):
            if line == self.include_line:
                if seen_include:
                    continue
                seen_include = True
            kept.append(line)
        return "\n".join(kept)

    def _ensure_include_sync(self) -> bool:
        self.bitcoin_conf.parent.mkdir(parents=True, exist_ok=True)
        try:
            current = self.bitcoin_conf.read_text(encoding="utf-8")
        except FileNotFoundError:
            current = ""
        updated = self.with_banner(current)
        if updated == current and self.bitcoin_conf.exists():
            return False
        write_with_backup(self.bitcoin_conf, updated, self.keep_backups)
        return True

    async def ensure_include_line(self) -> bool:
        """Make bitcoin.conf start with the banner and include the managed file once.

        Returns:
            True if bitcoin.conf was rewritten.
        """
        changed = await to_thread.run_sync(self._ensure_include_sync)
        if changed:
            logger.info(f"Updated include banner in {self.bitcoin_conf}")
        return changed

    def _read_user_conf_sync(self) -> str:
        try:
            return self.bitcoin_conf.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    async def read_custom_options(self) -> str:
        """User content of bitcoin.conf, without the banner."""
        full = await to_thread.run_sync(self._read_user_conf_sync)
        extra = full[len(self.banner):] if full.startswith(self.banner) else full
        return extra.removeprefix("\n").rstrip()

    async def write_custom_options(self, raw_text: str) -> str:
        """Replace the user content of bitcoin.conf, keeping the banner.

        Returns:
            The normalised user text that was written.
        """
        user_text = raw_text.replace("\r\n", "\n").rstrip()
        contents = f"{self.banner}\n{user_text}\n" if user_text else f"{self.banner}\n"
        await to_thread.run_sync(write_with_backup, self.bitcoin_conf, contents, self.keep_backups)
        return user_text
