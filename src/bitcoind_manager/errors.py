"""Exception hierarchy for bitcoind-manager.

Validation and persistence errors propagate to the caller that triggered
them. Process-level errors (NotInstalledError, SpawnError) are recorded on
the supervisor and reported through status and exit events instead of being
raised out of its control flow.
"""

from typing import Any


class ManagerError(Exception):
    """Base class for all bitcoind-manager errors."""


class UnknownVersionError(ManagerError, ValueError):
    """Raised when a version selector is neither 'latest' nor a supported version."""

    def __init__(self, version: str) -> None:
        super().__init__(f"Unknown bitcoind version: {version!r}")
        self.version = version


class SettingsValidationError(ManagerError):
    """Raised when a settings record fails the per-version schema.

    Nothing is persisted and the daemon keeps running unchanged.
    """

    def __init__(self, version: str, errors: list[dict[str, Any]]) -> None:
        self.version = version
        self.errors = errors
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ())) or '<root>'}: {e.get('msg', '')}"
            for e in errors
        )
        super().__init__(f"Invalid settings for {version}: {details}")


class NotInstalledError(ManagerError):
    """The selected version's binary is missing or not executable."""

    def __init__(self, version: str, binary_path: str) -> None:
        self.version = version
        self.binary_path = binary_path
        super().__init__(
            f'Bitcoin Knots version "{version}" is not installed (missing: {binary_path}).'
        )


class SpawnError(ManagerError):
    """The operating system refused to exec the daemon binary."""


class MalformedStoreError(ManagerError):
    """The JSON settings store exists but cannot be parsed as a JSON object."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed settings store at {path}: {reason}")
