"""Supported bitcoind versions.

Versions are ordered newest to oldest and compared by their position in
``AVAILABLE_VERSIONS``: a lower index is a newer version. Every version
listed here must also be installed under ``paths.versions_dir`` by the
image build.
"""

from ..errors import UnknownVersionError

AVAILABLE_VERSIONS: tuple[str, ...] = ("v29.2", "v29.1")

DEFAULT_VERSION = AVAILABLE_VERSIONS[0]

LATEST = "latest"

VERSION_CHOICES: tuple[str, ...] = (LATEST, *AVAILABLE_VERSIONS)


def version_index(version: str, versions: tuple[str, ...] = AVAILABLE_VERSIONS) -> int:
    """Position of a concrete version in the newest-first ordering."""
    try:
        return versions.index(version)
    except ValueError:
        raise UnknownVersionError(version) from None


def resolve_version(selected: str | None, versions: tuple[str, ...] = AVAILABLE_VERSIONS) -> str:
    """Map a selector ('latest' or a concrete version) to a concrete version."""
    if selected is None or selected == LATEST:
        return versions[0]
    if selected not in versions:
        raise UnknownVersionError(selected)
    return selected


def is_newer(a: str, b: str, versions: tuple[str, ...] = AVAILABLE_VERSIONS) -> bool:
    """True when ``a`` is strictly newer than ``b``."""
    return version_index(a, versions) < version_index(b, versions)
