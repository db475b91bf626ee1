"""Versioned bitcoind settings: catalog, validation, derivation and persistence."""

from .derivation import DERIVATION_RULES, apply_derived_settings
from .manager import SettingsManager, StoreMonitor, filter_for_version
from .metadata import SETTINGS_METADATA, defaults_for, incompatible_settings, materialize
from .schema import schema_for_version, validate_settings
from .store import NativeConfFiles, SettingsStore
from .versions import AVAILABLE_VERSIONS, DEFAULT_VERSION, LATEST, resolve_version

__all__ = [
    "AVAILABLE_VERSIONS",
    "DEFAULT_VERSION",
    "DERIVATION_RULES",
    "LATEST",
    "NativeConfFiles",
    "SETTINGS_METADATA",
    "SettingsManager",
    "SettingsStore",
    "StoreMonitor",
    "apply_derived_settings",
    "defaults_for",
    "filter_for_version",
    "incompatible_settings",
    "materialize",
    "resolve_version",
    "schema_for_version",
    "validate_settings",
]
