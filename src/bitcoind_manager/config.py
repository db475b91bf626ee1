"""Configuration management for bitcoind-manager using pydantic-settings.

Supports hierarchical configuration from:
1. Environment variables (highest priority)
2. JSON config file
3. Default values (lowest priority)

Environment variables use the format: BITCOIND_MANAGER_<SECTION>__<FIELD>
Example: BITCOIND_MANAGER_NETWORK__TOR_HOST=10.21.21.11

These values describe the host environment (paths, ports, credentials). The
user-facing bitcoind settings live in the JSON settings store and are handled
by ``bitcoind_manager.settings``.
"""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


APP_NAME = "bitcoind-manager"


class JsonConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source for loading from JSON file."""

    def __init__(self, settings_cls: type[BaseSettings], json_file: Path):
        super().__init__(settings_cls)
        self.json_file = json_file

    def get_field_value(
        self, field: Any, field_name: str
    ) -> tuple[Any, str, bool]:
        """Get field value - required by base class but not used in v2."""
        return None, "", False

    def __call__(self) -> dict[str, Any]:
        """Load configuration from JSON file."""
        if self.json_file.exists():
            with open(self.json_file, encoding="utf-8") as f:
                return _strip_comment_fields(json.load(f))
        return {}


class PathsConfig(BaseModel):
    """Filesystem locations for bitcoind data, app state and installed versions."""

    bitcoin_dir: Path = Path("data/bitcoin")
    app_state_dir: Path = Path("data/app")
    versions_dir: Path = Path("/opt/bitcoind")
    # Explicit daemon binary; defaults to the one behind the `current` symlink
    binary: Path | None = None
    managed_conf_name: str = "umbrel-bitcoin.conf"
    log_dir: Path | None = None

    @field_validator("managed_conf_name")
    @classmethod
    def managed_conf_name_is_basename(cls, v: str) -> str:
        """includeconf resolves relative to the data directory, so no separators."""
        if not v or "/" in v or "\\" in v:
            raise ValueError("managed_conf_name must be a plain file name")
        return v

    @property
    def settings_file(self) -> Path:
        return self.app_state_dir / "settings.json"

    @property
    def bitcoin_conf(self) -> Path:
        return self.bitcoin_dir / "bitcoin.conf"

    @property
    def managed_conf(self) -> Path:
        return self.bitcoin_dir / self.managed_conf_name

    @property
    def current_symlink(self) -> Path:
        return self.versions_dir / "current"

    @property
    def launch_binary(self) -> Path:
        return self.binary or self.current_symlink / "bitcoind"

    def version_binary(self, version: str) -> Path:
        """Path of the daemon binary shipped for a concrete version."""
        return self.versions_dir / version / "bitcoind"


class NetworkConfig(BaseModel):
    """Addresses and ports written into the managed native config."""

    bitcoind_ip: str = "127.0.0.1"
    p2p_port: int = Field(default=8333, ge=1, le=65535)
    p2p_whitebind_port: int | None = Field(default=None, ge=1, le=65535)
    tor_port: int = Field(default=8334, ge=1, le=65535)
    rpc_port: int = Field(default=8332, ge=1, le=65535)

    tor_host: str = "127.0.0.1"
    tor_socks_port: int = Field(default=9050, ge=1, le=65535)
    tor_control_port: int = Field(default=9051, ge=1, le=65535)
    tor_control_password: str = ""

    i2p_host: str = "127.0.0.1"
    i2p_sam_port: int = Field(default=7656, ge=1, le=65535)

    # Each entry becomes an rpcallowip line ahead of the loopback entry
    trusted_subnets: list[str] = Field(default_factory=list)

    zmq_rawblock_port: int = 28332
    zmq_rawtx_port: int = 28333
    zmq_hashblock_port: int = 28334
    zmq_sequence_port: int = 28335
    zmq_hashtx_port: int | None = 28336

    datum_notify_url: str = "http://datum_datum_1:21000/NOTIFY"


class RpcConfig(BaseModel):
    """Credentials used both for rpcauth generation and the live RPC client."""

    user: str = "umbrel"
    password: str = "moneyprintergobrrr"
    cookie_file: Path | None = None
    timeout: float = 5.0

    @field_validator("user")
    @classmethod
    def user_must_not_contain_colon(cls, v: str) -> str:
        """rpcauth uses ':' to separate the user name from the salt."""
        if not v or ":" in v:
            raise ValueError("rpc user must be non-empty and must not contain ':'")
        return v


class DaemonConfig(BaseModel):
    """Supervisor behaviour."""

    # Comma separated so individual arguments may contain spaces
    extra_args: str = ""
    log_ring_size: int = Field(default=200, ge=1)
    # Seconds to wait for a graceful exit before SIGKILL; None waits forever
    stop_timeout: float | None = Field(default=900.0, gt=0)
    store_check_interval: float = Field(default=60.0, gt=0)
    backup_retention: int = Field(default=5, ge=1)
    implementation_name: str = "Bitcoin Knots"
    default_chain: Literal["main", "test", "testnet4", "signet", "regtest"] | None = None
    log_level: str = "INFO"

    def launch_args(self) -> list[str]:
        """Split ``extra_args`` on commas, trimming blanks."""
        return [arg.strip() for arg in self.extra_args.strip().split(",") if arg.strip()]


# Module-level variables
_json_config_file: Path | None = None  # For settings_customise_sources
_config_cache: "ManagerConfig | None" = None  # For singleton pattern


def _strip_comment_fields(data: Any) -> Any:
    """Recursively strip keys starting with _ or $ from dict.

    Args:
        data: Dictionary to clean (or any other type, which is returned as-is)

    Returns:
        Dictionary with comment fields removed, or original value if not a dict
    """
    if not isinstance(data, dict):
        return data
    return {
        k: _strip_comment_fields(v) if isinstance(v, dict) else v
        for k, v in data.items()
        if not k.startswith('_') and not k.startswith('$')
    }


class ManagerConfig(BaseSettings):
    """Root configuration model with nested sections.

    Loads configuration from (in priority order):
    1. Environment variables with BITCOIND_MANAGER_ prefix
    2. JSON config file (if provided)
    3. Default values
    """

    paths: PathsConfig = Field(default_factory=PathsConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)

    model_config = SettingsConfigDict(
        env_prefix="BITCOIND_MANAGER_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources to add JSON config file support.

        Priority order (highest to lowest):
        1. Init kwargs (tests and embedding callers)
        2. Environment variables
        3. JSON config file (if _json_config_file module variable is set)
        4. Default values
        """
        if _json_config_file is not None:
            json_source = JsonConfigSettingsSource(settings_cls, json_file=_json_config_file)
            return (init_settings, env_settings, json_source)
        return (init_settings, env_settings)


def get_config(config_path: Path | str | None = None, *, _force_reload: bool = False) -> ManagerConfig:
    """Load configuration from optional JSON config file and environment variables.

    Returns cached configuration unless _force_reload=True or config_path is provided.

    Args:
        config_path: Optional path to JSON config file. If provided, bypasses cache.
        _force_reload: If True, bypasses cache and creates fresh instance

    Returns:
        ManagerConfig instance with merged configuration
    """
    global _json_config_file, _config_cache

    if _config_cache is not None and not _force_reload and config_path is None:
        return _config_cache

    if config_path:
        _json_config_file = Path(config_path)
        try:
            config = ManagerConfig()
        finally:
            _json_config_file = None
    else:
        config = ManagerConfig()

    if config_path is None:
        _config_cache = config

    return config
