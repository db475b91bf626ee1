"""Settings catalog: the single source of truth for every managed bitcoind option.

Everything else is derived from ``SETTINGS_METADATA``:
- the per-version validator (``schema.py``)
- the per-version default record (``defaults_for``)
- which keys survive a version switch (``materialize``)

To manage a new bitcoind option, add an entry here and check that
``native_conf.compile_directives`` writes it the way bitcoind expects.
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .versions import AVAILABLE_VERSIONS, LATEST, version_index

Tab = Literal["peers", "optimization", "rpc-rest", "network", "version", "advanced", "policy"]


class Choice(BaseModel):
    """One allowed value of a select or multi option."""

    value: str
    label: str


class _BaseOption(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tab: Tab
    label: str
    native_keys: tuple[str, ...]
    description: str = ""


class NumberOption(_BaseOption):
    kind: Literal["number"] = "number"
    default: int | float
    min: int | float | None = None
    max: int | float | None = None
    step: int | float | None = None
    unit: str | None = None

    @property
    def integer_only(self) -> bool:
        """Integers are required unless a fractional step is declared."""
        return self.step is None or float(self.step).is_integer()


class ToggleOption(_BaseOption):
    kind: Literal["toggle"] = "toggle"
    default: bool


class SelectOption(_BaseOption):
    kind: Literal["select"] = "select"
    options: list[Choice]
    default: str

    @model_validator(mode="after")
    def _default_is_an_option(self) -> "SelectOption":
        if self.default not in {c.value for c in self.options}:
            raise ValueError(f"default {self.default!r} is not one of the options")
        return self


class MultiOption(_BaseOption):
    kind: Literal["multi"] = "multi"
    options: list[Choice]
    default: list[str]
    require_at_least_one: bool = True

    @model_validator(mode="after")
    def _defaults_are_options(self) -> "MultiOption":
        allowed = {c.value for c in self.options}
        unknown = [v for v in self.default if v not in allowed]
        if unknown:
            raise ValueError(f"defaults {unknown!r} are not among the options")
        return self


Option = Annotated[
    Union[NumberOption, ToggleOption, SelectOption, MultiOption],
    Field(discriminator="kind"),
]

_OPTION_ADAPTER: TypeAdapter[Option] = TypeAdapter(Option)


@dataclass(frozen=True)
class VersionedOption:
    """An option plus the versions it exists in and per-version field overrides.

    ``introduced_in`` is inclusive (available from that version onwards),
    ``removed_in`` is exclusive (gone starting with that version).
    """

    option: Option
    introduced_in: str | None = None
    removed_in: str | None = None
    overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def available_in(self, version: str, versions: tuple[str, ...] = AVAILABLE_VERSIONS) -> bool:
        idx = version_index(version, versions)
        if self.introduced_in and idx > version_index(self.introduced_in, versions):
            return False
        if self.removed_in and idx <= version_index(self.removed_in, versions):
            return False
        return True

    def for_version(self, version: str) -> Option:
        """Shallow-merge this version's overrides over the base option."""
        merged = {**self.option.model_dump(), **self.overrides.get(version, {})}
        return _OPTION_ADAPTER.validate_python(merged)


def _choices(*pairs: tuple[str, str]) -> list[Choice]:
    return [Choice(value=v, label=label) for v, label in pairs]


_NETWORKS = (("clearnet", "Clearnet"), ("tor", "Tor"), ("i2p", "I2P"))

# Fee-rate bounds follow MoneyRange(MAX_MONEY): 21,000,000 BTC/kvB in sat/vB.
# bitcoind refuses to start on out-of-range values rather than clamping.
_MAX_FEE_RATE = 2_100_000_000_000


SETTINGS_METADATA: dict[str, VersionedOption] = {
    # ===== Peers =====
    "onlynet": VersionedOption(MultiOption(
        tab="peers",
        label="Outgoing Peer Connections",
        native_keys=("onlynet",),
        description="Only make outgoing connections to peers on the selected networks.",
        options=_choices(*_NETWORKS),
        default=["clearnet", "tor", "i2p"],
        require_at_least_one=True,
    )),
    "proxy": VersionedOption(ToggleOption(
        tab="peers",
        label="Make All Outgoing Connections to Clearnet Peers Over Tor",
        native_keys=("proxy",),
        description="Requires both Clearnet and Tor outgoing connections.",
        default=False,
    )),
    "listen": VersionedOption(MultiOption(
        tab="peers",
        label="Incoming Peer Connections",
        native_keys=("listen", "listenonion", "i2pacceptincoming"),
        description="Networks on which other nodes may open connections to this node.",
        options=_choices(*_NETWORKS),
        default=[],
        require_at_least_one=False,
    )),
    "peerblockfilters": VersionedOption(ToggleOption(
        tab="peers",
        label="Peer Block Filters",
        native_keys=("peerblockfilters",),
        description="Serve compact block filters to peers. Forces Block Filter Index on.",
        default=True,
    )),
    "blockfilterindex": VersionedOption(ToggleOption(
        tab="peers",
        label="Block Filter Index",
        native_keys=("blockfilterindex",),
        default=True,
    )),
    "peerbloomfilters": VersionedOption(ToggleOption(
        tab="peers",
        label="Peer Bloom Filters",
        native_keys=("peerbloomfilters",),
        description="BIP37 bloom filter support for legacy light clients.",
        default=False,
    )),
    "bantime": VersionedOption(NumberOption(
        tab="peers", label="Peer Ban Time", native_keys=("bantime",),
        step=1, default=86_400, unit="sec",
    )),
    "maxconnections": VersionedOption(NumberOption(
        tab="peers", label="Max Peer Connections", native_keys=("maxconnections",),
        step=1, default=125, unit="peers",
    )),
    "maxreceivebuffer": VersionedOption(NumberOption(
        tab="peers", label="Max Receive Buffer", native_keys=("maxreceivebuffer",),
        step=1, default=5000, unit="KB",
    )),
    "maxsendbuffer": VersionedOption(NumberOption(
        tab="peers", label="Max Send Buffer", native_keys=("maxsendbuffer",),
        step=1, default=5000, unit="KB",
    )),
    "peertimeout": VersionedOption(NumberOption(
        tab="peers", label="Peer Timeout", native_keys=("peertimeout",),
        step=1, min=1, default=60, unit="sec",
    )),
    "timeout": VersionedOption(NumberOption(
        tab="peers", label="Connection Timeout", native_keys=("timeout",),
        step=1, min=1, default=5000, unit="ms",
    )),
    "maxuploadtarget": VersionedOption(NumberOption(
        tab="peers", label="Max Upload Target", native_keys=("maxuploadtarget",),
        description="0 means no limit. Whitelisted peers are exempt.",
        min=0, step=1, default=0, unit="MB/24h",
    )),
    # ===== Optimization =====
    "dbcache": VersionedOption(NumberOption(
        tab="optimization", label="Cache Size", native_keys=("dbcache",),
        # No max: bitcoind caps it silently and the cap grows between releases
        min=4, step=1, default=450, unit="MiB",
    )),
    "prune": VersionedOption(NumberOption(
        tab="optimization", label="Prune Old Blocks", native_keys=("prune",),
        description="Target size in GB; 0 disables pruning. Forces txindex off.",
        # Stored in GB, written in MiB. A step of 1 GB keeps users away from
        # bitcoind's special 1 MiB and <550 MiB behaviours.
        min=0, step=1, default=0, unit="GB",
    )),
    "txindex": VersionedOption(ToggleOption(
        tab="optimization",
        label="Enable Transaction Indexing",
        native_keys=("txindex",),
        description="Automatically disabled when pruning is enabled.",
        default=True,
    )),
    "blockreconstructionextratxn": VersionedOption(NumberOption(
        tab="optimization", label="Number of transactions to keep in memory for reconstruction",
        native_keys=("blockreconstructionextratxn",), default=32768,
    )),
    "blockreconstructionextratxnsize": VersionedOption(NumberOption(
        tab="optimization", label="Max memory for reconstruction",
        native_keys=("blockreconstructionextratxnsize",), default=10,
    )),
    "coinstatsindex": VersionedOption(ToggleOption(
        tab="optimization", label="Coin Stats Index", native_keys=("coinstatsindex",), default=False,
    )),
    "maxmempool": VersionedOption(NumberOption(
        tab="optimization", label="Maximum Mempool Size", native_keys=("maxmempool",),
        default=300, unit="MB",
    )),
    "mempoolexpiry": VersionedOption(NumberOption(
        tab="optimization", label="Memory Expiration", native_keys=("mempoolexpiry",),
        step=1, default=336, unit="hours",
    )),
    "persistmempool": VersionedOption(ToggleOption(
        tab="optimization", label="Persist Mempool", native_keys=("persistmempool",), default=True,
    )),
    "maxorphantx": VersionedOption(NumberOption(
        tab="optimization", label="Max Orphan Transactions", native_keys=("maxorphantx",),
        step=1, default=100, unit="txs",
    )),
    "datum": VersionedOption(ToggleOption(
        tab="optimization",
        label="Enable blocknotify for datum",
        native_keys=("datum", "blocknotify"),
        description="Notify a DATUM gateway of new blocks to avoid mining stale work.",
        default=True,
    )),
    # ===== Policy =====
    "datacarrier": VersionedOption(ToggleOption(
        tab="policy", label="Relay Transactions Containing Arbitrary Data",
        native_keys=("datacarrier",), default=True,
    )),
    "datacarriersize": VersionedOption(NumberOption(
        tab="policy", label="Max Allowed Size of Arbitrary Data in Transactions",
        native_keys=("datacarriersize",), default=42, unit="bytes",
    )),
    "permitbaremultisig": VersionedOption(ToggleOption(
        tab="policy", label="Relay Bare Multisig Transactions",
        native_keys=("permitbaremultisig",), default=False,
    )),
    "rejectparasites": VersionedOption(ToggleOption(
        tab="policy", label="Reject parasitic transactions", native_keys=("rejectparasites",), default=True,
    )),
    "rejecttokens": VersionedOption(ToggleOption(
        tab="policy", label="Reject tokens transactions", native_keys=("rejecttokens",), default=False,
    )),
    "permitbarepubkey": VersionedOption(ToggleOption(
        tab="policy", label="Permit Bare Pubkey", native_keys=("permitbarepubkey",), default=False,
    )),
    "permitbaredatacarrier": VersionedOption(ToggleOption(
        tab="policy", label="Permit Bare Datacarrier", native_keys=("permitbaredatacarrier",), default=False,
    )),
    "datacarriercost": VersionedOption(NumberOption(
        tab="policy", label="Datacarrier cost", native_keys=("datacarriercost",), default=1,
    )),
    "acceptnonstddatacarrier": VersionedOption(ToggleOption(
        tab="policy", label="Accept non standard datacarrier",
        native_keys=("acceptnonstddatacarrier",), default=False,
    )),
    "maxscriptsize": VersionedOption(NumberOption(
        tab="policy", label="Max script size", native_keys=("maxscriptsize",), default=1650,
    )),
    "blockmaxsize": VersionedOption(NumberOption(
        tab="policy", label="Max block size in bytes", native_keys=("blockmaxsize",), default=3_985_000,
    )),
    "blockmaxweight": VersionedOption(NumberOption(
        tab="policy", label="Max block size in weight", native_keys=("blockmaxweight",), default=3_985_000,
    )),
    # Fee rates are stored in sat/vB and written in BTC/kvB
    "blockmintxfee": VersionedOption(NumberOption(
        tab="policy", label="Minimum Transaction Fee for Block Templates",
        native_keys=("blockmintxfee",),
        default=1, min=0, max=_MAX_FEE_RATE, step=0.001, unit="sat/vB",
    )),
    "minrelaytxfee": VersionedOption(NumberOption(
        tab="policy", label="Minimum Fee to Relay Transactions",
        native_keys=("minrelaytxfee",),
        default=1, min=0, max=_MAX_FEE_RATE, step=1, unit="sat/vB",
    )),
    "incrementalrelayfee": VersionedOption(NumberOption(
        tab="policy", label="Additional Fee for Replacing Transactions",
        native_keys=("incrementalrelayfee",),
        default=1, min=0, max=_MAX_FEE_RATE, step=0.001, unit="sat/vB",
    )),
    # ===== RPC & REST =====
    "rest": VersionedOption(ToggleOption(
        tab="rpc-rest",
        label="Public REST API",
        native_keys=("rest",),
        description="Unauthenticated; exposes the node to privacy and DoS risks.",
        default=False,
    )),
    "rpcworkqueue": VersionedOption(NumberOption(
        tab="rpc-rest", label="RPC Work Queue Size", native_keys=("rpcworkqueue",),
        # bitcoind has no minimum, but the manager's own RPC queries need one slot
        step=1, min=1, default=128, unit="requests",
    )),
    # ===== Version =====
    "version": VersionedOption(SelectOption(
        tab="version",
        label="Bitcoin Knots Version",
        native_keys=("version",),
        options=[
            Choice(value=LATEST, label="Always use the latest version"),
            *(Choice(value=v, label=v) for v in AVAILABLE_VERSIONS),
        ],
        default=LATEST,
    )),
    # ===== Network =====
    "chain": VersionedOption(SelectOption(
        tab="network",
        label="Bitcoin Network",
        native_keys=("chain",),
        options=_choices(
            ("main", "Mainnet"),
            ("test", "Testnet3"),
            ("testnet4", "Testnet4"),
            ("signet", "Signet"),
            ("regtest", "Regtest"),
        ),
        default="main",
    )),
}


def materialize(
    version: str,
    catalog: Mapping[str, VersionedOption] = SETTINGS_METADATA,
    versions: tuple[str, ...] = AVAILABLE_VERSIONS,
) -> dict[str, Option]:
    """Catalog as seen by one concrete version.

    Entries not yet introduced or already removed are dropped; the rest have
    their per-version overrides applied. The returned options carry no
    version-bound fields.
    """
    return {
        key: entry.for_version(version)
        for key, entry in catalog.items()
        if entry.available_in(version, versions)
    }


def defaults_for(
    version: str,
    catalog: Mapping[str, VersionedOption] = SETTINGS_METADATA,
    versions: tuple[str, ...] = AVAILABLE_VERSIONS,
) -> dict[str, Any]:
    """Default settings record for a concrete version."""
    return {
        key: copy.deepcopy(option.default)
        for key, option in materialize(version, catalog, versions).items()
    }


def incompatible_settings(
    record: Mapping[str, Any],
    version: str,
    catalog: Mapping[str, VersionedOption] = SETTINGS_METADATA,
    versions: tuple[str, ...] = AVAILABLE_VERSIONS,
) -> list[str]:
    """Keys of ``record`` that would be dropped when switching to ``version``."""
    allowed = materialize(version, catalog, versions)
    return sorted(key for key in record if key not in allowed)
