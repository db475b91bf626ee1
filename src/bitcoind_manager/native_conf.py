"""Compile a settings record into bitcoind's native key=value configuration.

The compiler works on an ordered list of structured lines (directives,
section headers, blank spacers) and only renders text at the very end:

1. Base pass: one directive per setting, with multi-valued expansions for
   ``onlynet`` and ``listen`` and the datum block notification.
2. Post-passes: each removes any directive with its key and re-adds its own
   (Tor proxy, Tor onion/control, I2P SAM, prune unit conversion, fee-rate
   unit conversion).
3. Fixed tail: rpcallowip, zmqpub*, rpcauth and the ``[chain]`` stanza with
   the P2P and RPC listeners.

Addresses, ports and credentials come from ``NetworkConfig``/``RpcConfig``.
"""

import hashlib
import hmac
import math
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from .config import ManagerConfig, NetworkConfig, RpcConfig

# Settings that exist for the manager only and never reach bitcoind
NON_NATIVE_KEYS = frozenset({"version"})

# 1 GB (settings unit) expressed in MiB (bitcoind's prune unit)
MIB_PER_GB = 953.674

# 1 sat/vB expressed in BTC/kvB
BTC_PER_KVB_PER_SAT_PER_VB = 1e-5

FEE_RATE_KEYS = ("minrelaytxfee", "blockmintxfee")

ONLYNET_EXPANSION: dict[str, tuple[str, ...]] = {
    "clearnet": ("ipv4", "ipv6"),
    "tor": ("onion",),
    "i2p": ("i2p",),
}

LOOPBACK = "127.0.0.1"
ANY_ADDRESS = "0.0.0.0"


@dataclass(frozen=True)
class Directive:
    key: str
    value: str

    def render(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class SectionHeader:
    """``[name]`` header; following directives only apply to that chain."""

    name: str

    def render(self) -> str:
        return f"[{self.name}]"


@dataclass(frozen=True)
class Blank:
    def render(self) -> str:
        return ""


ConfLine = Union[Directive, SectionHeader, Blank]


class ConfBuilder:
    """Ordered list of config lines with key-based replacement."""

    def __init__(self) -> None:
        self.lines: list[ConfLine] = []

    def add(self, key: str, value: Any) -> None:
        self.lines.append(Directive(key, format_value(value)))

    def remove(self, *keys: str) -> None:
        self.lines = [
            line for line in self.lines
            if not (isinstance(line, Directive) and line.key in keys)
        ]

    def replace(self, key: str, *values: Any) -> None:
        """Drop every ``key`` directive, then append one per value."""
        self.remove(key)
        for value in values:
            self.add(key, value)

    def section(self, name: str) -> None:
        self.lines.append(SectionHeader(name))

    def blank(self) -> None:
        self.lines.append(Blank())


def format_value(value: Any) -> str:
    """Render a setting value the way bitcoind reads it (booleans as 0/1)."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _flag(enabled: bool) -> int:
    return 1 if enabled else 0


def make_rpcauth(user: str, password: str, salt: str | None = None) -> str:
    """Build an rpcauth value ``user:salt$HMAC-SHA256(salt, password)``.

    The salt is 16 random bytes, hex encoded; the hex string itself is the
    HMAC key, matching bitcoind's share/rpcauth tool.
    """
    if salt is None:
        salt = secrets.token_bytes(16).hex()
    digest = hmac.new(salt.encode("utf-8"), password.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{user}:{salt}${digest}"


def gb_to_mib(gb: float) -> int:
    """Convert the prune target, rounding half away from zero."""
    return int(math.floor(gb * MIB_PER_GB + 0.5))


def sat_per_vb_to_btc_per_kvb(rate: float) -> str:
    return f"{rate * BTC_PER_KVB_PER_SAT_PER_VB:.8f}"


# --- base pass ---------------------------------------------------------------


def _base_pass(conf: ConfBuilder, settings: Mapping[str, Any], network: NetworkConfig) -> None:
    for key, value in settings.items():
        if key in NON_NATIVE_KEYS:
            continue

        if key == "onlynet":
            for net in value:
                for native in ONLYNET_EXPANSION.get(net, ()):
                    conf.add("onlynet", native)
            continue

        if key == "listen":
            # Always listen so apps on the internal network can connect. Clearnet
            # peers cannot reach us unless the user forwards the port themselves.
            conf.add("listen", 1)
            conf.add("listenonion", _flag("tor" in value))
            conf.add("i2pacceptincoming", _flag("i2p" in value))
            continue

        if key == "datum" and value is True:
            conf.add("blocknotify", f"curl -s -m 5 {network.datum_notify_url}")

        if isinstance(value, (bool, int, float, str)):
            conf.add(key, value)


# --- post-passes -------------------------------------------------------------


def _tor_proxy_pass(conf: ConfBuilder, settings: Mapping[str, Any], network: NetworkConfig) -> None:
    conf.remove("proxy")
    if settings.get("proxy"):
        conf.add("proxy", f"{network.tor_host}:{network.tor_socks_port}")


def _tor_pass(conf: ConfBuilder, settings: Mapping[str, Any], network: NetworkConfig) -> None:
    tor_out = "tor" in settings.get("onlynet", ())
    tor_in = "tor" in settings.get("listen", ())

    if tor_out or tor_in:
        conf.replace("onion", f"{network.tor_host}:{network.tor_socks_port}")
    if tor_in:
        conf.remove("torcontrol", "torpassword")
        conf.add("torcontrol", f"{network.tor_host}:{network.tor_control_port}")
        conf.add("torpassword", network.tor_control_password)


def _i2p_pass(conf: ConfBuilder, settings: Mapping[str, Any], network: NetworkConfig) -> None:
    i2p_out = "i2p" in settings.get("onlynet", ())
    i2p_in = "i2p" in settings.get("listen", ())

    if i2p_out or i2p_in:
        conf.replace("i2psam", f"{network.i2p_host}:{network.i2p_sam_port}")


def _prune_pass(conf: ConfBuilder, settings: Mapping[str, Any]) -> None:
    prune = settings.get("prune")
    if _is_number(prune) and prune > 0:
        conf.replace("prune", gb_to_mib(prune))


def _fee_rate_pass(conf: ConfBuilder, settings: Mapping[str, Any]) -> None:
    conf.remove(*FEE_RATE_KEYS)
    for key in FEE_RATE_KEYS:
        rate = settings.get(key)
        if _is_number(rate):
            conf.add(key, sat_per_vb_to_btc_per_kvb(rate))


# --- fixed tail --------------------------------------------------------------


def _rpc_allow_ips(conf: ConfBuilder, network: NetworkConfig) -> None:
    for subnet in network.trusted_subnets:
        conf.add("rpcallowip", subnet)
    conf.add("rpcallowip", LOOPBACK)


def _zmq_publishers(conf: ConfBuilder, network: NetworkConfig) -> None:
    publishers: Iterable[tuple[str, int | None]] = (
        ("zmqpubrawblock", network.zmq_rawblock_port),
        ("zmqpubrawtx", network.zmq_rawtx_port),
        ("zmqpubhashblock", network.zmq_hashblock_port),
        ("zmqpubsequence", network.zmq_sequence_port),
        ("zmqpubhashtx", network.zmq_hashtx_port),
    )
    for key, port in publishers:
        if port is not None:
            conf.add(key, f"tcp://{ANY_ADDRESS}:{port}")


def _rpc_auth(conf: ConfBuilder, rpc: RpcConfig, salt: str | None) -> None:
    conf.add("rpcauth", make_rpcauth(rpc.user, rpc.password, salt))


def _network_stanza(conf: ConfBuilder, settings: Mapping[str, Any], network: NetworkConfig) -> None:
    """Listener binds must sit under the chain section when not on mainnet."""
    conf.blank()
    conf.section(str(settings.get("chain") or "main"))

    conf.add("port", network.p2p_port)
    conf.add("bind", f"{ANY_ADDRESS}:{network.p2p_port}")
    if network.p2p_whitebind_port is not None:
        # Extra inbound listener with whitelisted permissions for trusted internal apps
        conf.add("whitebind", f"{ANY_ADDRESS}:{network.p2p_whitebind_port}")
    conf.add("bind", f"{network.bitcoind_ip}:{network.tor_port}=onion")

    conf.add("rpcport", network.rpc_port)
    conf.add("rpcbind", network.bitcoind_ip)
    conf.add("rpcbind", LOOPBACK)


def compile_directives(
    settings: Mapping[str, Any],
    network: NetworkConfig,
    rpc: RpcConfig,
    *,
    salt: str | None = None,
) -> list[ConfLine]:
    """Compile a settings record into ordered config lines.

    Args:
        settings: Validated, derived settings record
        network: Host addresses and ports
        rpc: Credentials for the rpcauth line
        salt: Fixed rpcauth salt (tests); a fresh random salt when None
    """
    conf = ConfBuilder()
    _base_pass(conf, settings, network)

    _tor_proxy_pass(conf, settings, network)
    _tor_pass(conf, settings, network)
    _i2p_pass(conf, settings, network)

    _prune_pass(conf, settings)
    _fee_rate_pass(conf, settings)

    _rpc_allow_ips(conf, network)
    _zmq_publishers(conf, network)
    _rpc_auth(conf, rpc, salt)
    _network_stanza(conf, settings, network)

    return conf.lines


def render_conf(lines: Iterable[ConfLine]) -> str:
    """Serialize config lines with a POSIX trailing newline."""
    return "\n".join(line.render() for line in lines) + "\n"


def generate_conf(settings: Mapping[str, Any], config: ManagerConfig, *, salt: str | None = None) -> str:
    """Compile and render the managed config file content."""
    return render_conf(compile_directives(settings, config.network, config.rpc, salt=salt))
