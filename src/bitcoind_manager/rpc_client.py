"""Minimal JSON-RPC client for querying the running daemon.

Only what the manager needs: ``getnetworkinfo`` to report which
implementation and version is actually serving RPC. Credentials come from
the cookie file when configured and readable, otherwise from ``RpcConfig``.
"""

from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from .config import ManagerConfig
from .models import VersionInfo


class RpcError(Exception):
    """The daemon answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: dict[str, Any]) -> None:
        self.method = method
        self.code = error.get("code")
        super().__init__(f"{method} failed: {error.get('message', error)}")


def read_cookie_file(path: Path) -> tuple[str, str] | None:
    """Read ``user:password`` from a bitcoind .cookie file."""
    try:
        cookie = Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Failed to read RPC cookie file {path}: {e}")
        return None
    user, sep, password = cookie.partition(":")
    if not sep:
        logger.warning(f"RPC cookie file {path} is not in user:password form")
        return None
    return user, password


def implementation_from_subversion(subversion: str) -> str:
    """``/Satoshi:29.2.0/Knots:20251010/`` is Bitcoin Knots, anything else Bitcoin Core."""
    return "Bitcoin Knots" if "Knots" in subversion else "Bitcoin Core"


class RpcClient:
    """Async JSON-RPC client over httpx."""

    def __init__(self, config: ManagerConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        network, rpc = config.network, config.rpc
        self.url = f"http://{network.bitcoind_ip}:{network.rpc_port}/"
        self._timeout = rpc.timeout
        self._transport = transport

        credentials = read_cookie_file(rpc.cookie_file) if rpc.cookie_file else None
        self._auth = credentials or (rpc.user, rpc.password)

    async def call(self, method: str, *params: Any) -> Any:
        payload = {"jsonrpc": "1.0", "id": "bitcoind-manager", "method": method, "params": list(params)}
        async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=payload)
        # bitcoind answers RPC-level errors with HTTP 500 and a JSON body
        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise
        if body.get("error"):
            raise RpcError(method, body["error"])
        response.raise_for_status()
        return body.get("result")

    async def get_version(self) -> VersionInfo:
        """Implementation and user agent of the running daemon, or ``unknown``."""
        try:
            info = await self.call("getnetworkinfo")
        except (httpx.HTTPError, RpcError, ValueError) as e:
            logger.warning(f"Failed to get version from RPC: {e}")
            return VersionInfo()
        subversion = (info or {}).get("subversion") or ""
        return VersionInfo(
            implementation=implementation_from_subversion(subversion),
            version=subversion or "unknown",
        )
