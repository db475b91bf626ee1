"""Daemon infrastructure for bitcoind-manager.

This package provides:
- Supervision of the bitcoind child process
- Publish/subscribe delivery of exit events
- Logging setup with rotation and async safety
- Graceful shutdown handling
"""

from .events import ExitEventChannel, Subscription
from .graceful_shutdown import AsyncShutdownHandler
from .logging_setup import get_logger, setup_logging
from .supervisor import BitcoindSupervisor, LogRing, parse_version_output

__all__ = [
    "AsyncShutdownHandler",
    "BitcoindSupervisor",
    "ExitEventChannel",
    "LogRing",
    "Subscription",
    "get_logger",
    "parse_version_output",
    "setup_logging",
]
