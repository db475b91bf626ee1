"""bitcoind-manager: versioned settings and process supervision for a bitcoind node."""

__version__ = "0.1.0"
