from __future__ import annotations

from enum import Enum
from urllib.parse import urlparse, urlunparse


class NetworkType(Enum):
    MAINNET = "mainnet-beta"
    DEVNET = "devnet"
    TESTNET = "testnet"
    LOCALNET = "localnet"


def websocket_url(http_url: str) -> str:
    """Derive the pubsub endpoint from an RPC URL (http → ws, https → wss).

    A local validator serves pubsub on the RPC port + 1, so 8899 maps to 8900.
    URLs that already use a ws scheme are returned unchanged.
    """
    parsed = urlparse(http_url)
    scheme = parsed.scheme.lower()
    if scheme in ("ws", "wss"):
        return http_url
    if scheme not in ("http", "https"):
        raise ValueError(f"Unsupported RPC URL scheme: {http_url!r}")

    netloc = parsed.netloc
    if parsed.port == 8899:
        netloc = netloc.replace(":8899", ":8900")
    return urlunparse(parsed._replace(scheme="wss" if scheme == "https" else "ws", netloc=netloc))


class NetworkDetector:
    """Helpers for detecting which cluster an RPC URL points at."""

    @staticmethod
    def detect(rpc_url: str) -> NetworkType:
        """Detect network from RPC URL (simple heuristic).

        Anything not recognisably devnet/testnet/local is treated as mainnet,
        which is the safe assumption for a process that moves funds.
        """
        url = rpc_url.lower()
        if "devnet" in url:
            return NetworkType.DEVNET
        if "testnet" in url:
            return NetworkType.TESTNET
        host = urlparse(url).hostname or ""
        if host in ("localhost", "127.0.0.1", "0.0.0.0"):
            return NetworkType.LOCALNET
        return NetworkType.MAINNET
