"""Load and validate sweeper configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from core.network_config import websocket_url

load_dotenv()


REQUIRED_ENV_VARS: tuple[str, ...] = (
    "KEY_PAIR_PATH",
    "SOLANA_CLUSTER_URL",
    "DESTINATION_ADDRESS",
)

COMMITMENT_LEVELS: frozenset[str] = frozenset({"processed", "confirmed", "finalized"})


@dataclass(frozen=True)
class SolanaConfig:
    cluster_url: str
    ws_url: str
    commitment: str = "finalized"
    # Websocket reconnects before the slot subscription gives up.
    max_reconnects: int = 5


@dataclass(frozen=True)
class SweeperConfig:
    key_pair_path: str
    destination_address: str  # base58 pubkey
    solana: SolanaConfig
    log_level: str = "INFO"


def _getenv(name: str, default: str | None = None) -> str | None:
    """os.getenv wrapper that strips inline comments (e.g. 'finalized  # note' → 'finalized')."""
    raw = os.getenv(name, default)
    if raw is None:
        return None
    return raw.split(" #")[0].strip()


def missing_env_vars() -> list[str]:
    """Return the required variables that are unset or empty, in declaration order."""
    return [name for name in REQUIRED_ENV_VARS if not _getenv(name)]


def load_config() -> SweeperConfig:
    """Build SweeperConfig from environment. Raises EnvironmentError on missing or bad keys."""
    missing = missing_env_vars()
    if missing:
        raise EnvironmentError(
            "Please set the following environment variables: " + ", ".join(missing)
        )

    cluster_url: str = _getenv("SOLANA_CLUSTER_URL")  # type: ignore[assignment]

    commitment = (_getenv("SOLANA_COMMITMENT", "finalized") or "finalized").lower()
    if commitment not in COMMITMENT_LEVELS:
        raise EnvironmentError(
            f"SOLANA_COMMITMENT must be one of {sorted(COMMITMENT_LEVELS)}, got {commitment!r}"
        )

    raw_reconnects = _getenv("SUBSCRIBE_MAX_RECONNECTS", "5")
    try:
        max_reconnects = int(raw_reconnects)  # type: ignore[arg-type]
    except ValueError:
        raise EnvironmentError(
            f"SUBSCRIBE_MAX_RECONNECTS must be an integer, got {raw_reconnects!r}"
        ) from None
    if max_reconnects < 1:
        raise EnvironmentError("SUBSCRIBE_MAX_RECONNECTS must be at least 1")

    return SweeperConfig(
        key_pair_path=_getenv("KEY_PAIR_PATH"),  # type: ignore[arg-type]
        destination_address=_getenv("DESTINATION_ADDRESS"),  # type: ignore[arg-type]
        solana=SolanaConfig(
            cluster_url=cluster_url,
            ws_url=_getenv("SOLANA_WS_URL") or websocket_url(cluster_url),
            commitment=commitment,
            max_reconnects=max_reconnects,
        ),
        log_level=(_getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
    )
