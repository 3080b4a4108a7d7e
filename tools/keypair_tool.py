"""Load the signing keypair from disk."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import base58
from solders.keypair import Keypair

logger = logging.getLogger(__name__)


class KeypairError(Exception):
    """Raised when the keypair file cannot be read or parsed."""


def load_keypair(path: str | Path) -> Keypair:
    """Read a keypair file and return the signer.

    Two formats are accepted:
    - the Solana CLI format, a JSON array of the 64 secret-key bytes;
    - a base58-encoded 64-byte secret key on a single line.
    """
    file_path = Path(path).expanduser()
    logger.info("loading keypair from %s", file_path)
    try:
        raw = file_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise KeypairError(f"cannot read keypair file {file_path}: {exc}") from exc

    if not raw:
        raise KeypairError(f"keypair file {file_path} is empty")

    try:
        if raw.startswith("["):
            secret = bytes(json.loads(raw))
        else:
            secret = base58.b58decode(raw)
        if len(secret) != 64:
            raise ValueError(f"expected 64 secret-key bytes, got {len(secret)}")
        keypair = Keypair.from_bytes(secret)
    except (ValueError, TypeError) as exc:
        raise KeypairError(f"keypair file {file_path} is malformed: {exc}") from exc

    logger.info("  → keypair loaded for %s", keypair.pubkey())
    return keypair
