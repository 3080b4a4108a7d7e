"""Entry point: load config → load keypair → connect → sweep on every slot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from core.config import SweeperConfig, load_config
from core.network_config import NetworkDetector
from core.sweeper import SweepAgent, SweepContext
from tools.keypair_tool import KeypairError, load_keypair
from tools.ledger_tool import LedgerTool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sweep a Solana account to a fixed destination on every slot")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="build each transfer but do not submit it",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="override LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    )
    return parser.parse_args(argv)


async def run(
    config: SweeperConfig,
    keypair: Keypair,
    destination: Pubkey,
    dry_run: bool = False,
) -> SweepAgent:
    logger.info("connecting to cluster %s …", config.solana.cluster_url)
    ledger = LedgerTool(
        config.solana.cluster_url,
        config.solana.ws_url,
        fee_payer=keypair.pubkey(),
        commitment=config.solana.commitment,
        max_reconnects=config.solana.max_reconnects,
    )
    logger.info("connected to cluster")

    agent = SweepAgent(SweepContext(ledger, keypair, destination), dry_run=dry_run)
    try:
        await ledger.subscribe_slot_changes(agent.handle_slot_change)
    finally:
        await ledger.wait_for_handlers()
        await ledger.close()
        logger.info("sweep stats: %s", dict(agent.stats))
    return agent


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logger.info("starting up (dry_run=%s)", args.dry_run)
    try:
        config = load_config()
    except EnvironmentError as exc:
        logger.error("configuration error: %s", exc)
        sys.exit(1)

    level = (args.log_level or config.log_level).upper()
    try:
        logging.getLogger().setLevel(level)
    except ValueError:
        logger.error("configuration error: unknown log level %r", level)
        sys.exit(1)

    try:
        keypair = load_keypair(config.key_pair_path)
    except KeypairError as exc:
        logger.error("keypair error: %s", exc)
        sys.exit(1)

    try:
        destination = Pubkey.from_string(config.destination_address)
    except ValueError as exc:
        logger.error("invalid DESTINATION_ADDRESS %r: %s", config.destination_address, exc)
        sys.exit(1)

    network = NetworkDetector.detect(config.solana.cluster_url)
    logger.info(
        "config loaded — network=%s source=%s destination=%s",
        network.value,
        keypair.pubkey(),
        destination,
    )

    try:
        asyncio.run(run(config, keypair, destination, dry_run=args.dry_run))
    except KeyboardInterrupt:
        logger.info("interrupted — shutting down")


if __name__ == "__main__":
    main()
