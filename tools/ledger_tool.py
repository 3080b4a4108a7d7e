"""Solana ledger access for the sweeper: balance, fee reference, submit, slot feed.

Policy-unaware: every method either returns a plain value or raises, the
caller decides what a failure means.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solana.rpc.websocket_api import connect
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.rpc.responses import SlotInfo, SlotNotification
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from websockets.exceptions import WebSocketException

logger = logging.getLogger(__name__)

SlotHandler = Callable[[SlotInfo], Awaitable[object]]


class LedgerError(Exception):
    """The RPC node answered, but not with something usable."""


@dataclass(frozen=True)
class FeeReference:
    """A recent blockhash and the fee one signature costs against it."""

    blockhash: str
    lamports_per_signature: int


class LedgerTool:
    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        fee_payer: Pubkey,
        commitment: str = "finalized",
        max_reconnects: int = 5,
        reconnect_backoff: float = 1.0,
    ):
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._fee_payer = fee_payer
        self._commitment = Commitment(commitment)
        self._max_reconnects = max_reconnects
        self._reconnect_backoff = reconnect_backoff
        self.client = AsyncClient(rpc_url, commitment=self._commitment)
        # Strong references to in-flight handler tasks; the loop only keeps weak ones.
        self._tasks: set[asyncio.Task] = set()

    # ── queries ───────────────────────────────────────────────────

    async def get_balance(self, pubkey: Pubkey) -> int:
        """Return the balance of *pubkey* in lamports."""
        resp = await self.client.get_balance(pubkey, commitment=self._commitment)
        return int(resp.value)

    async def get_recent_fee_reference(self) -> FeeReference:
        """Return the latest blockhash plus the fee for a one-signature transfer.

        The fee is asked for a transfer message compiled against that very
        blockhash, so the two values always belong together.
        """
        resp = await self.client.get_latest_blockhash(commitment=self._commitment)
        blockhash: Hash = resp.value.blockhash

        fee_message = Message.new_with_blockhash(
            [
                transfer(
                    TransferParams(
                        from_pubkey=self._fee_payer,
                        to_pubkey=self._fee_payer,
                        lamports=0,
                    )
                )
            ],
            self._fee_payer,
            blockhash,
        )
        fee_resp = await self.client.get_fee_for_message(fee_message, commitment=self._commitment)
        if fee_resp.value is None:
            raise LedgerError(f"no fee available for blockhash {blockhash} (expired?)")
        return FeeReference(blockhash=str(blockhash), lamports_per_signature=int(fee_resp.value))

    # ── mutations ─────────────────────────────────────────────────

    async def submit_transfer(self, txn: Transaction, signer: Keypair) -> str:
        """Sign *txn* with *signer* and send it.  Returns the transaction signature.

        Fire-and-forget: the signature is returned as soon as the node accepts
        the transaction, confirmation is never polled.
        """
        txn.sign([signer], txn.message.recent_blockhash)
        resp = await self.client.send_transaction(
            txn, opts=TxOpts(preflight_commitment=self._commitment)
        )
        return str(resp.value)

    # ── slot feed ─────────────────────────────────────────────────

    async def subscribe_slot_changes(self, handler: SlotHandler) -> None:
        """Call *handler* once per slot notification until the feed gives up.

        Each notification is handed to its own task so a slow handler never
        holds up the websocket reader. A session that ends after its
        subscription was confirmed is simply re-opened with a fresh retry
        budget; only back-to-back failures to subscribe count towards
        *max_reconnects*, and once those run out the error propagates.
        """
        while True:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self._max_reconnects + 1),
                wait=wait_exponential(
                    multiplier=self._reconnect_backoff, min=self._reconnect_backoff, max=30
                ),
                retry=retry_if_exception_type((WebSocketException, OSError, LedgerError)),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    await self._consume_slot_feed(handler)
            logger.warning("slot subscription ended, resubscribing")

    async def _consume_slot_feed(self, handler: SlotHandler) -> None:
        """Run one websocket session; returns once a confirmed subscription ends."""
        logger.info("subscribing to slot changes on %s", self._ws_url)
        async with connect(self._ws_url) as websocket:
            await websocket.slot_subscribe()
            first = await websocket.recv()
            subscription_id = first[0].result
            logger.info("  → slot subscription %s active", subscription_id)
            try:
                async for batch in websocket:
                    for msg in batch:
                        if isinstance(msg, SlotNotification):
                            self._dispatch(handler, msg.result)
            except (WebSocketException, OSError) as exc:
                logger.warning("slot subscription %s dropped: %s", subscription_id, exc)

    def _dispatch(self, handler: SlotHandler, slot_info: SlotInfo) -> None:
        task = asyncio.create_task(handler(slot_info))
        self._tasks.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("slot handler raised: %s", exc)

    async def wait_for_handlers(self) -> None:
        """Block until every dispatched handler has finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.client.close()
