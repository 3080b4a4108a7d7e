"""Slot-triggered sweep: move the whole spendable balance to one destination.

One attempt per slot notification, never two at once:

    guard → balance + blockhash/fee → dedup → fee check → build → submit → release

Every exit path returns a SweepOutcome; nothing raised inside an attempt
escapes to the slot feed.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.rpc.responses import SlotInfo
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from tools.ledger_tool import FeeReference

logger = logging.getLogger(__name__)


class Ledger(Protocol):
    async def get_balance(self, pubkey: Pubkey) -> int: ...

    async def get_recent_fee_reference(self) -> FeeReference: ...

    async def submit_transfer(self, txn: Transaction, signer: Keypair) -> str: ...


class SweepOutcomeKind(Enum):
    SUBMITTED = "submitted"
    DRY_RUN = "dry_run"
    BUSY = "busy"
    DUPLICATE_REFERENCE = "duplicate_reference"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True)
class SweepOutcome:
    kind: SweepOutcomeKind
    slot: int | None = None
    balance: int | None = None      # lamports
    blockhash: str | None = None
    fee: int | None = None          # lamports per signature
    amount: int | None = None       # lamports moved (or that would have been)
    signature: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind in (SweepOutcomeKind.SUBMITTED, SweepOutcomeKind.DRY_RUN)

    def describe(self) -> str:
        kind = self.kind
        if kind is SweepOutcomeKind.SUBMITTED:
            return f"sent {self.amount} lamports with txId {self.signature}"
        if kind is SweepOutcomeKind.DRY_RUN:
            return f"dry run: would send {self.amount} lamports"
        if kind is SweepOutcomeKind.BUSY:
            return "transfer already in progress, skipping this slot change"
        if kind is SweepOutcomeKind.DUPLICATE_REFERENCE:
            return f"got same last blockhash, skipping: {self.blockhash}"
        if kind is SweepOutcomeKind.INSUFFICIENT_BALANCE:
            return (
                f"insufficient balance to send a transaction: "
                f"balance {self.balance} <= fee {self.fee}"
            )
        return f"transfer failed: {self.error}"


@dataclass(frozen=True)
class SweepContext:
    """Everything an attempt needs; built once at startup and never mutated."""

    ledger: Ledger
    keypair: Keypair
    destination: Pubkey


def build_transfer(
    source: Pubkey, destination: Pubkey, lamports: int, blockhash: Hash
) -> Transaction:
    """Unsigned single-instruction transfer, *source* paying the fee."""
    ix = transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports))
    return Transaction.new_unsigned(Message.new_with_blockhash([ix], source, blockhash))


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class SweepAgent:
    """Single-flight sweeper; owns the busy guard and the last seen blockhash."""

    def __init__(self, context: SweepContext, dry_run: bool = False):
        self.context = context
        self.dry_run = dry_run
        self.last_blockhash = ""
        self.stats: Counter[str] = Counter()
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def handle_slot_change(self, slot_info: SlotInfo | None = None) -> SweepOutcome:
        """Slot feed callback: run one attempt and log how it ended."""
        slot = slot_info.slot if slot_info is not None else None
        outcome = await self.sweep(slot)
        self.stats[outcome.kind.value] += 1
        if outcome.ok:
            logger.info(outcome.describe())
        else:
            logger.warning(outcome.describe())
        return outcome

    async def sweep(self, slot: int | None = None) -> SweepOutcome:
        # Check-and-set with no await in between: atomic on the event loop.
        if self._in_progress:
            return SweepOutcome(SweepOutcomeKind.BUSY, slot=slot)
        self._in_progress = True
        try:
            return await self._attempt(slot)
        except Exception as exc:
            return SweepOutcome(
                SweepOutcomeKind.TRANSPORT_FAILURE, slot=slot, error=_error_text(exc)
            )
        finally:
            self._in_progress = False

    async def _attempt(self, slot: int | None) -> SweepOutcome:
        ctx = self.context
        source = ctx.keypair.pubkey()
        logger.info("starting transfer (slot=%s)", slot)

        balance = await ctx.ledger.get_balance(source)
        reference = await ctx.ledger.get_recent_fee_reference()
        blockhash = reference.blockhash
        fee = reference.lamports_per_signature

        if blockhash == self.last_blockhash:
            return SweepOutcome(
                SweepOutcomeKind.DUPLICATE_REFERENCE,
                slot=slot,
                balance=balance,
                blockhash=blockhash,
                fee=fee,
            )
        self.last_blockhash = blockhash

        logger.info("  balance: %d lamports", balance)
        logger.info("  recent blockhash: %s", blockhash)
        logger.info("  fee: %d lamports", fee)

        if balance <= fee:
            return SweepOutcome(
                SweepOutcomeKind.INSUFFICIENT_BALANCE,
                slot=slot,
                balance=balance,
                blockhash=blockhash,
                fee=fee,
            )

        amount = balance - fee
        txn = build_transfer(source, ctx.destination, amount, Hash.from_string(blockhash))
        logger.info("  about to send %d lamports to %s", amount, ctx.destination)

        if self.dry_run:
            return SweepOutcome(
                SweepOutcomeKind.DRY_RUN,
                slot=slot,
                balance=balance,
                blockhash=blockhash,
                fee=fee,
                amount=amount,
            )

        signature = await ctx.ledger.submit_transfer(txn, ctx.keypair)
        return SweepOutcome(
            SweepOutcomeKind.SUBMITTED,
            slot=slot,
            balance=balance,
            blockhash=blockhash,
            fee=fee,
            amount=amount,
            signature=signature,
        )
