"""Tests for tools/ledger_tool.py.

The RPC client and the websocket are mocked, no cluster traffic is generated.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.rpc.responses import SlotInfo, SlotNotification
from solders.signature import Signature
from websockets.exceptions import WebSocketException

from core.sweeper import build_transfer
from tools.ledger_tool import FeeReference, LedgerError, LedgerTool

# ── fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def mock_ledger(payer: Keypair):
    """Return a LedgerTool whose AsyncClient is fully mocked."""
    mock_client = MagicMock()
    mock_client.get_balance = AsyncMock()
    mock_client.get_latest_blockhash = AsyncMock()
    mock_client.get_fee_for_message = AsyncMock()
    mock_client.send_transaction = AsyncMock()
    mock_client.close = AsyncMock()

    with patch("tools.ledger_tool.AsyncClient", return_value=mock_client):
        tool = LedgerTool(
            "https://api.devnet.solana.com",
            "wss://api.devnet.solana.com",
            fee_payer=payer.pubkey(),
            max_reconnects=0,
            reconnect_backoff=0,
        )
    return tool, mock_client


class FakeWebsocket:
    """Async context manager + iterator standing in for solana-py's websocket."""

    def __init__(self, batches=(), error: Exception | None = None):
        self._batches = list(batches)
        self._error = error
        self.subscribed = False

    async def __aenter__(self) -> FakeWebsocket:
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    async def slot_subscribe(self) -> None:
        self.subscribed = True

    async def recv(self):
        return [MagicMock(result=7)]

    def __aiter__(self) -> FakeWebsocket:
        return self

    async def __anext__(self):
        if not self._batches:
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return self._batches.pop(0)


def _sessions(*outcomes):
    """connect() stand-in: hands out *outcomes* in order, then refuses forever."""
    queue = list(outcomes)

    def _connect(url: str):
        if queue:
            nxt = queue.pop(0)
            if isinstance(nxt, BaseException):
                raise nxt
            return nxt
        raise OSError("connection refused")

    return _connect


def _slot(n: int) -> SlotNotification:
    return SlotNotification(
        result=SlotInfo(slot=n, parent=max(n - 1, 0), root=max(n - 32, 0)), subscription=7
    )


# ── queries ───────────────────────────────────────────────────────────────────


class TestLedgerQueries:
    @pytest.mark.asyncio
    async def test_get_balance_returns_lamports(self, mock_ledger, payer: Keypair) -> None:
        tool, client = mock_ledger
        client.get_balance.return_value = MagicMock(value=1_000_000)

        assert await tool.get_balance(payer.pubkey()) == 1_000_000
        assert client.get_balance.await_args.args[0] == payer.pubkey()

    @pytest.mark.asyncio
    async def test_fee_reference_pairs_blockhash_and_fee(self, mock_ledger) -> None:
        tool, client = mock_ledger
        blockhash = Hash.new_unique()
        client.get_latest_blockhash.return_value = MagicMock(value=MagicMock(blockhash=blockhash))
        client.get_fee_for_message.return_value = MagicMock(value=5_000)

        ref = await tool.get_recent_fee_reference()

        assert ref == FeeReference(blockhash=str(blockhash), lamports_per_signature=5_000)
        fee_message = client.get_fee_for_message.await_args.args[0]
        assert isinstance(fee_message, Message)
        assert fee_message.recent_blockhash == blockhash
        assert fee_message.header.num_required_signatures == 1

    @pytest.mark.asyncio
    async def test_expired_blockhash_raises(self, mock_ledger) -> None:
        tool, client = mock_ledger
        client.get_latest_blockhash.return_value = MagicMock(
            value=MagicMock(blockhash=Hash.new_unique())
        )
        client.get_fee_for_message.return_value = MagicMock(value=None)

        with pytest.raises(LedgerError, match="no fee"):
            await tool.get_recent_fee_reference()

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, mock_ledger, payer: Keypair) -> None:
        tool, client = mock_ledger
        client.get_balance.side_effect = ConnectionError("connection reset")
        with pytest.raises(ConnectionError):
            await tool.get_balance(payer.pubkey())


# ── submission ────────────────────────────────────────────────────────────────


class TestSubmitTransfer:
    @pytest.mark.asyncio
    async def test_signs_and_returns_signature(self, mock_ledger, payer: Keypair) -> None:
        tool, client = mock_ledger
        client.send_transaction.return_value = MagicMock(value="abc123sig")
        txn = build_transfer(payer.pubkey(), Keypair().pubkey(), 995_000, Hash.new_unique())

        sig = await tool.submit_transfer(txn, payer)

        assert sig == "abc123sig"
        sent = client.send_transaction.await_args.args[0]
        assert sent.signatures[0] != Signature.default()
        sent.verify()

    @pytest.mark.asyncio
    async def test_rejection_propagates(self, mock_ledger, payer: Keypair) -> None:
        tool, client = mock_ledger
        client.send_transaction.side_effect = RuntimeError("Blockhash not found")
        txn = build_transfer(payer.pubkey(), Keypair().pubkey(), 1, Hash.new_unique())

        with pytest.raises(RuntimeError, match="Blockhash not found"):
            await tool.submit_transfer(txn, payer)


# ── slot feed ─────────────────────────────────────────────────────────────────


class TestSlotSubscription:
    @pytest.mark.asyncio
    async def test_dispatches_each_slot_notification(self, mock_ledger) -> None:
        tool, _ = mock_ledger
        ws = FakeWebsocket([[_slot(100)], [MagicMock(), _slot(101)]])
        handler = AsyncMock()

        with patch("tools.ledger_tool.connect", side_effect=_sessions(ws)):
            with pytest.raises(OSError, match="refused"):
                await tool.subscribe_slot_changes(handler)
        await tool.wait_for_handlers()

        assert ws.subscribed
        slots = [call.args[0].slot for call in handler.await_args_list]
        assert slots == [100, 101]

    @pytest.mark.asyncio
    async def test_reconnects_after_failed_connect(self, mock_ledger) -> None:
        tool, _ = mock_ledger
        tool._max_reconnects = 2
        connect = MagicMock(
            side_effect=_sessions(OSError("connection refused"), FakeWebsocket([[_slot(40)]]))
        )

        handler = AsyncMock()
        with patch("tools.ledger_tool.connect", connect):
            with pytest.raises(OSError):
                await tool.subscribe_slot_changes(handler)
        await tool.wait_for_handlers()

        # 1 failure + 1 session, then 3 back-to-back failures exhaust the budget.
        assert connect.call_count == 5
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_healthy_sessions_do_not_use_up_reconnect_budget(self, mock_ledger) -> None:
        tool, _ = mock_ledger
        tool._max_reconnects = 2
        sessions = [FakeWebsocket([[_slot(100 + i)]]) for i in range(6)]
        connect = MagicMock(side_effect=_sessions(*sessions))

        handler = AsyncMock()
        with patch("tools.ledger_tool.connect", connect):
            with pytest.raises(OSError):
                await tool.subscribe_slot_changes(handler)
        await tool.wait_for_handlers()

        assert all(ws.subscribed for ws in sessions)
        assert handler.await_count == 6
        assert connect.call_count == 6 + 3

    @pytest.mark.asyncio
    async def test_dropped_session_is_resubscribed(self, mock_ledger) -> None:
        tool, _ = mock_ledger
        dropped = FakeWebsocket([[_slot(50)]], error=WebSocketException("no close frame received"))
        after = FakeWebsocket([[_slot(51)]])

        handler = AsyncMock()
        with patch("tools.ledger_tool.connect", side_effect=_sessions(dropped, after)):
            with pytest.raises(OSError):
                await tool.subscribe_slot_changes(handler)
        await tool.wait_for_handlers()

        slots = [call.args[0].slot for call in handler.await_args_list]
        assert slots == [50, 51]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_feed(self, mock_ledger) -> None:
        tool, _ = mock_ledger
        ws = FakeWebsocket([[_slot(33)], [_slot(34)]])
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])

        with patch("tools.ledger_tool.connect", side_effect=_sessions(ws)):
            with pytest.raises(OSError):
                await tool.subscribe_slot_changes(handler)
        await tool.wait_for_handlers()

        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_close_closes_client(self, mock_ledger) -> None:
        tool, client = mock_ledger
        await tool.close()
        client.close.assert_awaited_once()
