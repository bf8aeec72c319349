"""Unit tests for SettlementEngine: reward accrual and payout state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from task_market_service.clients.solana_transfer import (
    FAILED,
    LANDED,
    NOT_FOUND,
    PENDING,
    PreparedTransfer,
    SignatureState,
)
from task_market_service.core.exceptions import ServiceError
from task_market_service.services.market_store import MarketStore
from task_market_service.services.settlement import (
    TRANSFER_CONFIRMED_NOTE,
    TRANSFERS_DISABLED_NOTE,
    SettlementEngine,
    reward_for,
)
from tests.helpers import ONE_SOL, seed_task, seed_worker

SIGNATURE = "5igSignature"
RETRY_SIGNATURE = "5igRetrySignature"


def prepared(signature: str = SIGNATURE, last_valid_block_height: int = 1_000) -> PreparedTransfer:
    return PreparedTransfer(signature, b"signed-transfer", last_valid_block_height)


def make_transfer_client(*, enabled: bool = True) -> MagicMock:
    client = MagicMock()
    client.enabled = enabled
    client.prepare = AsyncMock(return_value=prepared())
    client.broadcast = AsyncMock(return_value=None)
    client.confirm = AsyncMock(return_value=SignatureState(LANDED))
    client.signature_state = AsyncMock(return_value=SignatureState(NOT_FOUND))
    client.block_height = AsyncMock(return_value=900)
    return client


@pytest.fixture
def store(tmp_path):
    market_store = MarketStore(db_path=str(tmp_path / "market.db"))
    yield market_store
    market_store.close()


def credit(engine: SettlementEngine, store: MarketStore, worker_id: str, amount: int) -> int:
    task = seed_task(store, amount)
    return engine.credit_submission(task["task_id"], worker_id, "f.zip")["reward"]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("amount", "pct", "expected"),
    [
        (ONE_SOL, 10, 100_000_000),
        (999, 10, 99),
        (9, 10, 0),
        (1000, 0, 0),
        (1000, 100, 1000),
    ],
)
def test_reward_is_floored_percentage(amount, pct, expected) -> None:
    assert reward_for(amount, pct) == expected


@pytest.mark.unit
def test_unknown_failure_policy_is_rejected(store) -> None:
    with pytest.raises(ValueError, match="Unknown transfer failure policy"):
        SettlementEngine(store, make_transfer_client(), 10, "lenient")


@pytest.mark.unit
def test_pending_is_sum_of_credits(store) -> None:
    engine = SettlementEngine(store, make_transfer_client(), 10, "strict")
    worker = seed_worker(store)

    rewards = [credit(engine, store, worker["id"], amount) for amount in (1000, 2500, 999)]

    assert rewards == [100, 250, 99]
    assert engine.get_balance(worker["id"]) == {"pending": 449, "locked": 0}


@pytest.mark.unit
def test_get_balance_for_unknown_worker(store) -> None:
    engine = SettlementEngine(store, make_transfer_client(), 10, "strict")

    with pytest.raises(ServiceError) as exc_info:
        engine.get_balance("w-missing")

    assert exc_info.value.error == "WORKER_NOT_FOUND"


@pytest.mark.unit
async def test_payout_without_payer_key_only_moves_balance(store) -> None:
    """One SOL task, 10% reward: pending 0.1 SOL moves to locked."""
    transfer = make_transfer_client(enabled=False)
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], ONE_SOL)

    result = await engine.payout(worker["id"])

    assert result["balance"] == {"pending": 0, "locked": 100_000_000}
    assert result["payoutAmount"] == 100_000_000
    assert result["transactionNote"] == TRANSFERS_DISABLED_NOTE
    assert result["payout"]["status"] == "CONFIRMED"
    transfer.prepare.assert_not_called()


@pytest.mark.unit
async def test_payout_transfers_then_locks(store) -> None:
    transfer = make_transfer_client()
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    result = await engine.payout(worker["id"])

    transfer.prepare.assert_awaited_once_with(worker["wallet_address"], 100)
    transfer.broadcast.assert_awaited_once_with(prepared())
    transfer.confirm.assert_awaited_once_with(SIGNATURE)
    assert result["transactionNote"] == TRANSFER_CONFIRMED_NOTE
    assert result["payout"]["txSignature"] == SIGNATURE
    assert result["payout"]["balanceApplied"] is True
    assert engine.get_balance(worker["id"]) == {"pending": 0, "locked": 100}


@pytest.mark.unit
async def test_signature_is_recorded_before_broadcast(store) -> None:
    transfer = make_transfer_client()
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)
    seen = []

    async def record_state(_prepared: PreparedTransfer) -> None:
        [payout] = store.list_payouts(worker["id"])
        seen.append((payout["status"], payout["tx_signature"], payout["last_valid_block_height"]))

    transfer.broadcast.side_effect = record_state

    await engine.payout(worker["id"])

    assert seen == [("TRANSFER_SENT", SIGNATURE, 1_000)]


@pytest.mark.unit
async def test_payout_with_zero_pending_is_rejected(store) -> None:
    transfer = make_transfer_client()
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "NO_PENDING_BALANCE"
    assert exc_info.value.status_code == 400
    transfer.prepare.assert_not_called()


@pytest.mark.unit
async def test_strict_failure_leaves_pending_untouched(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = ServiceError("TRANSFER_FAILED", "RPC unreachable", 502, {})
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "TRANSFER_FAILED"
    assert exc_info.value.status_code == 502
    assert exc_info.value.details["payout"]["status"] == "FAILED"
    assert exc_info.value.details["payout"]["error"] == "RPC unreachable"
    assert engine.get_balance(worker["id"]) == {"pending": 100, "locked": 0}
    transfer.broadcast.assert_not_called()


@pytest.mark.unit
async def test_rejected_broadcast_fails_with_its_signature(store) -> None:
    transfer = make_transfer_client()
    transfer.broadcast.side_effect = ServiceError("TRANSFER_FAILED", "Transfer rejected: no funds", 502, {})
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    payout = exc_info.value.details["payout"]
    assert payout["status"] == "FAILED"
    assert payout["txSignature"] == SIGNATURE
    assert payout["error"] == "Transfer rejected: no funds"
    transfer.confirm.assert_not_called()


@pytest.mark.unit
async def test_unconfirmed_transfer_stays_sent(store) -> None:
    """A confirmation timeout does not fail the payout: the transfer may still land."""
    transfer = make_transfer_client()
    transfer.confirm.return_value = SignatureState(PENDING)
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "TRANSFER_UNCONFIRMED"
    assert exc_info.value.status_code == 504
    payout = exc_info.value.details["payout"]
    assert payout["status"] == "TRANSFER_SENT"
    assert payout["txSignature"] == SIGNATURE
    assert payout["error"] is None
    assert engine.get_balance(worker["id"]) == {"pending": 100, "locked": 0}


@pytest.mark.unit
async def test_broadcast_with_unknown_outcome_stays_sent(store) -> None:
    transfer = make_transfer_client()
    transfer.broadcast.side_effect = ServiceError("TRANSFER_UNCONFIRMED", "connection reset", 504, {})
    engine = SettlementEngine(store, transfer, 10, "optimistic")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "TRANSFER_UNCONFIRMED"
    assert exc_info.value.details["payout"]["status"] == "TRANSFER_SENT"
    assert engine.get_balance(worker["id"]) == {"pending": 100, "locked": 0}
    transfer.confirm.assert_not_called()


@pytest.mark.unit
async def test_failure_to_record_the_transfer_never_broadcasts(store) -> None:
    transfer = make_transfer_client()
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)
    store.mark_payout_sent = MagicMock(side_effect=RuntimeError("disk I/O error"))

    with pytest.raises(RuntimeError, match="disk I/O error"):
        await engine.payout(worker["id"])

    transfer.broadcast.assert_not_called()
    [payout] = store.list_payouts(worker["id"])
    assert payout["status"] == "FAILED"
    assert payout["tx_signature"] is None


@pytest.mark.unit
async def test_transfer_failed_on_chain_is_a_failure(store) -> None:
    transfer = make_transfer_client()
    transfer.confirm.return_value = SignatureState(FAILED, "InsufficientFundsForRent")
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "TRANSFER_FAILED"
    assert exc_info.value.details["payout"]["error"] == "Transfer failed on chain: InsufficientFundsForRent"


@pytest.mark.unit
async def test_optimistic_failure_still_locks_and_records(store) -> None:
    """The optimistic policy moves the balance and keeps a FAILED audit row."""
    transfer = make_transfer_client()
    transfer.prepare.side_effect = ServiceError("TRANSFER_FAILED", "insufficient funds", 502, {})
    engine = SettlementEngine(store, transfer, 10, "optimistic")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    result = await engine.payout(worker["id"])

    assert result["balance"] == {"pending": 0, "locked": 100}
    assert result["payout"]["status"] == "FAILED"
    assert result["payout"]["balanceApplied"] is True
    assert result["transactionNote"] == "Transfer failed: insufficient funds"
    assert engine.list_payouts(worker["id"])[0]["error"] == "insufficient funds"


@pytest.mark.unit
async def test_concurrent_payouts_lock_the_amount_once(store) -> None:
    """Two overlapping payout requests move the pending balance exactly once."""
    transfer = make_transfer_client()

    async def slow_prepare(_destination: str, _lamports: int) -> PreparedTransfer:
        await asyncio.sleep(0.05)
        return prepared()

    transfer.prepare.side_effect = slow_prepare
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    results = await asyncio.gather(
        engine.payout(worker["id"]),
        engine.payout(worker["id"]),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, ServiceError)]
    successes = [r for r in results if isinstance(r, dict)]
    assert len(successes) == 1
    assert [e.error for e in errors] == ["PAYOUT_IN_PROGRESS"]
    assert engine.get_balance(worker["id"]) == {"pending": 0, "locked": 100}
    assert transfer.broadcast.await_count == 1


@pytest.mark.unit
async def test_retry_after_strict_failure_settles(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [
        ServiceError("TRANSFER_FAILED", "blockhash not found", 502, {}),
        prepared(RETRY_SIGNATURE),
    ]
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])
    payout_id = exc_info.value.details["payout"]["id"]

    result = await engine.retry_payout(worker["id"], payout_id)

    assert result["payout"]["id"] == payout_id
    assert result["payout"]["status"] == "CONFIRMED"
    assert result["payout"]["attempts"] == 2
    assert result["payout"]["txSignature"] == RETRY_SIGNATURE
    assert result["balance"] == {"pending": 0, "locked": 100}
    transfer.signature_state.assert_not_called()


@pytest.mark.unit
async def test_retry_after_timeout_waits_for_the_first_transfer(store) -> None:
    """Retrying while the first transfer may still land must not send a second one."""
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [prepared(SIGNATURE), prepared(RETRY_SIGNATURE)]
    transfer.confirm.return_value = SignatureState(PENDING)
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as unconfirmed:
        await engine.payout(worker["id"])
    payout_id = unconfirmed.value.details["payout"]["id"]

    with pytest.raises(ServiceError) as exc_info:
        await engine.retry_payout(worker["id"], payout_id)

    assert exc_info.value.error == "PAYOUT_IN_PROGRESS"
    assert exc_info.value.status_code == 409
    assert transfer.broadcast.await_count == 1
    transfer.signature_state.assert_awaited_once_with(SIGNATURE)
    assert store.get_payout(payout_id)["status"] == "TRANSFER_SENT"
    assert engine.get_balance(worker["id"]) == {"pending": 100, "locked": 0}


@pytest.mark.unit
async def test_retry_finalizes_a_transfer_that_landed(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [prepared(SIGNATURE), prepared(RETRY_SIGNATURE)]
    transfer.confirm.return_value = SignatureState(PENDING)
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as unconfirmed:
        await engine.payout(worker["id"])
    transfer.signature_state.return_value = SignatureState(LANDED)

    result = await engine.retry_payout(worker["id"], unconfirmed.value.details["payout"]["id"])

    assert result["payout"]["status"] == "CONFIRMED"
    assert result["payout"]["txSignature"] == SIGNATURE
    assert result["payout"]["attempts"] == 1
    assert result["balance"] == {"pending": 0, "locked": 100}
    assert transfer.broadcast.await_count == 1
    assert transfer.prepare.await_count == 1


@pytest.mark.unit
async def test_retry_resends_once_the_blockhash_expired(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [prepared(SIGNATURE), prepared(RETRY_SIGNATURE, 2_000)]
    transfer.confirm.side_effect = [SignatureState(PENDING), SignatureState(LANDED)]
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as unconfirmed:
        await engine.payout(worker["id"])
    transfer.block_height.return_value = 1_001

    result = await engine.retry_payout(worker["id"], unconfirmed.value.details["payout"]["id"])

    assert result["payout"]["status"] == "CONFIRMED"
    assert result["payout"]["txSignature"] == RETRY_SIGNATURE
    assert result["payout"]["attempts"] == 2
    assert result["balance"] == {"pending": 0, "locked": 100}
    assert transfer.broadcast.await_count == 2


@pytest.mark.unit
async def test_retry_resends_after_an_on_chain_failure(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [prepared(SIGNATURE), prepared(RETRY_SIGNATURE)]
    transfer.confirm.side_effect = [SignatureState(PENDING), SignatureState(LANDED)]
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as unconfirmed:
        await engine.payout(worker["id"])
    transfer.signature_state.return_value = SignatureState(FAILED, "BlockhashNotFound")

    result = await engine.retry_payout(worker["id"], unconfirmed.value.details["payout"]["id"])

    assert result["payout"]["txSignature"] == RETRY_SIGNATURE
    transfer.block_height.assert_not_called()


@pytest.mark.unit
async def test_retry_reconciles_a_failed_payout_that_landed(store) -> None:
    """A FAILED row whose transfer turns out to have landed is confirmed, not resent."""
    transfer = make_transfer_client()
    transfer.broadcast.side_effect = ServiceError("TRANSFER_FAILED", "Transfer rejected", 502, {})
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError) as failed:
        await engine.payout(worker["id"])
    transfer.signature_state.return_value = SignatureState(LANDED)

    result = await engine.retry_payout(worker["id"], failed.value.details["payout"]["id"])

    assert result["payout"]["status"] == "CONFIRMED"
    assert result["payout"]["txSignature"] == SIGNATURE
    assert result["balance"] == {"pending": 0, "locked": 100}
    assert transfer.prepare.await_count == 1


@pytest.mark.unit
async def test_new_payout_while_transfer_unconfirmed_is_rejected(store) -> None:
    transfer = make_transfer_client()
    transfer.confirm.return_value = SignatureState(PENDING)
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)

    with pytest.raises(ServiceError):
        await engine.payout(worker["id"])
    with pytest.raises(ServiceError) as exc_info:
        await engine.payout(worker["id"])

    assert exc_info.value.error == "PAYOUT_IN_PROGRESS"
    assert transfer.broadcast.await_count == 1


@pytest.mark.unit
async def test_retry_of_confirmed_payout_is_rejected(store) -> None:
    transfer = make_transfer_client()
    engine = SettlementEngine(store, transfer, 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)
    result = await engine.payout(worker["id"])

    with pytest.raises(ServiceError) as exc_info:
        await engine.retry_payout(worker["id"], result["payout"]["id"])

    assert exc_info.value.error == "PAYOUT_NOT_RETRYABLE"
    assert engine.get_balance(worker["id"]) == {"pending": 0, "locked": 100}
    transfer.signature_state.assert_not_called()


@pytest.mark.unit
async def test_retry_of_optimistic_failure_does_not_lock_twice(store) -> None:
    transfer = make_transfer_client()
    transfer.prepare.side_effect = [
        ServiceError("TRANSFER_FAILED", "rpc down", 502, {}),
        prepared(RETRY_SIGNATURE),
    ]
    engine = SettlementEngine(store, transfer, 10, "optimistic")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)
    failed = await engine.payout(worker["id"])

    result = await engine.retry_payout(worker["id"], failed["payout"]["id"])

    assert result["payout"]["status"] == "CONFIRMED"
    assert result["balance"] == {"pending": 0, "locked": 100}


@pytest.mark.unit
async def test_credit_after_payout_accrues_again(store) -> None:
    engine = SettlementEngine(store, make_transfer_client(), 10, "strict")
    worker = seed_worker(store)
    credit(engine, store, worker["id"], 1000)
    await engine.payout(worker["id"])

    credit(engine, store, worker["id"], 3000)
    result = await engine.payout(worker["id"])

    assert result["payoutAmount"] == 300
    assert result["balance"] == {"pending": 0, "locked": 400}
    assert [p["amount"] for p in engine.list_payouts(worker["id"])] == [300, 100]
