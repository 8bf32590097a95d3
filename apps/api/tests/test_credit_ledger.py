import asyncio
from decimal import Decimal

import pytest

from models.credit_ledger import STATUS_COMPLETED, STATUS_REFUNDED, STATUS_RESERVED
from services.credit_errors import (
    AccountNotFound,
    InsufficientCredits,
    InvalidAmount,
    InvalidReservationState,
)
from services.pricing import ServiceType


async def _entries_by_id(ledger, user_id):
    entries, _ = await ledger.get_history(user_id, limit=200)
    return {entry.id: entry for entry in entries}


async def _assert_ledger_consistent(ledger, user_id):
    audit = await ledger.audit_account(user_id)
    assert audit["consistent"], audit
    assert audit["replayed"] == await ledger.get_balance(user_id)


@pytest.mark.asyncio
async def test_new_account_starts_at_zero(ledger):
    account = await ledger.ensure_account("fresh-user", "fresh@example.com")
    assert account.email == "fresh@example.com"
    assert await ledger.get_balance("fresh-user") == Decimal("0.00")

    again = await ledger.ensure_account("fresh-user")
    assert again.email == "fresh@example.com"


@pytest.mark.asyncio
async def test_unknown_account_raises(ledger):
    with pytest.raises(AccountNotFound):
        await ledger.get_balance("ghost")
    with pytest.raises(AccountNotFound):
        await ledger.reserve("ghost", 1, ServiceType.MARKETPLACE, "job-ghost")


@pytest.mark.asyncio
async def test_reserve_then_partial_confirm_refunds_difference(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 4, "marketplace", "job1")
    assert await ledger.get_balance(funded_account) == Decimal("6.00")

    entries = await _entries_by_id(ledger, funded_account)
    assert entries[entry_id].status == STATUS_RESERVED
    assert entries[entry_id].amount == Decimal("-4.00")
    assert entries[entry_id].reference_id == "job1"

    await ledger.confirm(entry_id, actual_amount=3)
    assert await ledger.get_balance(funded_account) == Decimal("7.00")

    entries = await _entries_by_id(ledger, funded_account)
    original = entries[entry_id]
    assert original.status == STATUS_COMPLETED
    assert original.amount == Decimal("-3.00")
    assert original.balance_after == Decimal("6.00")

    refunds = [entry for entry in entries.values() if entry.transaction_type == "refund"]
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("1.00")
    assert refunds[0].status == STATUS_COMPLETED
    assert refunds[0].balance_after == Decimal("7.00")
    assert refunds[0].metadata_json == {"original_transaction_id": entry_id}
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_reserve_then_cancel_restores_balance(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 4, ServiceType.FACEBOOK_PAGES, "job2")
    assert await ledger.get_balance(funded_account) == Decimal("6.00")

    await ledger.cancel(entry_id)
    assert await ledger.get_balance(funded_account) == Decimal("10.00")

    entries = await _entries_by_id(ledger, funded_account)
    assert entries[entry_id].status == STATUS_REFUNDED
    assert entries[entry_id].amount == Decimal("-4.00")
    refunds = [entry for entry in entries.values() if entry.transaction_type == "refund"]
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("4.00")
    assert refunds[0].status == STATUS_COMPLETED
    assert refunds[0].reference_id == f"cancel_{entry_id}"
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_confirm_without_amount_keeps_full_charge(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, "2.50", "ai_analysis", "job-ai")
    await ledger.confirm(entry_id)

    assert await ledger.get_balance(funded_account) == Decimal("7.50")
    entries = await _entries_by_id(ledger, funded_account)
    assert entries[entry_id].status == STATUS_COMPLETED
    assert entries[entry_id].amount == Decimal("-2.50")
    assert not [entry for entry in entries.values() if entry.transaction_type == "refund"]


@pytest.mark.asyncio
async def test_confirm_with_equal_amount_writes_no_refund(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 3, "marketplace", "job-equal")
    await ledger.confirm(entry_id, actual_amount=Decimal("3.00"))

    assert await ledger.get_balance(funded_account) == Decimal("7.00")
    _, total = await ledger.get_history(funded_account)
    assert total == 2


@pytest.mark.asyncio
async def test_confirm_zero_cost_refunds_everything(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 3, "marketplace", "job-empty")
    await ledger.confirm(entry_id, actual_amount=0)

    assert await ledger.get_balance(funded_account) == Decimal("10.00")
    entries = await _entries_by_id(ledger, funded_account)
    assert entries[entry_id].status == STATUS_COMPLETED
    assert entries[entry_id].amount == Decimal("0.00")
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_confirm_above_reserved_amount_is_rejected(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 4, "marketplace", "job-over")

    with pytest.raises(InvalidReservationState):
        await ledger.confirm(entry_id, actual_amount=5)

    assert await ledger.get_balance(funded_account) == Decimal("6.00")
    entries = await _entries_by_id(ledger, funded_account)
    assert entries[entry_id].status == STATUS_RESERVED

    await ledger.cancel(entry_id)
    assert await ledger.get_balance(funded_account) == Decimal("10.00")


@pytest.mark.asyncio
async def test_settlement_happens_only_once(ledger, funded_account):
    confirmed_id = await ledger.reserve(funded_account, 2, "marketplace", "job-a")
    cancelled_id = await ledger.reserve(funded_account, 2, "marketplace", "job-b")
    await ledger.confirm(confirmed_id, actual_amount=1)
    await ledger.cancel(cancelled_id)
    balance = await ledger.get_balance(funded_account)

    for settle in (
        lambda: ledger.confirm(confirmed_id),
        lambda: ledger.cancel(confirmed_id),
        lambda: ledger.confirm(cancelled_id, actual_amount=1),
        lambda: ledger.cancel(cancelled_id),
        lambda: ledger.cancel(999999),
    ):
        with pytest.raises(InvalidReservationState):
            await settle()

    assert await ledger.get_balance(funded_account) == balance
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_reserve_insufficient_credits_writes_nothing(ledger, funded_account):
    with pytest.raises(InsufficientCredits) as exc_info:
        await ledger.reserve(funded_account, 12, "marketplace", "job-big")

    assert exc_info.value.required == Decimal("12.00")
    assert exc_info.value.available == Decimal("10.00")
    assert exc_info.value.details["shortfall"] == 2.0
    assert await ledger.get_balance(funded_account) == Decimal("10.00")
    _, total = await ledger.get_history(funded_account)
    assert total == 1


@pytest.mark.asyncio
async def test_reserve_rejects_non_positive_amount(ledger, funded_account):
    for amount in (0, -1):
        with pytest.raises(InvalidAmount):
            await ledger.reserve(funded_account, amount, "marketplace", "job-bad")


@pytest.mark.asyncio
async def test_reserve_rejects_unknown_service_tag(ledger, funded_account):
    with pytest.raises(ValueError):
        await ledger.reserve(funded_account, 1, "teleportation", "job-x")
    assert await ledger.get_balance(funded_account) == Decimal("10.00")


@pytest.mark.asyncio
async def test_concurrent_reservations_cannot_overdraw(ledger, funded_account):
    results = await asyncio.gather(
        ledger.reserve(funded_account, 7, "marketplace", "job-left"),
        ledger.reserve(funded_account, 7, "marketplace", "job-right"),
        return_exceptions=True,
    )

    succeeded = [result for result in results if isinstance(result, int)]
    failed = [result for result in results if isinstance(result, InsufficientCredits)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert await ledger.get_balance(funded_account) == Decimal("3.00")
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_many_concurrent_operations_keep_balance_non_negative(ledger, funded_account):
    async def reserve_and_settle(index):
        try:
            entry_id = await ledger.reserve(funded_account, 3, "marketplace", f"job-{index}")
        except InsufficientCredits:
            return None
        if index % 2:
            await ledger.cancel(entry_id)
        else:
            await ledger.confirm(entry_id, actual_amount=1)
        return entry_id

    await asyncio.gather(*(reserve_and_settle(index) for index in range(8)))

    balance = await ledger.get_balance(funded_account)
    assert balance >= 0
    entries, _ = await ledger.get_history(funded_account, limit=200)
    assert all(entry.balance_after >= 0 for entry in entries)
    assert not [entry for entry in entries if entry.status == STATUS_RESERVED]
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_charge_and_admin_adjustments(ledger, funded_account):
    await ledger.charge(funded_account, "1.25", ServiceType.MENTION_ANALYSIS, reference_id="mentions-1")
    assert await ledger.get_balance(funded_account) == Decimal("8.75")

    await ledger.add_credits(funded_account, "-0.75", transaction_type="admin_adjustment")
    assert await ledger.get_balance(funded_account) == Decimal("8.00")

    with pytest.raises(InsufficientCredits):
        await ledger.add_credits(funded_account, -9, transaction_type="admin_adjustment")
    with pytest.raises(InvalidAmount):
        await ledger.add_credits(funded_account, -1, transaction_type="purchase")
    with pytest.raises(ValueError):
        await ledger.add_credits(funded_account, 1, transaction_type="trial_grant")

    assert await ledger.has_enough_credits(funded_account, 8)
    assert not await ledger.has_enough_credits(funded_account, "8.01")
    await _assert_ledger_consistent(ledger, funded_account)


@pytest.mark.asyncio
async def test_history_is_paginated_newest_first(ledger, funded_account):
    for index in range(5):
        await ledger.charge(funded_account, 1, "marketplace", reference_id=f"page-{index}")

    first_page, total = await ledger.get_history(funded_account, limit=2, offset=0)
    second_page, _ = await ledger.get_history(funded_account, limit=2, offset=2)

    assert total == 6
    assert [entry.reference_id for entry in first_page] == ["page-4", "page-3"]
    assert [entry.reference_id for entry in second_page] == ["page-2", "page-1"]


@pytest.mark.asyncio
async def test_find_reservation_by_reference(ledger, funded_account):
    entry_id = await ledger.reserve(funded_account, 2, "comments", "apify-run-42")

    found = await ledger.find_reservation("apify-run-42")
    assert found is not None
    assert found.id == entry_id
    assert found.status == STATUS_RESERVED
    assert await ledger.find_reservation("missing-run") is None
