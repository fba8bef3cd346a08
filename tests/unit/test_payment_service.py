import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from orderledger.core.exceptions import (
    NotFoundError,
    PaymentValidationError,
    StoreError,
    TerminalStateConflict,
    VersionConflictError,
)
from orderledger.models import ACCOUNTS, SETTLEMENTS, TRANSACTIONS, OrderStatus, OrderType
from orderledger.schemas.transaction import SettlementPayload
from orderledger.services.validators import (
    SettlementConfirmation,
    register_validator,
    unregister_validator,
)

from conftest import make_transaction, seed_account


@pytest.fixture
def deposit(database):
    seed_account(database, "ACC_MERCHANT")
    row = make_transaction(1, amount=100000)
    database[TRANSACTIONS].seed([row.to_document()])
    return row


def stored(database, row):
    return database[TRANSACTIONS].documents[row.id]


class TestApplyPayment:
    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, services, database, deposit):
        first = await services.payments.apply_payment(deposit.order_id, 60000)

        assert first.applied is True
        assert first.completed is False
        assert first.transaction.paid_amount == 60000
        assert first.transaction.unpaid_amount == 40000
        assert first.transaction.status == "processing"

        second = await services.payments.apply_payment(deposit.order_id, 40000)

        assert second.completed is True
        assert second.transaction.paid_amount == 100000
        assert second.transaction.unpaid_amount == 0
        assert second.transaction.status == "completed"
        assert second.transaction.is_sent_callback_notification is False
        assert second.transaction.last_payment_date is not None

    @pytest.mark.asyncio
    async def test_duplicate_report_after_completion_is_noop(self, services, database, deposit):
        await services.payments.apply_payment(deposit.order_id, 100000)
        before = dict(stored(database, deposit))

        result = await services.payments.apply_payment(deposit.order_id, 100000)

        assert result.already_complete is True
        assert result.applied is False
        assert stored(database, deposit) == before

    @pytest.mark.asyncio
    async def test_completion_credits_account_once(self, services, database, deposit):
        await services.payments.apply_payment(deposit.order_id, 100000)
        await services.payments.apply_payment(deposit.order_id, 100000)
        await services.payments.apply_payment(deposit.order_id, 5)

        account = database[ACCOUNTS].documents["ACC_MERCHANT"]
        assert account["currentBalance"] == 100000
        assert account["availableBalance"] == 100000

    @pytest.mark.asyncio
    async def test_overpayment_is_capped_and_recorded(self, services, database, deposit):
        await services.payments.apply_payment(deposit.order_id, 60000)
        result = await services.payments.apply_payment(deposit.order_id, 60000)

        assert result.transaction.paid_amount == 100000
        assert result.transaction.unpaid_amount == 0
        assert result.transaction.overpaid_amount == 20000
        assert result.transaction.status == "completed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [OrderStatus.FAILED, OrderStatus.CANCELED])
    async def test_terminal_orders_reject_payment(self, services, database, status):
        row = make_transaction(7, status=status)
        database[TRANSACTIONS].seed([row.to_document()])

        with pytest.raises(TerminalStateConflict) as exc_info:
            await services.payments.apply_payment(row.order_id, 100000)

        assert exc_info.value.category == "business"
        assert stored(database, row)["paidAmount"] == 0
        assert stored(database, row)["odrStatus"] == status.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, services, deposit, amount):
        with pytest.raises(PaymentValidationError) as exc_info:
            await services.payments.apply_payment(deposit.order_id, amount)

        assert exc_info.value.field == "amount"

    @pytest.mark.asyncio
    async def test_unknown_order_not_found(self, services):
        with pytest.raises(NotFoundError):
            await services.payments.apply_payment("DP_MISSING", 100)

    @pytest.mark.asyncio
    async def test_settlement_before_order_is_visible(self, services, database, deposit):
        database[TRANSACTIONS].hide(deposit.id, lookups=2)

        result = await services.payments.apply_payment(deposit.order_id, 100000)

        assert result.completed is True

    @pytest.mark.asyncio
    async def test_concurrent_reports_do_not_lose_updates(self, services, database, deposit):
        results = await asyncio.gather(
            services.payments.apply_payment(deposit.order_id, 30000),
            services.payments.apply_payment(deposit.order_id, 30000),
            services.payments.apply_payment(deposit.order_id, 30000),
        )

        assert all(result.applied for result in results)
        assert stored(database, deposit)["paidAmount"] == 90000
        assert stored(database, deposit)["unPaidAmount"] == 10000

    @pytest.mark.asyncio
    async def test_version_conflict_rereads_and_redecides(self, services, database, deposit):
        ledger = services.ledger
        real_save = ledger.save_changes
        calls = []

        async def racing_save(current, changes, tag):
            calls.append(current.paid_amount)
            if len(calls) == 1:
                # Another writer completes the order first
                stored(database, deposit).update(
                    {"paidAmount": 100000, "unPaidAmount": 0, "odrStatus": "completed", "version": 1}
                )
                raise VersionConflictError("transactions", current.id, current.version)
            return await real_save(current, changes, tag)

        with patch.object(ledger, "save_changes", side_effect=racing_save):
            result = await services.payments.apply_payment(deposit.order_id, 100000)

        assert calls == [0]
        assert result.already_complete is True
        assert result.applied is False

    @pytest.mark.asyncio
    async def test_side_effect_failure_does_not_roll_back(self, services, database, deposit):
        services.accounts.credit_balance = AsyncMock(side_effect=RuntimeError("account service down"))

        result = await services.payments.apply_payment(deposit.order_id, 100000)

        assert result.completed is True
        assert stored(database, deposit)["odrStatus"] == "completed"
        services.accounts.credit_balance.assert_awaited_once_with("ACC_MERCHANT", 100000)


class TestProcessSettlement:
    @pytest.mark.asyncio
    async def test_signed_portal_applies_payment(self, services, deposit):
        payload = SettlementPayload(order_id=deposit.order_id, amount=100000, direction="credit", reference="PAY-1")

        result = await services.payments.process_settlement("signed", payload)

        assert result.completed is True
        assert result.portal == "signed"
        assert result.reference == "PAY-1"

    @pytest.mark.asyncio
    async def test_repeated_partial_report_is_applied_once(self, services, database, deposit):
        payload = SettlementPayload(order_id=deposit.order_id, amount=60000, direction="credit", reference="PAY-1")

        first = await services.payments.process_settlement("signed", payload)
        second = await services.payments.process_settlement("signed", payload)

        assert first.applied is True
        assert second.applied is False
        assert second.duplicate is True
        assert second.completed is False
        assert stored(database, deposit)["paidAmount"] == 60000
        assert stored(database, deposit)["overpaidAmount"] == 0
        assert stored(database, deposit)["odrStatus"] == "processing"
        assert database[ACCOUNTS].documents["ACC_MERCHANT"]["currentBalance"] == 0
        assert list(database[SETTLEMENTS].documents) == ["signed:PAY-1"]

    @pytest.mark.asyncio
    async def test_distinct_references_both_apply(self, services, database, deposit):
        for reference in ("PAY-1", "PAY-2"):
            payload = SettlementPayload(
                order_id=deposit.order_id, amount=50000, direction="credit", reference=reference
            )
            await services.payments.process_settlement("signed", payload)

        assert stored(database, deposit)["odrStatus"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_application_releases_claim(self, services, database, deposit):
        payload = SettlementPayload(order_id=deposit.order_id, amount=60000, direction="credit", reference="PAY-1")
        outage = AsyncMock(side_effect=StoreError("Store operation failed after retries", operation="apply_payment"))

        with patch.object(services.ledger, "save_changes", outage):
            with pytest.raises(StoreError):
                await services.payments.process_settlement("signed", payload)

        assert database[SETTLEMENTS].documents == {}

        retried = await services.payments.process_settlement("signed", payload)

        assert retried.applied is True
        assert stored(database, deposit)["paidAmount"] == 60000

    @pytest.mark.asyncio
    async def test_direction_must_match_order_type(self, services, deposit):
        payload = SettlementPayload(order_id=deposit.order_id, amount=100000, direction="debit", reference="PAY-2")

        with pytest.raises(PaymentValidationError) as exc_info:
            await services.payments.process_settlement("signed", payload)

        assert exc_info.value.field == "direction"

    @pytest.mark.asyncio
    async def test_unknown_portal(self, services, deposit):
        payload = SettlementPayload(order_id=deposit.order_id, amount=1, direction="credit", reference="X")

        with pytest.raises(NotFoundError) as exc_info:
            await services.payments.process_settlement("nonexistent", payload)

        assert exc_info.value.resource == "Settlement portal"

    @pytest.mark.asyncio
    async def test_custom_validator_controls_matched_amount(self, services, database):
        withdraw = make_transaction(2, order_type=OrderType.WITHDRAW, status=OrderStatus.PENDING, amount=5000)
        database[TRANSACTIONS].seed([withdraw.to_document()])

        @register_validator("halving_portal")
        async def halving(payload):
            return SettlementConfirmation(
                portal="halving_portal",
                order_id=payload.order_id,
                amount=payload.amount // 2,
                direction=payload.direction,
                reference=payload.reference,
            )

        try:
            payload = SettlementPayload(order_id=withdraw.order_id, amount=5000, direction="debit", reference="R")
            result = await services.payments.process_settlement("halving_portal", payload)
        finally:
            unregister_validator("halving_portal")

        assert result.transaction.paid_amount == 2500
        assert result.transaction.status == "pending"
