import pytest

from orderledger.core.exceptions import InvalidTransition, NoOpTransition, PaymentValidationError
from orderledger.models import ACCOUNTS, EXPIRY_JOBS, TRANSACTIONS, OrderStatus, OrderType
from orderledger.schemas.transaction import CreateOrderRequest
from orderledger.services.status_service import ALLOWED_TRANSITIONS

from conftest import make_transaction, seed_account


def seed(database, row):
    database[TRANSACTIONS].seed([row.to_document()])
    return row


class TestTransitionRules:
    @pytest.mark.asyncio
    async def test_same_status_is_noop_with_current_record(self, services, database):
        row = seed(database, make_transaction(1))

        with pytest.raises(NoOpTransition) as exc_info:
            await services.transitions.transition(row.id, OrderStatus.PROCESSING)

        assert exc_info.value.record.order_id == row.order_id
        assert exc_info.value.to_safe_dict()["success"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELED])
    @pytest.mark.parametrize("target", list(OrderStatus))
    async def test_terminal_states_are_final(self, services, database, terminal, target):
        row = seed(database, make_transaction(1, status=terminal))
        before = dict(database[TRANSACTIONS].documents[row.id])

        with pytest.raises((InvalidTransition, NoOpTransition)):
            await services.transitions.transition(row.id, target)

        assert database[TRANSACTIONS].documents[row.id] == before

    def test_transition_table(self):
        assert set(ALLOWED_TRANSITIONS["processing"]) == {"pending", "completed", "failed", "canceled"}
        assert set(ALLOWED_TRANSITIONS["pending"]) == {"processing", "completed", "failed", "canceled"}
        assert ALLOWED_TRANSITIONS["completed"] == ()

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, services, database):
        row = seed(database, make_transaction(1))

        with pytest.raises(PaymentValidationError):
            await services.transitions.transition(row.id, "refunded")


class TestTransitionEffects:
    @pytest.mark.asyncio
    async def test_manual_completion_settles_in_full(self, services, database):
        seed_account(database, "ACC_MERCHANT", current=10, available=10)
        row = seed(database, make_transaction(1, paid_amount=30000))

        updated = await services.transitions.transition(row.id, OrderStatus.COMPLETED)

        assert updated.paid_amount == updated.amount
        assert updated.unpaid_amount == 0
        assert updated.is_sent_callback_notification is False
        account = database[ACCOUNTS].documents["ACC_MERCHANT"]
        assert account["currentBalance"] == 100010
        assert account["availableBalance"] == 100010

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.FAILED])
    async def test_pending_withdraw_releases_reservation(self, services, database, target):
        seed_account(database, "ACC_SOURCE", current=500000, available=400000)
        row = seed(database, make_transaction(1, order_type=OrderType.WITHDRAW, status=OrderStatus.PENDING))

        updated = await services.transitions.transition(row.id, target)

        assert updated.status == target.value
        assert updated.is_sent_callback_notification is False
        account = database[ACCOUNTS].documents["ACC_SOURCE"]
        assert (account["currentBalance"], account["availableBalance"]) == (500000, 500000)

    @pytest.mark.asyncio
    async def test_processing_withdraw_keeps_reservation(self, services, database):
        seed_account(database, "ACC_SOURCE", current=500000, available=400000)
        row = seed(database, make_transaction(1, order_type=OrderType.WITHDRAW, status=OrderStatus.PROCESSING))

        await services.transitions.transition(row.id, OrderStatus.COMPLETED)

        assert database[ACCOUNTS].documents["ACC_SOURCE"]["availableBalance"] == 400000

    @pytest.mark.asyncio
    async def test_withdraw_completion_credits_receiving_account(self, services, database):
        seed_account(database, "ACC_SOURCE", current=500000, available=400000)
        seed_account(database, "ACC_PAYOUT", current=0, available=0)
        row = seed(database, make_transaction(
            1, order_type=OrderType.WITHDRAW, status=OrderStatus.PENDING, positive_account="ACC_PAYOUT"
        ))

        await services.transitions.transition(row.id, OrderStatus.COMPLETED)

        payout = database[ACCOUNTS].documents["ACC_PAYOUT"]
        assert (payout["currentBalance"], payout["availableBalance"]) == (100000, 100000)
        assert database[ACCOUNTS].documents["ACC_SOURCE"]["availableBalance"] == 500000

    @pytest.mark.asyncio
    async def test_deposit_cancel_touches_no_balance(self, services, database):
        seed_account(database, "ACC_MERCHANT", current=7, available=7)
        row = seed(database, make_transaction(1))

        await services.transitions.transition(row.id, OrderStatus.CANCELED)

        account = database[ACCOUNTS].documents["ACC_MERCHANT"]
        assert (account["currentBalance"], account["availableBalance"]) == (7, 7)

    @pytest.mark.asyncio
    async def test_deposit_reentering_processing_is_rescheduled(self, services, database):
        row = seed(database, make_transaction(1, status=OrderStatus.PENDING))

        await services.transitions.transition(row.id, OrderStatus.PROCESSING)

        job = database[EXPIRY_JOBS].documents[row.id]
        assert job["odrId"] == row.order_id
        assert (job["scheduledFor"] - job["createdAt"]).total_seconds() == 900

    @pytest.mark.asyncio
    async def test_missing_account_is_logged_not_raised(self, services, database):
        row = seed(database, make_transaction(1, positive_account="ACC_GONE"))

        updated = await services.transitions.transition(row.id, OrderStatus.COMPLETED)

        assert updated.status == "completed"
        assert "ACC_GONE" not in database[ACCOUNTS].documents


class TestOrderCreation:
    @pytest.mark.asyncio
    async def test_deposit_created_processing_with_expiry_job(self, services, database):
        request = CreateOrderRequest(odrType="deposit", amount=250000, positiveAccount="ACC_MERCHANT")

        row = await services.orders.create_order(request)

        assert row.status == "processing"
        assert row.order_id.startswith("DP")
        assert row.unpaid_amount == 250000
        assert row.id in database[EXPIRY_JOBS].documents

    @pytest.mark.asyncio
    async def test_withdraw_created_pending_and_reserved(self, services, database):
        seed_account(database, "ACC_SOURCE", current=300000, available=300000)
        request = CreateOrderRequest(odrId="WD-1", odrType="withdraw", amount=120000, negativeAccount="ACC_SOURCE")

        row = await services.orders.create_order(request)

        assert row.status == "pending"
        assert row.order_id == "WD-1"
        assert database[ACCOUNTS].documents["ACC_SOURCE"]["availableBalance"] == 180000
        assert database[ACCOUNTS].documents["ACC_SOURCE"]["currentBalance"] == 300000
        assert row.id not in database[EXPIRY_JOBS].documents
