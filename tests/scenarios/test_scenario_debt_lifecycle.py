"""
Scenario: a rejected report drives the balance negative, the debt ages,
and a gateway payment clears it.

Covers:
- penalty -> negative balance -> debt opened for |balance| with grace period
- weekly late fee accrual mirrored in the ledger
- gateway success callback settles the debt and zeroes the balance
- replayed callback is a no-op
- waiver as the alternative ending
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from citizen_ledger.db.models.outstanding_debt import DebtStatus
from citizen_ledger.domain.services.debt_service import DebtManagementService
from citizen_ledger.domain.services.ledger_service import LedgerService
from citizen_ledger.domain.services.outbox_service import (
    DEBT_CREATED,
    DEBT_PAYMENT_RECEIVED,
    DEBT_WAIVED,
)
from citizen_ledger.domain.services.reconciliation_service import (
    PaymentReconciliationService,
    SettlementOutcome,
)

from tests.scenarios.conftest import (
    assert_balance,
    assert_debt_state,
    pay_through_gateway,
    queued_notifications,
)


@pytest.mark.integration
class TestDebtLifecycle:

    @pytest.mark.asyncio
    async def test_penalty_to_paid_debt(self, db_session, fake_gateway):
        user_id = "citizen-scenario-1"
        now = datetime.utcnow()
        ledger = LedgerService(db_session)
        debts = DebtManagementService(db_session)

        await ledger.record_report_outcome(user_id, "report-77", approved=False, amount="800")
        await assert_balance(db_session, user_id, "-800.00")

        debt = await debts.check_and_create_debt_for_negative_balance(user_id, now=now)
        assert debt is not None
        assert debt.original_amount == Decimal("800.00")
        assert debt.due_date == now + timedelta(days=7)

        # ten days after the due date is one whole week late
        updated = await debts.accrue_late_fees(now=debt.due_date + timedelta(days=10))
        assert updated == 1
        debt = await assert_debt_state(db_session, debt.id, DebtStatus.OUTSTANDING, current_amount="820.00")
        assert debt.weeks_past_due == 1
        assert debt.late_fees == Decimal("20.00")
        await assert_balance(db_session, user_id, "-820.00")

        session = await PaymentReconciliationService(db_session, fake_gateway).create_debt_payment_session(
            debt.id, user_id
        )
        assert session.amount == Decimal("820.00")

        result = await pay_through_gateway(db_session, fake_gateway, session.transaction_id, "820.00")

        assert result.outcome == SettlementOutcome.SETTLED
        debt = await assert_debt_state(db_session, debt.id, DebtStatus.PAID, paid_amount="820.00")
        assert debt.paid_at is not None
        await assert_balance(db_session, user_id, "0.00")
        assert sorted(await queued_notifications(db_session, user_id)) == sorted(
            [DEBT_CREATED, DEBT_PAYMENT_RECEIVED]
        )

        replay = await pay_through_gateway(db_session, fake_gateway, session.transaction_id, "820.00")
        assert replay.outcome == SettlementOutcome.ALREADY_PROCESSED
        await assert_debt_state(db_session, debt.id, DebtStatus.PAID, paid_amount="820.00")
        await assert_balance(db_session, user_id, "0.00")

    @pytest.mark.asyncio
    async def test_partial_payment_then_waiver(self, db_session, fake_gateway):
        user_id = "citizen-scenario-2"
        ledger = LedgerService(db_session)
        debts = DebtManagementService(db_session)

        await ledger.record_report_outcome(user_id, "report-78", approved=False, amount="300")
        debt = await debts.check_and_create_debt_for_negative_balance(user_id)

        session = await PaymentReconciliationService(db_session, fake_gateway).create_debt_payment_session(
            debt.id, user_id, amount="100"
        )
        await pay_through_gateway(db_session, fake_gateway, session.transaction_id, "100.00")

        await assert_debt_state(db_session, debt.id, DebtStatus.PARTIAL, paid_amount="100.00")
        await assert_balance(db_session, user_id, "-200.00")

        await debts.waive_debt(debt.id, admin_id="admin-1", notes="hardship review")

        await assert_debt_state(db_session, debt.id, DebtStatus.WAIVED)
        await assert_balance(db_session, user_id, "0.00")
        assert await debts.check_and_create_debt_for_negative_balance(user_id) is None
        assert DEBT_WAIVED in await queued_notifications(db_session, user_id)
