"""
Tests for the payment gateway callback endpoints
"""
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from citizen_ledger.db.models.fine import FineStatus
from citizen_ledger.db.models.outstanding_debt import DebtStatus
from citizen_ledger.db.models.payment import Payment, PaymentStatus
from citizen_ledger.db.models.transaction_log import TransactionLog

BASE = "/api/payments/gateway"


def _redirect_query(response) -> dict[str, str]:
    assert response.status_code == 303
    location = urlparse(response.headers["location"])
    return {key: values[0] for key, values in parse_qs(location.query).items()}


@pytest.mark.integration
async def test_health_check(test_client: AsyncClient):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Correlation-ID"]


class TestSuccessEndpoint:
    @pytest.mark.integration
    async def test_form_post_settles_debt_and_redirects(
        self, test_client: AsyncClient, db_session: AsyncSession, fake_gateway, debt_factory
    ):
        debt = await debt_factory(original_amount="300.00")
        tran_id = f"DEBT_{debt.id}_1699999999000_1"
        fake_gateway.approve("VAL-1", tran_id, "300.00")

        response = await test_client.post(
            f"{BASE}/success",
            data={"tran_id": tran_id, "val_id": "VAL-1", "amount": "300.00", "status": "VALID"},
        )

        assert _redirect_query(response) == {"status": "success", "tran_id": tran_id}
        await db_session.refresh(debt)
        assert debt.status == DebtStatus.PAID

    @pytest.mark.integration
    async def test_get_with_query_string(
        self, test_client: AsyncClient, db_session: AsyncSession, fake_gateway, debt_factory
    ):
        debt = await debt_factory(original_amount="300.00")
        tran_id = f"DEBT_{debt.id}_1699999999000_2"
        fake_gateway.approve("VAL-2", tran_id, "100.00")

        response = await test_client.get(
            f"{BASE}/success", params={"tran_id": tran_id, "val_id": "VAL-2"}
        )

        assert _redirect_query(response)["status"] == "success"
        await db_session.refresh(debt)
        assert debt.paid_amount == Decimal("100.00")

    @pytest.mark.integration
    async def test_json_body_is_accepted(
        self, test_client: AsyncClient, fake_gateway, fine_factory, payment_factory
    ):
        fine = await fine_factory(amount="75.00")
        await payment_factory(fine, transaction_id="FINE_1_1")
        fake_gateway.approve("VAL-3", "FINE_1_1", "75.00")

        response = await test_client.post(
            f"{BASE}/success", json={"tran_id": "FINE_1_1", "val_id": "VAL-3"}
        )

        assert _redirect_query(response)["status"] == "success"

    @pytest.mark.integration
    async def test_replayed_callback_reports_already_paid(
        self, test_client: AsyncClient, fake_gateway, fine_factory, payment_factory
    ):
        fine = await fine_factory(amount="75.00")
        await payment_factory(fine, transaction_id="FINE_2_2")
        fake_gateway.approve("VAL-4", "FINE_2_2", "75.00")
        form = {"tran_id": "FINE_2_2", "val_id": "VAL-4"}

        await test_client.post(f"{BASE}/success", data=form)
        response = await test_client.post(f"{BASE}/success", data=form)

        assert _redirect_query(response)["status"] == "already_paid"

    @pytest.mark.integration
    async def test_payment_for_settled_debt_reports_already_paid(
        self, test_client: AsyncClient, db_session: AsyncSession, fake_gateway, debt_factory
    ):
        debt = await debt_factory(
            original_amount="300.00", paid_amount="300.00", status=DebtStatus.PAID
        )
        tran_id = f"DEBT_{debt.id}_1699999999000_5"
        fake_gateway.approve("VAL-5", tran_id, "300.00")

        response = await test_client.post(
            f"{BASE}/success", data={"tran_id": tran_id, "val_id": "VAL-5"}
        )

        assert _redirect_query(response)["status"] == "already_paid"
        logs = (await db_session.execute(select(TransactionLog))).scalars().all()
        assert [log.status for log in logs] == ["UNAPPLIED"]

    @pytest.mark.integration
    async def test_forged_callback_redirects_to_failed(
        self, test_client: AsyncClient, db_session: AsyncSession, debt_factory
    ):
        debt = await debt_factory()
        tran_id = f"DEBT_{debt.id}_1_1"

        response = await test_client.post(
            f"{BASE}/success", data={"tran_id": tran_id, "val_id": "FORGED", "status": "VALID"}
        )

        assert _redirect_query(response) == {"status": "failed", "tran_id": tran_id}
        await db_session.refresh(debt)
        assert debt.status == DebtStatus.OUTSTANDING

    @pytest.mark.integration
    async def test_missing_tran_id_redirects_to_failed(self, test_client: AsyncClient):
        response = await test_client.post(f"{BASE}/success", data={"val_id": "VAL-1"})

        assert _redirect_query(response) == {"status": "failed"}

    @pytest.mark.integration
    async def test_error_detail_is_not_leaked(self, test_client: AsyncClient, fake_gateway):
        fake_gateway.error = RuntimeError("db password is hunter2")

        response = await test_client.post(
            f"{BASE}/success", data={"tran_id": "FINE_3_3", "val_id": "VAL-1"}
        )

        assert _redirect_query(response)["status"] == "failed"
        assert "hunter2" not in response.headers["location"]


class TestFailAndCancelEndpoints:
    @pytest.mark.integration
    async def test_fail_marks_payment_failed(
        self, test_client: AsyncClient, db_session: AsyncSession, fine_factory, payment_factory
    ):
        fine = await fine_factory()
        payment = await payment_factory(fine, transaction_id="FINE_4_4")

        response = await test_client.post(f"{BASE}/fail", data={"tran_id": "FINE_4_4"})

        assert _redirect_query(response) == {"status": "failed", "tran_id": "FINE_4_4"}
        await db_session.refresh(payment)
        assert payment.payment_status == PaymentStatus.FAILED

    @pytest.mark.integration
    async def test_cancel_removes_pending_payment(
        self, test_client: AsyncClient, db_session: AsyncSession, fine_factory, payment_factory
    ):
        fine = await fine_factory()
        await payment_factory(fine, transaction_id="FINE_5_5")

        response = await test_client.get(f"{BASE}/cancel", params={"tran_id": "FINE_5_5"})

        assert _redirect_query(response)["status"] == "cancelled"
        remaining = (await db_session.execute(select(Payment))).scalars().all()
        assert remaining == []
        await db_session.refresh(fine)
        assert fine.status == FineStatus.UNPAID


class TestIpnEndpoint:
    @pytest.mark.integration
    async def test_valid_ipn(self, test_client: AsyncClient, fake_gateway, fine_factory, payment_factory):
        fine = await fine_factory(amount="10.00")
        await payment_factory(fine, transaction_id="FINE_6_6")
        fake_gateway.approve("VAL-6", "FINE_6_6", "10.00")

        response = await test_client.post(
            f"{BASE}/ipn", data={"tran_id": "FINE_6_6", "val_id": "VAL-6", "status": "VALID"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "settled", "tran_id": "FINE_6_6"}

    @pytest.mark.integration
    async def test_rejected_ipn(self, test_client: AsyncClient):
        response = await test_client.post(
            f"{BASE}/ipn", data={"tran_id": "FINE_7_7", "val_id": "FORGED", "status": "VALID"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "rejected", "tran_id": "FINE_7_7"}

    @pytest.mark.integration
    async def test_ipn_without_tran_id_is_ignored(self, test_client: AsyncClient):
        response = await test_client.post(f"{BASE}/ipn", data={"status": "VALID"})

        assert response.json() == {"status": "ignored"}
