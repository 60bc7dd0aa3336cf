"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A fake payment gateway
- Test data factories
"""
# Settings are read at import time, so the environment is prepared first
import os
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("GATEWAY_STORE_ID", "test-store")
os.environ.setdefault("GATEWAY_STORE_PASSWORD", "test-store-password")
os.environ.pop("NOTIFIER_URL", None)

from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from citizen_ledger.core.circuit_breaker import CircuitBreaker
from citizen_ledger.db.database import Base, get_db
from citizen_ledger.db.models.citizen_gem import CitizenGem
from citizen_ledger.db.models.fine import Fine, FineStatus
from citizen_ledger.db.models.outstanding_debt import DebtStatus, OutstandingDebt
from citizen_ledger.db.models.payment import Payment, PaymentStatus
from citizen_ledger.db.models.reward_transaction import (
    RewardTransaction,
    TransactionStatus,
    TransactionType,
)
from citizen_ledger.domain.services.gateway import (
    GatewaySession,
    GatewayValidation,
    PaymentGatewayClient,
    PaymentSessionRequest,
    get_payment_gateway,
    reset_payment_gateway,
)
from citizen_ledger.domain.services.notifier import reset_notifier
from citizen_ledger.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def _enable_sqlite_savepoints(engine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself.

    The sqlite driver otherwise opens transactions lazily, which breaks
    SAVEPOINT/ROLLBACK TO used by begin_nested().
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    _enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_collaborators():
    """Breakers and client singletons must not leak between tests"""
    CircuitBreaker.reset_all()
    reset_notifier()
    reset_payment_gateway()
    yield
    CircuitBreaker.reset_all()
    reset_notifier()
    reset_payment_gateway()


# ============================================================================
# Fake payment gateway
# ============================================================================

class FakeGateway(PaymentGatewayClient):
    """
    In-memory gateway.

    ``validations`` maps val_id -> GatewayValidation; an unknown val_id is
    reported as invalid. ``error`` is raised from every call when set.
    """

    def __init__(self) -> None:
        self.sessions: list[PaymentSessionRequest] = []
        self.verified: list[str] = []
        self.validations: dict[str, GatewayValidation] = {}
        self.error: Optional[Exception] = None

    @property
    def provider_name(self) -> str:
        return "FAKEPAY"

    def approve(self, val_id: str, tran_id: str, amount, bank_tran_id: str = "BANK-1") -> None:
        self.validations[val_id] = GatewayValidation(
            valid=True,
            tran_id=tran_id,
            amount=Decimal(str(amount)),
            bank_tran_id=bank_tran_id,
            raw={"status": "VALID", "tran_id": tran_id, "amount": str(amount)},
        )

    async def init_session(self, request: PaymentSessionRequest) -> GatewaySession:
        if self.error:
            raise self.error
        self.sessions.append(request)
        return GatewaySession(
            url=f"https://gateway.test/pay/{request.transaction_id}",
            session_key=f"SESSION-{len(self.sessions)}",
        )

    async def verify(self, val_id: str) -> GatewayValidation:
        if self.error:
            raise self.error
        self.verified.append(val_id)
        return self.validations.get(
            val_id, GatewayValidation(valid=False, raw={"status": "INVALID_TRANSACTION"})
        )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_gateway: FakeGateway):
    """Create test client with database and gateway overrides"""
    from httpx import ASGITransport, AsyncClient

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def transaction_factory(db_session: AsyncSession):
    """Ledger rows written directly, bypassing the service"""
    async def _create_transaction(
        user_id: str = "citizen-1",
        amount="100.00",
        type: TransactionType = TransactionType.REWARD,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        source: str = "MANUAL",
        related_entity_id: str | None = None,
        description: str | None = None,
        created_at: datetime | None = None,
    ) -> RewardTransaction:
        transaction = RewardTransaction(
            user_id=user_id,
            amount=Decimal(str(amount)),
            type=type,
            status=status,
            source=source,
            related_entity_id=related_entity_id,
            description=description,
            created_at=created_at or datetime.utcnow(),
        )
        db_session.add(transaction)
        await db_session.commit()
        await db_session.refresh(transaction)
        return transaction

    return _create_transaction


@pytest.fixture
def debt_factory(db_session: AsyncSession):
    """Debts inserted as-is; amounts and status are not validated"""
    async def _create_debt(
        user_id: str = "citizen-1",
        original_amount="500.00",
        current_amount=None,
        paid_amount="0.00",
        late_fees="0.00",
        status: DebtStatus = DebtStatus.OUTSTANDING,
        due_date: datetime | None = None,
        weeks_past_due: int = 0,
        created_at: datetime | None = None,
    ) -> OutstandingDebt:
        original = Decimal(str(original_amount))
        debt = OutstandingDebt(
            user_id=user_id,
            original_amount=original,
            current_amount=Decimal(str(current_amount)) if current_amount is not None else original,
            paid_amount=Decimal(str(paid_amount)),
            late_fees=Decimal(str(late_fees)),
            weeks_past_due=weeks_past_due,
            due_date=due_date or datetime.utcnow() + timedelta(days=7),
            status=status,
            created_at=created_at or datetime.utcnow(),
        )
        db_session.add(debt)
        await db_session.commit()
        await db_session.refresh(debt)
        return debt

    return _create_debt


@pytest.fixture
def fine_factory(db_session: AsyncSession):
    async def _create_fine(
        user_id: str = "citizen-1",
        amount="250.00",
        status: FineStatus = FineStatus.UNPAID,
        issued_at: datetime | None = None,
    ) -> Fine:
        fine = Fine(
            user_id=user_id,
            amount=Decimal(str(amount)),
            status=status,
            issued_at=issued_at or datetime.utcnow(),
        )
        db_session.add(fine)
        await db_session.commit()
        await db_session.refresh(fine)
        return fine

    return _create_fine


@pytest.fixture
def payment_factory(db_session: AsyncSession):
    async def _create_payment(
        fine: Fine,
        transaction_id: str = "FINE_1699999999000_1",
        amount=None,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
    ) -> Payment:
        payment = Payment(
            user_id=fine.user_id,
            fine_id=fine.id,
            amount=Decimal(str(amount)) if amount is not None else fine.amount,
            payment_status=payment_status,
            transaction_id=transaction_id,
        )
        db_session.add(payment)
        await db_session.commit()
        await db_session.refresh(payment)
        return payment

    return _create_payment


@pytest.fixture
def gem_account_factory(db_session: AsyncSession):
    async def _create_account(
        citizen_id: str = "citizen-1",
        amount: int = 10,
        is_restricted: bool | None = None,
    ) -> CitizenGem:
        account = CitizenGem(
            citizen_id=citizen_id,
            amount=amount,
            is_restricted=amount <= 0 if is_restricted is None else is_restricted,
        )
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _create_account
