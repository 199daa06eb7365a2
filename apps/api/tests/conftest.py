from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db, get_session_maker
from main import app
from models.account import Account
from routers import rate_limit
from services.errors import PaymentProviderError, PaymentVerificationFailed
from services.payment_provider import ChargeResult, PaymentProvider, VerifiedPayment, get_payment_provider


class FakePaymentProvider(PaymentProvider):
    """In-memory provider: tests register payments and choose charge outcomes."""

    def __init__(self) -> None:
        self.payments: Dict[str, VerifiedPayment] = {}
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[str] = []
        self.deleted_keys: List[str] = []
        self.verify_calls = 0
        self.charge_outcome = "success"

    def add_payment(
        self,
        payment_id: str,
        amount: Any,
        *,
        status: str = "paid",
        paid_at: Optional[datetime] = None,
        custom_data: Optional[Dict[str, Any]] = None,
        merchant_uid: Optional[str] = None,
    ) -> VerifiedPayment:
        payment = VerifiedPayment(
            payment_id=payment_id,
            status=status,
            amount=Decimal(str(amount)),
            paid_at=paid_at,
            merchant_uid=merchant_uid or f"order_{payment_id}",
            pay_method="card",
            custom_data=custom_data or {},
        )
        self.payments[payment_id] = payment
        return payment

    async def verify_payment(self, payment_id: str) -> VerifiedPayment:
        self.verify_calls += 1
        if payment_id not in self.payments:
            raise PaymentVerificationFailed("Payment not found at provider.", payment_id=payment_id)
        return self.payments[payment_id]

    async def charge_by_billing_key(self, *, billing_key, amount, order_ref, name) -> ChargeResult:
        self.charges.append({"billing_key": billing_key, "amount": amount, "order_ref": order_ref, "name": name})
        if self.charge_outcome == "error":
            raise PaymentProviderError("provider timeout")
        if self.charge_outcome == "declined":
            return ChargeResult(success=False, payment_id=None, amount=amount, failure_reason="card declined")
        return ChargeResult(success=True, payment_id=f"imp_renew_{len(self.charges)}", amount=amount)

    async def refund(self, payment_id: str, *, reason: str) -> bool:
        self.refunds.append(payment_id)
        return True

    async def delete_billing_key(self, billing_key: str) -> bool:
        self.deleted_keys.append(billing_key)
        return True


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fake_provider():
    return FakePaymentProvider()


@pytest.fixture
def account_factory(session_maker):
    """Insert an account with explicit bucket values, bypassing provisioning."""

    async def _create(
        account_id: str,
        *,
        plan: str = "free",
        daily: Any = 0,
        monthly_bonus: Any = 0,
        promotional: Any = 0,
        purchased: Any = 0,
        **fields: Any,
    ) -> Account:
        values = {
            "id": account_id,
            "email": f"{account_id}@example.com",
            "plan": plan,
            "auto_renew": False,
            "daily_lunas": Decimal(str(daily)),
            "monthly_bonus_lunas": Decimal(str(monthly_bonus)),
            "promotional_lunas": Decimal(str(promotional)),
            "purchased_lunas": Decimal(str(purchased)),
            "balance_version": 0,
            "referral_code": f"REF-{account_id.upper()}",
            "device_limit": 2,
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        values.update(fields)
        async with session_maker() as session:
            account = Account(**values)
            session.add(account)
            await session.commit()
            return account

    return _create


@pytest_asyncio.fixture
async def api_client(session_maker, fake_provider):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: fake_provider
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_provider, None)
    app.dependency_overrides.pop(get_session_maker, None)
