# backend/modules/payments/tests/conftest.py

import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.database import Base
from core.memory_cache import TTLCache
from modules.payments.config.payment_config import SplitPaymentConfig
from modules.payments.gateways.base import (
    PaymentGatewayInterface,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    GatewayPaymentStatus,
    GatewayRefundStatus,
)
from modules.payments.models.split_payment_models import SplitType
from modules.payments.repositories.split_payment_repository import SplitPaymentRepository
from modules.payments.schemas.split_payment_schemas import SplitPaymentCreate
from modules.payments.services import (
    SplitPaymentService,
    IndividualPaymentService,
    RefundService,
    RetryService,
    WebhookService,
    DisputeService,
    NotificationDispatcher,
)
from modules.payments.utils.currency import ExchangeRateService

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakeGateway(PaymentGatewayInterface):
    """In-memory gateway recording every call"""

    def __init__(self):
        super().__init__({"fee_percentage": 2.9, "fee_fixed": 30}, test_mode=True)
        self.payment_requests: List[PaymentRequest] = []
        self.refund_requests: List[RefundRequest] = []
        self.confirmed_intents: List[str] = []
        self.fail_payments = False
        self.fail_refunds_for: set = set()
        self.settle_immediately = False
        self.intent_status = GatewayPaymentStatus.SUCCEEDED
        self.fail_confirmations = False
        self.on_create_payment = None
        self.on_create_refund = None
        self.webhook_result: Tuple[bool, Optional[Dict[str, Any]]] = (False, None)
        self._ids = itertools.count(1)

    async def create_payment(self, request: PaymentRequest) -> PaymentResponse:
        self.payment_requests.append(request)
        if self.on_create_payment is not None:
            await self.on_create_payment(request)
        if self.fail_payments:
            return PaymentResponse(
                success=False,
                status=GatewayPaymentStatus.FAILED,
                error_code="card_declined",
                error_message="Your card was declined.",
            )
        number = next(self._ids)
        return PaymentResponse(
            success=True,
            gateway_payment_id=f"pi_{number}",
            client_secret=f"pi_{number}_secret",
            status=(
                GatewayPaymentStatus.SUCCEEDED
                if self.settle_immediately
                else GatewayPaymentStatus.REQUIRES_ACTION
            ),
            amount=request.amount,
            currency=request.currency,
        )

    async def confirm_payment(self, payment_id: str) -> PaymentResponse:
        self.confirmed_intents.append(payment_id)
        if self.fail_confirmations:
            return PaymentResponse(
                success=False,
                status=GatewayPaymentStatus.FAILED,
                error_code="api_connection_error",
                error_message="Could not reach the processor",
            )
        return PaymentResponse(
            success=True, gateway_payment_id=payment_id, status=self.intent_status
        )

    async def create_refund(self, request: RefundRequest) -> RefundResponse:
        self.refund_requests.append(request)
        if self.on_create_refund is not None:
            await self.on_create_refund(request)
        if request.payment_id in self.fail_refunds_for:
            return RefundResponse(
                success=False,
                status=GatewayRefundStatus.FAILED,
                error_code="refund_failed",
                error_message="Refund could not be processed",
            )
        return RefundResponse(
            success=True,
            gateway_refund_id=f"re_{next(self._ids)}",
            status=GatewayRefundStatus.SUCCEEDED,
            amount=request.amount,
        )

    async def verify_webhook(self, headers, body):
        return self.webhook_result

    def get_public_config(self) -> Dict[str, Any]:
        return {"publishable_key": "pk_test_fake", "test_mode": True}


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def async_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def payment_config():
    return SplitPaymentConfig(
        STRIPE_SECRET_KEY=None,
        STRIPE_PUBLISHABLE_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return AsyncMock(spec=NotificationDispatcher)


@pytest.fixture
def repository():
    return SplitPaymentRepository()


@pytest.fixture
def rate_quotes():
    """Rates the stubbed provider quotes, keyed by base currency"""
    return {"USD": {"EUR": 0.9, "JPY": 150}}


@pytest_asyncio.fixture
async def exchange_rates(rate_quotes):
    def handler(request: httpx.Request) -> httpx.Response:
        base = request.url.path.rsplit("/", 1)[-1]
        if base not in rate_quotes:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json={"base": base, "rates": rate_quotes[base]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield ExchangeRateService(
            TTLCache(ttl_seconds=60), "https://rates.test/latest", http_client=client
        )


@pytest.fixture
def refund_svc(gateway, repository, dispatcher, payment_config):
    return RefundService(
        gateway=gateway,
        repository=repository,
        dispatcher=dispatcher,
        config=payment_config,
    )


@pytest.fixture
def split_svc(refund_svc, repository, dispatcher, payment_config, exchange_rates):
    return SplitPaymentService(
        refunds=refund_svc,
        repository=repository,
        dispatcher=dispatcher,
        config=payment_config,
        exchange_rates=exchange_rates,
    )


@pytest.fixture
def payment_svc(gateway, split_svc, refund_svc, repository, dispatcher, payment_config):
    return IndividualPaymentService(
        gateway=gateway,
        coordinator=split_svc,
        refunds=refund_svc,
        repository=repository,
        dispatcher=dispatcher,
        config=payment_config,
    )


@pytest.fixture
def retry_svc(payment_svc, refund_svc, repository):
    return RetryService(payments=payment_svc, refunds=refund_svc, repository=repository)


@pytest.fixture
def dispute_svc(repository, dispatcher):
    return DisputeService(repository=repository, dispatcher=dispatcher)


@pytest.fixture
def webhook_svc(gateway, payment_svc, repository, dispute_svc):
    return WebhookService(
        gateway=gateway,
        payments=payment_svc,
        repository=repository,
        disputes=dispute_svc,
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_split_request():
    """Factory for split payment requests with a 48 hour deadline"""

    def _make(
        total_amount: int = 1000,
        participant_ids: Optional[List[str]] = None,
        **overrides,
    ) -> SplitPaymentCreate:
        data = {
            "booking_id": "booking-1",
            "total_amount": total_amount,
            "currency": "usd",
            "split_type": SplitType.EQUAL,
            "participant_ids": participant_ids or ["alice", "bob", "carol"],
            "payment_deadline": NOW + timedelta(hours=48),
            "description": "Lisbon apartment",
        }
        data.update(overrides)
        return SplitPaymentCreate(**data)

    return _make


@pytest_asyncio.fixture
async def split_details(async_session, split_svc, make_split_request):
    """Equal split of 1000 cents between alice (organizer), bob and carol"""
    return await split_svc.create_split_payment(
        async_session, "alice", make_split_request(), now=NOW
    )


@pytest.fixture
def pay(payment_svc):
    """Charge a share and confirm it through the processor callback"""

    async def _pay(db, payment_id: str, user_id: str, now: datetime = NOW):
        handle = await payment_svc.initiate_charge(db, payment_id, user_id)
        await payment_svc.record_charge_outcome(
            db, handle.intent_id, succeeded=True, now=now
        )
        return handle

    return _pay


@pytest_asyncio.fixture
async def live_split(async_session, split_svc, make_split_request):
    """Split whose deadline is relative to the wall clock, for flows that read utcnow"""
    created_at = datetime.utcnow()
    return await split_svc.create_split_payment(
        async_session,
        "alice",
        make_split_request(payment_deadline=created_at + timedelta(hours=48)),
        now=created_at,
    )
