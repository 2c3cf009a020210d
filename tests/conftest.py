"""Pytest fixtures for testing"""

import pytest
from decimal import Decimal
from typing import Callable, Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from spotme_settlement.api.dependencies import get_gateway
from spotme_settlement.api.main import create_app
from spotme_settlement.domain.models import NEED_COLLECTING, PAYMENT_PENDING, Allocation, PaymentIntent
from spotme_settlement.infrastructure.clients.gateway import GatewayPort
from spotme_settlement.infrastructure.database.models import Base, ConnectedAccount, Need, Payment, Profile
from spotme_settlement.infrastructure.database.repositories import NeedRepository, PaymentRepository
from spotme_settlement.infrastructure.database.session import get_db


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway(GatewayPort):
    """In-memory gateway; tests script intent statuses and failures"""

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}
        self.created: List[dict] = []
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.canceled: List[str] = []

    async def create_payment_intent(self, amount_cents, currency, metadata, destination=None, application_fee_cents=None):
        self.created.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
                "destination": destination,
                "application_fee_cents": application_fee_cents,
            }
        )
        if self.create_error is not None:
            raise self.create_error

        intent_id = f"pi_test_{len(self.created)}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
            amount=amount_cents,
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.intents[intent_id]

    async def cancel_payment_intent(self, intent_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.canceled.append(intent_id)
        intent = self.intents.setdefault(intent_id, PaymentIntent(id=intent_id, client_secret=None, status="requires_payment_method"))
        intent.status = "canceled"
        return intent

    def set_status(self, intent_id: str, status: str, message: Optional[str] = None, code: Optional[str] = None):
        intent = self.intents[intent_id]
        intent.status = status
        intent.last_payment_error_message = message
        intent.last_payment_error_code = code


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(db: Session, fake_gateway: FakeGateway) -> TestClient:
    """Create FastAPI test client with test database and in-memory gateway"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    return TestClient(app)


@pytest.fixture
def make_need(db: Session) -> Callable[..., Need]:
    """Factory for committed needs"""

    def factory(
        goal: str = "100.00",
        raised: str = "0.00",
        owner_id: str = "owner-1",
        title: str = "Help with rent",
        category: str = "housing",
        status: str = NEED_COLLECTING,
    ) -> Need:
        need = NeedRepository(db).create_need(
            owner_id=owner_id,
            goal_amount=Decimal(goal),
            raised_amount=Decimal(raised),
            title=title,
            category=category,
            status=status,
        )
        db.commit()
        return need

    return factory


@pytest.fixture
def contributor(db: Session) -> Profile:
    profile = Profile(id="contributor-1", display_name="Sam", total_given=Decimal("0.00"))
    db.add(profile)
    db.commit()
    return profile


@pytest.fixture
def onboarded_owner(db: Session) -> ConnectedAccount:
    account = ConnectedAccount(
        user_id="owner-1",
        gateway_account_id="acct_owner1",
        onboarding_complete=True,
        payouts_enabled=True,
        charges_enabled=True,
        details_submitted=True,
    )
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def make_payment(db: Session) -> Callable[..., Payment]:
    """Factory for committed pending payments against one or more needs"""

    def factory(
        *needs: Need,
        amount: str = "25.00",
        shares: Optional[List[str]] = None,
        intent_id: Optional[str] = "pi_test_seeded",
        status: str = PAYMENT_PENDING,
        contributor_id: Optional[str] = "contributor-1",
    ) -> Payment:
        shares = shares or [amount]
        allocations = [Allocation(need_id=str(n.id), amount=Decimal(s)) for n, s in zip(needs, shares)]
        payment = PaymentRepository(db).create_payment(
            allocations,
            Decimal(amount),
            Decimal(amount),
            contributor_id=contributor_id,
            contributor_name="Sam",
            need_id=needs[0].id if len(needs) == 1 else None,
            need_title=needs[0].title if len(needs) == 1 else "Spread",
            type="contribution" if len(needs) == 1 else "spread",
            gateway_intent_id=intent_id,
            status=status,
            mode="gateway",
        )
        db.commit()
        return payment

    return factory
