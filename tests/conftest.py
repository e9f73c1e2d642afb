import os

# Must be set before any application module builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from auth.dependencies import create_access_token
from database.config import build_engine, get_db
from database.models import Base, User, UserType
from database import marketplace_models  # noqa: F401
from database.marketplace_models import WithdrawalMethod
from services.offer_service import OfferService
from services.reconciliation_service import WebhookProcessor
from services.withdrawal_methods import seed_withdrawal_methods
from factories import FakeGateway, checkout_event


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several sessions can share one database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


def _make_user(db, email, user_type, **extra):
    user = User(email=email, name=email.split("@")[0].title(), user_type=user_type, **extra)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def brand(db):
    return _make_user(db, "brand@example.com", UserType.BRAND)


@pytest.fixture
def creator(db, gateway):
    """Creator with a verified payout account."""
    gateway.add_account("acct_creator", payouts_enabled=True)
    return _make_user(db, "creator@example.com", UserType.CREATOR, stripe_account_id="acct_creator")


@pytest.fixture
def admin(db):
    return _make_user(db, "admin@example.com", UserType.ADMIN)


@pytest.fixture
def methods(db):
    """Default withdrawal methods plus a fee-free manual method with no minimum."""
    seed_withdrawal_methods(db)
    db.add(WithdrawalMethod(
        code="manual",
        name="Manual Payout",
        min_amount=1,
        max_amount=None,
        fixed_fee=0,
        fee_percentage=0,
        required_fields=[],
        is_automatic=False,
        is_active=True,
        sort_order=9,
    ))
    db.commit()


@pytest.fixture
def make_contract(db, brand, creator):
    """Pending contract created the way users create them: offer, then accept."""
    def _make(budget=1000, estimated_days=7, title="Launch video"):
        service = OfferService(db)
        offer = service.create(brand, creator.id, title=title, budget=budget, estimated_days=estimated_days)
        return service.accept(offer.id, creator)
    return _make


@pytest.fixture
def fund(db, gateway, brand):
    """Deliver a paid contract_funding checkout event for a contract."""
    def _fund(contract, amount=None, event_id=None):
        session = gateway.add_session(
            mode="payment",
            amount=contract.budget if amount is None else amount,
            metadata={
                "type": "contract_funding",
                "contract_id": contract.id,
                "user_id": brand.id,
            },
        )
        event = checkout_event(session, event_id=event_id)
        result = WebhookProcessor(db, gateway).process_payload(event)
        return session, result
    return _fund


@pytest.fixture
def funded_contract(db, make_contract, fund):
    contract = make_contract()
    fund(contract)
    db.refresh(contract)
    return contract


@pytest.fixture
def app(session_factory, gateway):
    from server import create_app

    app = create_app(gateway=gateway)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.email)}"}
    return _headers
