import base64
import os
from decimal import Decimal
from urllib.parse import urlencode

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_settlement.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PLATFORM_FEE_RATIO", "0.5")
os.environ.setdefault("LOCK_TIMEOUT_MS", "10000")

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy.orm import sessionmaker

import settlement.database
import settlement.models  # noqa: F401  (registers tables)
from settlement.checkout import LineItem, create_order, open_payment
from settlement.database import Base, build_engine
from settlement.models import CreatorProfile

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_ledger.db"
engine = build_engine(SQLALCHEMY_DATABASE_URL, lock_timeout_ms=10000)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(settlement.database, "SessionLocal", TestingSessionLocal)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def alipay_public_key(rsa_private_key):
    der = rsa_private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return base64.b64encode(der).decode()


@pytest.fixture(autouse=True)
def provider_keys(monkeypatch, alipay_public_key):
    monkeypatch.setenv("ALIPAY_PUBLIC_KEY", alipay_public_key)
    monkeypatch.setenv("WECHAT_PAY_KEY", "test-wechat-key")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test")


def rsa_sign(private_key, content: str) -> str:
    signature = private_key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode()


@pytest.fixture
def alipay_body(rsa_private_key):
    """Build a signed Alipay notification body from its parameters."""

    def build(sign=None, **params):
        content = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] != "")
        signed = dict(params, sign_type="RSA2", sign=sign or rsa_sign(rsa_private_key, content))
        return urlencode(signed)

    return build


@pytest.fixture
def make_creator():
    def create(user_id="user-creator"):
        db = TestingSessionLocal()
        creator = CreatorProfile(user_id=user_id, revenue=Decimal("0.00"))
        db.add(creator)
        db.commit()
        db.close()
        return creator

    return create


@pytest.fixture
def make_order():
    def create(*items, buyer_id="buyer-1"):
        return create_order(
            buyer_id,
            [LineItem(solution_id=f"sol-{n}", creator_id=creator_id, unit_price=Decimal(price), quantity=qty)
             for n, (creator_id, price, qty) in enumerate(items)],
        )

    return create


@pytest.fixture
def pending_payment(make_creator, make_order):
    """A 100.00 order for one creator with a PENDING alipay payment 'external-123'."""
    creator = make_creator()
    order = make_order((creator.id, "100.00", 1))
    payment = open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id="external-123")
    return creator, order, payment


@pytest.fixture
def signer(rsa_private_key):
    return lambda content: rsa_sign(rsa_private_key, content)


@pytest.fixture
def load():
    """Fetch one committed row by primary key."""

    def get(model, id_):
        db = TestingSessionLocal()
        try:
            return db.get(model, id_)
        finally:
            db.close()

    return get


@pytest.fixture
def rows():
    """Fetch every committed row of a model, in primary key order."""

    def all_rows(model):
        db = TestingSessionLocal()
        try:
            return db.query(model).order_by(model.id).all()
        finally:
            db.close()

    return all_rows
