import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from settlement.database import Base

Money = Numeric(12, 2)
CENT = Decimal("0.01")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def status_column(enum_cls, default):
    return Column(
        SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True),
        default=default,
        nullable=False,
        index=True,
    )


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class RevenueStatus(str, enum.Enum):
    PENDING = "PENDING"            # earned, inside the holding period
    AVAILABLE = "AVAILABLE"        # settled, withdrawable
    WITHDRAWN = "WITHDRAWN"
    CANCELLED = "CANCELLED"        # order refunded before settlement


class PaymentEventType(str, enum.Enum):
    STATUS_CHANGED = "STATUS_CHANGED"
    STATUS_UNCHANGED = "STATUS_UNCHANGED"
    IGNORED_TERMINAL = "IGNORED_TERMINAL"
    STATUS_SYNCED = "STATUS_SYNCED"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"


class CreatorProfile(Base):
    __tablename__ = "creator_profiles"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, unique=True, index=True, nullable=False)
    revenue = Column(Money, nullable=False, default=Decimal("0.00"))   # running ledger balance
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    order_number = Column(String, unique=True, index=True, nullable=False)
    buyer_id = Column(String, index=True, nullable=False)
    total_amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="CNY")
    status = status_column(OrderStatus, OrderStatus.PENDING)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    payment_transactions = relationship("PaymentTransaction", back_populates="order")
    revenue_shares = relationship("RevenueShare", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    solution_id = Column(String, nullable=False)
    creator_id = Column(String, ForeignKey("creator_profiles.id"), index=True, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money, nullable=False)
    subtotal = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (UniqueConstraint("provider", "external_id", name="uq_payment_provider_external_id"),)

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="CNY")
    method = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    external_id = Column(String, index=True, nullable=False)      # provider idempotency key
    status = status_column(PaymentStatus, PaymentStatus.PENDING)
    external_status = Column(String)                               # verbatim provider status
    paid_at = Column(DateTime(timezone=True))
    failure_reason = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payment_transactions")
    events = relationship("PaymentEvent", back_populates="payment_transaction", order_by="PaymentEvent.id")


class PaymentEvent(Base):
    """Append-only audit row for one webhook delivery, sync or refund flag."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_transaction_id = Column(String, ForeignKey("payment_transactions.id"), index=True)
    provider = Column(String)
    external_id = Column(String, index=True)
    event_type = Column(SAEnum(PaymentEventType, native_enum=False, length=20), nullable=False)
    payload = Column(Text)
    detail = Column(JSON)
    suspicious = Column(Boolean, nullable=False, default=False)
    source_ip = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    payment_transaction = relationship("PaymentTransaction", back_populates="events")


class RevenueShare(Base):
    __tablename__ = "revenue_shares"
    __table_args__ = (UniqueConstraint("order_id", "creator_id", name="uq_revenue_share_order_creator"),)

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    creator_id = Column(String, ForeignKey("creator_profiles.id"), index=True, nullable=False)
    total_amount = Column(Money, nullable=False)
    platform_fee = Column(Money, nullable=False)
    creator_revenue = Column(Money, nullable=False)
    status = status_column(RevenueStatus, RevenueStatus.PENDING)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    settled_at = Column(DateTime(timezone=True))
    withdrawn_at = Column(DateTime(timezone=True))
    withdraw_method = Column(String)
    withdraw_account = Column(String)

    order = relationship("Order", back_populates="revenue_shares")
