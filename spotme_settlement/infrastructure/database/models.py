"""SQLAlchemy ORM models for the settlement ledger"""

import uuid
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Integer,
    ForeignKey,
    Numeric,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

Money = Numeric(12, 2)


class Need(Base):
    """Funding request; raised_amount never exceeds goal_amount"""

    __tablename__ = "need"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    category = Column(Text, nullable=False, default="")
    goal_amount = Column(Money, nullable=False)
    raised_amount = Column(Money, nullable=False, default=0)
    contributor_count = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="Collecting")
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Contribution(Base):
    """Append-only record of funds credited to a need"""

    __tablename__ = "contribution"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    need_id = Column(UUID(as_uuid=True), ForeignKey("need.id"), nullable=False, index=True)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=False, index=True)
    contributor_id = Column(Text, nullable=True)
    contributor_name = Column(Text, nullable=False, default="")
    amount = Column(Money, nullable=False)
    note = Column(Text, nullable=False, default="")
    is_anonymous = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Payment(Base):
    """Settlement unit for one charge attempt"""

    __tablename__ = "payment"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contributor_id = Column(Text, nullable=True, index=True)
    contributor_name = Column(Text, nullable=False, default="")
    need_id = Column(UUID(as_uuid=True), ForeignKey("need.id"), nullable=True, index=True)
    need_title = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False, default="contribution")
    amount = Column(Money, nullable=False)
    tip_amount = Column(Money, nullable=False, default=0)
    platform_fee = Column(Money, nullable=False, default=0)
    application_fee = Column(Money, nullable=False, default=0)
    recipient_receives = Column(Money, nullable=False)
    note = Column(Text, nullable=False, default="")
    is_anonymous = Column(Boolean, nullable=False, default=False)
    gateway_intent_id = Column(Text, nullable=True, unique=True)
    client_secret = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="pending", index=True)
    mode = Column(Text, nullable=False, default="gateway")
    destination_charge = Column(Boolean, nullable=False, default=False)
    connected_account_id = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    failure_code = Column(Text, nullable=True)
    retry_of_payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    allocations = relationship(
        "PaymentAllocation",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAllocation.position",
    )
    retries = relationship(
        "PaymentRetry",
        back_populates="payment",
        foreign_keys="PaymentRetry.payment_id",
        order_by="PaymentRetry.retry_number",
    )


class PaymentAllocation(Base):
    """Per-need share of a payment, recorded verbatim at checkout"""

    __tablename__ = "payment_allocation"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id", ondelete="CASCADE"), nullable=False, index=True)
    need_id = Column(UUID(as_uuid=True), ForeignKey("need.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    amount = Column(Money, nullable=False)
    fee = Column(Money, nullable=False, default=0)

    payment = relationship("Payment", back_populates="allocations")


class PaymentRetry(Base):
    """One row per retry attempt of a failed payment"""

    __tablename__ = "payment_retry"
    __table_args__ = (UniqueConstraint("payment_id", "retry_number", name="uq_payment_retry_number"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=False, index=True)
    new_payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True, index=True)
    retry_number = Column(Integer, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    scheduled_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    attempted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    result = Column(Text, nullable=True)
    error = Column(Text, nullable=True)

    payment = relationship("Payment", back_populates="retries", foreign_keys=[payment_id])


class ConnectedAccount(Base):
    """Recipient payout routing record"""

    __tablename__ = "connected_account"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    gateway_account_id = Column(Text, nullable=False, unique=True)
    onboarding_complete = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    last_webhook_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebhookEvent(Base):
    """Inbound gateway event log used for redelivery detection"""

    __tablename__ = "webhook_event"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Text, nullable=False, unique=True)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Receipt(Base):
    """Write-once receipt, one per completed payment"""

    __tablename__ = "receipt"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=False, unique=True)
    user_id = Column(Text, nullable=True, index=True)
    receipt_number = Column(String(32), nullable=False, unique=True)
    amount = Column(Money, nullable=False)
    need_title = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Profile(Base):
    """Contributor profile; only the lifetime total is owned by this service"""

    __tablename__ = "profile"

    id = Column(Text, primary_key=True)
    display_name = Column(Text, nullable=False, default="")
    total_given = Column(Money, nullable=False, default=0)


class Notification(Base):
    """Notification queued for a need owner"""

    __tablename__ = "notification"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    need_id = Column(UUID(as_uuid=True), ForeignKey("need.id"), nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class IdempotencyRecord(Base):
    """Durable checkout de-duplication key"""

    __tablename__ = "idempotency_record"

    key = Column(String(128), primary_key=True)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
