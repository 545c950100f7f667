"""SQLAlchemy ORM models for obligations, payment attempts and inbound webhooks"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    DateTime,
    Date,
    Integer,
    ForeignKey,
    Text,
    JSON,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator, Uuid

from settle_gateway.utils.date_utils import as_utc, utcnow

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that stays aware on backends without tz support"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


ACTIVE_ATTEMPT_FILTER = text("status IN ('pending', 'processing')")


class Obligation(Base):
    """Money owed by an account holder"""

    __tablename__ = "obligation"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Text, nullable=False)
    description = Column(String(500), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="ARS")
    due_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    category = Column(Text, nullable=False, default="other")
    notes = Column(String(1000), nullable=True)

    reminders_sent = Column(Integer, nullable=False, default=0)
    last_reminder_at = Column(UTCDateTime, nullable=True)

    active_attempt_id = Column(Uuid, nullable=True)
    paid_attempt_id = Column(Uuid, nullable=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    last_payment_attempt_at = Column(UTCDateTime, nullable=True)

    created_by = Column(Text, nullable=True)
    archived_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    history = relationship(
        "ObligationStatusChange",
        back_populates="obligation",
        order_by="ObligationStatusChange.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_obligation_owner_status", "owner_id", "status"),
        Index("ix_obligation_status_due_date", "status", "due_date"),
    )


class ObligationStatusChange(Base):
    """Append-only obligation status history"""

    __tablename__ = "obligation_status_change"

    id = Column(Integer, primary_key=True, autoincrement=True)
    obligation_id = Column(Uuid, ForeignKey("obligation.id"), nullable=False, index=True)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    actor = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    attempt_id = Column(Uuid, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    obligation = relationship("Obligation", back_populates="history")


class PaymentAttempt(Base):
    """One checkout session opened at the processor for an obligation"""

    __tablename__ = "payment_attempt"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    obligation_id = Column(Uuid, ForeignKey("obligation.id"), nullable=False)
    owner_id = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Text, nullable=False, default="pending")

    checkout_session_id = Column(Text, nullable=True)
    checkout_url = Column(Text, nullable=True)
    processor_payment_id = Column(Text, nullable=True, index=True)
    external_reference = Column(Text, nullable=False, index=True)
    status_detail = Column(Text, nullable=True)
    payer_email = Column(Text, nullable=True)

    attempts_count = Column(Integer, nullable=False, default=1)
    refunded_amount_cents = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    history = relationship(
        "AttemptStatusChange",
        back_populates="attempt",
        order_by="AttemptStatusChange.id",
        cascade="all, delete-orphan",
    )
    notifications = relationship(
        "AttemptNotification",
        back_populates="attempt",
        order_by="AttemptNotification.id",
        cascade="all, delete-orphan",
    )
    references = relationship(
        "AttemptReference",
        back_populates="attempt",
        order_by="AttemptReference.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_payment_attempt_obligation_status", "obligation_id", "status"),
        Index("ix_payment_attempt_owner_status", "owner_id", "status"),
        # At most one pending/processing attempt per obligation
        Index(
            "uq_payment_attempt_one_active",
            "obligation_id",
            unique=True,
            postgresql_where=ACTIVE_ATTEMPT_FILTER,
            sqlite_where=ACTIVE_ATTEMPT_FILTER,
        ),
    )


class AttemptStatusChange(Base):
    """Append-only payment attempt status history"""

    __tablename__ = "attempt_status_change"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(Uuid, ForeignKey("payment_attempt.id"), nullable=False, index=True)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    actor = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    attempt = relationship("PaymentAttempt", back_populates="history")


class AttemptReference(Base):
    """Every external reference an attempt has sent to the processor, one per checkout"""

    __tablename__ = "attempt_reference"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(Uuid, ForeignKey("payment_attempt.id"), nullable=False, index=True)
    external_reference = Column(Text, nullable=False, unique=True)
    checkout_session_id = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    attempt = relationship("PaymentAttempt", back_populates="references")


class AttemptNotification(Base):
    """Raw processor notification applied to an attempt, kept for replay and audit"""

    __tablename__ = "attempt_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(Uuid, ForeignKey("payment_attempt.id"), nullable=False)
    notification_id = Column(Text, nullable=False)
    notification_type = Column(Text, nullable=False)
    processor_status = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(UTCDateTime, nullable=False, default=utcnow)

    attempt = relationship("PaymentAttempt", back_populates="notifications")

    __table_args__ = (UniqueConstraint("attempt_id", "notification_id", name="uq_attempt_notification"),)


class InboundWebhook(Base):
    """Durable queue of processor notifications awaiting reconciliation"""

    __tablename__ = "inbound_webhook"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    query = Column(JSON, nullable=False, default=dict)
    headers = Column(JSON, nullable=False, default=dict)
    body = Column(JSON, nullable=True)
    notification_type = Column(Text, nullable=True)
    external_id = Column(Text, nullable=True)
    notification_id = Column(Text, nullable=True)
    signature_valid = Column(Boolean, nullable=True)
    status = Column(Text, nullable=False, default="received", index=True)
    outcome = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
