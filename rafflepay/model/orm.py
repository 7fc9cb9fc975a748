from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
# Table definitions only; the stores talk to these tables with plain SQL.
# Money is kept as a decimal string ("19.99") so it survives every driver
# unchanged. Timestamps are epoch seconds.

class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # card | manual_transfer | qr_code
    kind = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)


class Raffle(Base):
    __tablename__ = "raffles"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    # draft | active | closed | completed
    status = Column(String, nullable=False, default="draft")
    # NULL = unlimited
    max_entries_per_user = Column(Integer, nullable=True)
    # last ticket number handed out
    entry_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class RaffleEntry(Base):
    __tablename__ = "raffle_entries"
    __table_args__ = (
        UniqueConstraint("raffle_id", "ticket_number",
                         name="uq_raffle_entries_ticket"),
        Index("ix_raffle_entries_raffle_user", "raffle_id", "user_id"),
    )
    id = Column(String, primary_key=True)
    raffle_id = Column(String, ForeignKey("raffles.id"), nullable=False)
    user_id = Column(String, nullable=False)
    ticket_number = Column(Integer, nullable=False)
    # manual_purchase | card_checkout | subscription_grant
    source = Column(String, nullable=False)
    subscription_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Plan(Base):
    __tablename__ = "plans"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(String, nullable=False)  # decimal string
    currency = Column(String, nullable=False, default="USD")
    # month | year
    interval = Column(String, nullable=False, default="month")
    active = Column(Boolean, nullable=False, default=True)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=False)
    # incomplete | active | canceled
    status = Column(String, nullable=False, default="incomplete")
    gateway_intent_id = Column(String, nullable=True)
    current_period_start = Column(Float, nullable=True)
    current_period_end = Column(Float, nullable=True)
    activated_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class SubscriptionActivation(Base):
    __tablename__ = "subscription_activations"
    idempotency_key = Column(String, primary_key=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"),
                             nullable=False, unique=True)
    payment_intent_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        Index("ix_payment_transactions_status_created",
              "status", "created_at"),
    )
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    payment_method_id = Column(String, ForeignKey("payment_methods.id"),
                               nullable=False)
    # raffle_ticket | subscription | other
    purpose = Column(String, nullable=False)
    amount = Column(String, nullable=False)  # decimal string
    currency = Column(String, nullable=False, default="USD")
    raffle_id = Column(String, ForeignKey("raffles.id"), nullable=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"),
                             nullable=True)
    gateway_intent_id = Column(String, nullable=True, unique=True)
    receipt_reference = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)

    # pending | approved | rejected | completed | failed
    status = Column(String, nullable=False, default="pending")
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(Float, nullable=True)
    admin_comment = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # JSON object; 'metadata' is reserved on declarative classes
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
