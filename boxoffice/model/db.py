from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    PrimaryKeyConstraint,
)


Base = declarative_base()

# Order statuses
PENDING = "PENDING"
PENDING_PAYMENT = "PENDING_PAYMENT"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
EXPIRED = "EXPIRED"
REFUNDED = "REFUNDED"
DISPUTED = "DISPUTED"

# Ticket statuses (CANCELLED / REFUNDED shared with orders)
T_VALID = "VALID"
T_PENDING = "PENDING"
T_PENDING_ACTIVATION = "PENDING_ACTIVATION"
T_SCANNED = "SCANNED"
T_CANCELLED = CANCELLED
T_REFUNDED = REFUNDED

# Payment models
PREPAY = "PREPAY"
CREDIT_CARD = "CREDIT_CARD"

# Allocation modes / pools
MODE_INDIVIDUAL = "individual"
MODE_TABLE = "table"
MODE_MIXED = "mixed"
POOL_INDIVIDUAL = "individual"
POOL_TABLE = "table"
POOL_GROUP_PREFIX = "group:"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)


class EventPaymentConfig(Base):
    __tablename__ = "event_payment_config"
    event_id = Column(String, ForeignKey("events.id"), primary_key=True)
    organizer_id = Column(String, nullable=False)
    # PREPAY | CREDIT_CARD (legacy PRE_PURCHASE | PAY_AS_SELL)
    payment_model = Column(String, nullable=False)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False)  # per seat, or per table

    # total seat capacity and committed seats across every pool
    quantity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    # individual | table | mixed
    allocation_mode = Column(String, nullable=False, default="individual")
    table_capacity = Column(Integer, nullable=True)  # seats per table
    table_quantity = Column(Integer, nullable=True)
    table_sold = Column(Integer, nullable=False, default=0)
    individual_quantity = Column(Integer, nullable=True)
    individual_sold = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    sale_start = Column(BigInteger, nullable=True)
    sale_end = Column(BigInteger, nullable=True)
    first_sale_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class TableGroup(Base):
    __tablename__ = "table_groups"
    id = Column(String, primary_key=True)
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False,
                     index=True)
    seats_per_table = Column(Integer, nullable=False)
    number_of_tables = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)  # tables


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False, default="")
    buyer_phone = Column(String, nullable=True)
    order_number = Column(String, nullable=True)

    # PENDING | PENDING_PAYMENT | COMPLETED | FAILED | CANCELLED | EXPIRED
    # | REFUNDED | DISPUTED
    status = Column(String, nullable=False, index=True)

    subtotal_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    processing_fee_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)

    # STRIPE | PAYPAL | CASH | FREE | TEST
    payment_method = Column(String, nullable=False)
    stripe_payment_intent_id = Column(String, nullable=True, unique=True)
    paypal_order_id = Column(String, nullable=True, unique=True)
    paid_at = Column(BigInteger, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_eligible = Column(Boolean, nullable=False, default=True)
    last_retry_at = Column(BigInteger, nullable=True)
    failure_reason = Column(String, nullable=True)

    sold_by_staff_id = Column(String, nullable=True)
    debt_settlement_cents = Column(Integer, nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    hold_expires_at = Column(BigInteger, nullable=True)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=False)
    pool = Column(String, nullable=False, default="individual")
    quantity = Column(Integer, nullable=False)  # units (seats or tables)
    unit_price_cents = Column(Integer, nullable=False)
    created_at = Column(BigInteger, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True,
                      index=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_tier_id = Column(String, ForeignKey("ticket_tiers.id"),
                            nullable=True)
    # one ticket per unit of its pool; a table ticket admits `seats` people
    pool = Column(String, nullable=False, default="individual")
    seats = Column(Integer, nullable=False, default=1)
    ticket_code = Column(String, nullable=False, unique=True)

    # VALID | PENDING | PENDING_ACTIVATION | SCANNED | CANCELLED | REFUNDED
    status = Column(String, nullable=False)
    attendee_name = Column(String, nullable=True)
    attendee_email = Column(String, nullable=True)

    activation_code_hash = Column(String, nullable=True, index=True)
    activation_code_expiry = Column(BigInteger, nullable=True)
    activated_at = Column(BigInteger, nullable=True)

    sold_by_staff_id = Column(String, nullable=True)
    scanned_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    provider = Column(String, nullable=False)  # stripe | paypal | mock
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    processed_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, index=True)

    __table_args__ = (PrimaryKeyConstraint("provider", "event_id"),)


class EventStaff(Base):
    __tablename__ = "event_staff"
    id = Column(String, primary_key=True)
    event_id = Column(String, nullable=True)  # NULL = all organizer events
    organizer_id = Column(String, nullable=False, index=True)
    staff_user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="SELLER")

    assigned_by_staff_id = Column(String, ForeignKey("event_staff.id"),
                                  nullable=True, index=True)
    hierarchy_level = Column(Integer, nullable=False, default=1)
    can_assign_sub_sellers = Column(Boolean, nullable=False, default=False)
    max_sub_sellers = Column(Integer, nullable=True)

    commission_type = Column(String, nullable=True)  # PERCENTAGE | FIXED
    commission_value = Column(Float, nullable=True)
    # share of a direct sub-seller's commission that goes to this node
    parent_commission_percent = Column(Float, nullable=True)

    accept_cash_in_person = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    tickets_sold = Column(Integer, nullable=False, default=0)
    commission_earned = Column(Integer, nullable=False, default=0)
    cash_collected = Column(Integer, nullable=False, default=0)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class StaffSale(Base):
    __tablename__ = "staff_sales"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    event_id = Column(String, nullable=False)
    staff_id = Column(String, ForeignKey("event_staff.id"), nullable=False,
                      index=True)
    staff_user_id = Column(String, nullable=False)
    ticket_count = Column(Integer, nullable=False)
    commission_cents = Column(Integer, nullable=False)
    payment_method = Column(String, nullable=False)
    is_override = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False)


class OrganizerPlatformDebt(Base):
    __tablename__ = "organizer_platform_debt"
    organizer_id = Column(String, primary_key=True)
    total_debt_cents = Column(Integer, nullable=False, default=0)
    total_settled_cents = Column(Integer, nullable=False, default=0)
    remaining_debt_cents = Column(Integer, nullable=False, default=0)
    last_cash_order_at = Column(BigInteger, nullable=True)
    last_settlement_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class PlatformDebtLedger(Base):
    __tablename__ = "platform_debt_ledger"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False)
    # CASH_ORDER_DEBT | DIGITAL_SETTLEMENT | MANUAL_PAYMENT | ADJUSTMENT
    transaction_type = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    event_id = Column(String, nullable=True)
    # signed: positive adds debt, negative settles it
    amount_cents = Column(Integer, nullable=False)
    balance_after_cents = Column(Integer, nullable=False)
    description = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    processed_by = Column(String, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_debt_ledger_organizer_created",
              "organizer_id", "created_at"),
        # one cash-debt posting per order
        UniqueConstraint("transaction_type", "order_id",
                         name="uq_debt_ledger_type_order"),
    )


class PaymentDispute(Base):
    __tablename__ = "payment_disputes"
    id = Column(String, primary_key=True)
    dispute_id = Column(String, nullable=False, unique=True)
    provider = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False)  # OPEN | WON | LOST | CLOSED
    outcome_code = Column(String, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    resolved_at = Column(BigInteger, nullable=True)


class OutboxMessage(Base):
    __tablename__ = "outbox"
    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    dedupe_key = Column(String, nullable=False, unique=True)
    payload = Column(Text, nullable=False)  # JSON
    created_at = Column(BigInteger, nullable=False)
    dispatched_at = Column(BigInteger, nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
