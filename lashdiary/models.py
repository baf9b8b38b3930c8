import secrets
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Booking lifecycle states
BOOKING_PENDING = "pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_COMPLETED = "completed"
BOOKING_CANCELLED = "cancelled"


def generate_booking_id():
    """Generate a booking identifier"""
    return f"booking-{uuid.uuid4().hex[:12]}"


def generate_order_id():
    return f"order-{uuid.uuid4().hex[:12]}"


def generate_manage_token():
    """Opaque client-facing token for the self-service manage page"""
    return secrets.token_urlsafe(32)


class SiteSetting(Base):
    """Key/JSON storage for low-write admin configuration (availability rules etc.)"""

    __tablename__ = "site_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Service(Base):
    __tablename__ = "services"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    deposit = Column(Float, nullable=False, default=0)  # Deposit required to confirm
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True, default=generate_booking_id)

    # Client contact
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), nullable=False)
    location = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    service_id = Column(String(100), ForeignKey("services.id"), nullable=False)
    service_name = Column(String(255), nullable=False)

    # Scheduled start. date is the business-local calendar date (YYYY-MM-DD),
    # time_slot the ISO string with business offset, starts_at the same instant in naive UTC.
    date = Column(String(10), nullable=False, index=True)
    time_slot = Column(String(40), nullable=False)
    starts_at = Column(DateTime, nullable=False, index=True)
    # Set while the booking occupies its slot, NULL once cancelled.
    # Unique so two active bookings can never share a start instant.
    slot_key = Column(String(40), unique=True, nullable=True)

    # Money
    original_price = Column(Float, nullable=False, default=0)
    discount = Column(Float, nullable=False, default=0)
    final_price = Column(Float, nullable=False, default=0)
    deposit_required = Column(Float, nullable=False, default=0)
    deposit = Column(Float, nullable=False, default=0)  # Running total of applied payments
    paid_in_full = Column(Boolean, default=False, nullable=False)  # Derived from deposit >= final_price
    paid_in_full_at = Column(DateTime, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=BOOKING_PENDING, index=True)
    hold_expires_at = Column(DateTime, nullable=True)  # Pending reservation hold
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    # Payment provider correlation for the most recent payment request
    checkout_request_id = Column(String(255), nullable=True, index=True)

    # Self-service policy
    cancellation_policy_hours = Column(Integer, nullable=False, default=72)
    cancellation_cutoff_at = Column(DateTime, nullable=True)
    manage_token = Column(String(128), unique=True, nullable=False, default=generate_manage_token)
    manage_token_revoked = Column(Boolean, default=False, nullable=False)
    client_manage_disabled = Column(Boolean, default=False, nullable=False)
    reschedule_history = Column(JSON, default=list, nullable=False)
    rescheduled_at = Column(DateTime, nullable=True)
    last_client_manage_action_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    service = relationship("Service")
    payments = relationship(
        "Payment", back_populates="booking", order_by="Payment.id", cascade="all, delete-orphan"
    )


class ShopOrder(Base):
    __tablename__ = "shop_orders"

    id = Column(String(64), primary_key=True, default=generate_order_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    items = Column(JSON, default=list, nullable=False)  # [{product_id, name, price, quantity}]
    amount_paid = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")  # pending, partially_paid, paid
    paid_at = Column(DateTime, nullable=True)
    checkout_request_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())

    payments = relationship(
        "Payment", back_populates="shop_order", order_by="Payment.id", cascade="all, delete-orphan"
    )

    @property
    def total(self) -> float:
        return sum(
            float(item.get("price", 0)) * int(item.get("quantity", 1)) for item in self.items or []
        )


class LabsOrder(Base):
    """Website-build subscription order; completing payment provisions the client account"""

    __tablename__ = "labs_orders"

    id = Column(String(64), primary_key=True, default=generate_order_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), nullable=True)
    business_name = Column(String(255), nullable=True)
    tier = Column(String(50), nullable=False)
    items = Column(JSON, default=list, nullable=False)  # [{name, price, quantity}]
    subdomain = Column(String(100), nullable=True)
    amount_paid = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")  # pending, processing, completed
    completed_at = Column(DateTime, nullable=True)
    account_provisioned = Column(Boolean, default=False, nullable=False)
    checkout_request_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())

    payments = relationship(
        "Payment", back_populates="labs_order", order_by="Payment.id", cascade="all, delete-orphan"
    )

    @property
    def total(self) -> float:
        return sum(
            float(item.get("price", 0)) * int(item.get("quantity", 1)) for item in self.items or []
        )


class Payment(Base):
    """Applied provider payment. Owned by exactly one booking or order."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=True, index=True)
    shop_order_id = Column(String(64), ForeignKey("shop_orders.id"), nullable=True, index=True)
    labs_order_id = Column(String(64), ForeignKey("labs_orders.id"), nullable=True, index=True)

    amount = Column(Float, nullable=False)
    method = Column(String(30), nullable=False, default="mpesa")
    # Idempotency key: one row per provider correlation id across the whole ledger
    provider_correlation_id = Column(String(255), unique=True, nullable=False)
    provider_receipt_id = Column(String(255), nullable=True)
    transaction_date = Column(String(32), nullable=True)
    phone_number = Column(String(50), nullable=True)
    applied_at = Column(DateTime, server_default=func.now())

    booking = relationship("Booking", back_populates="payments")
    shop_order = relationship("ShopOrder", back_populates="payments")
    labs_order = relationship("LabsOrder", back_populates="payments")
