# ledger/models/subscription_model.py
from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime, Text, JSON, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from ledger.db import Base
from ledger.models.base import _now

SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "paused", "cancelled")
LIVE_STATUSES = ("trialing", "active", "past_due", "paused")
INTERVALS = ("day", "week", "month", "year")


class SubscriptionType(Base):
    """Plan catalog entry."""
    __tablename__ = "billing_subscription_types"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False)
    slug = Column(String(128), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    interval = Column(String(8), nullable=False, default="month")   # day / week / month / year
    interval_count = Column(Integer, nullable=False, default=1)
    trial_days = Column(Integer, nullable=False, default=0)
    features = Column(JSON, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class PaymentMethod(Base):
    """Saved provider payment method. Display fields only, never raw card data."""
    __tablename__ = "billing_payment_methods"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    provider_payment_method_id = Column(String(128), nullable=False)
    provider_customer_id = Column(String(128), nullable=True)
    type = Column(String(32), nullable=False, default="card")       # card / bank_account / wallet / paypal
    brand = Column(String(32), nullable=True)
    last4 = Column(String(4), nullable=True)
    exp_month = Column(Integer, nullable=True)
    exp_year = Column(Integer, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="active")   # active / expired / detached / failed
    label = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_method_id", name="uq_provider_payment_method"),
    )

    @property
    def display_name(self) -> str:
        if self.type == "card" and self.brand and self.last4:
            return f"{self.brand.capitalize()} **** {self.last4}"
        if self.type == "bank_account" and self.last4:
            return f"Bank Account **** {self.last4}"
        return self.label or self.type.capitalize()


class Subscription(Base):
    __tablename__ = "billing_subscriptions"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    subscription_type_id = Column(Integer, ForeignKey("billing_subscription_types.id"), nullable=False)
    billing_profile_id = Column(Integer, ForeignKey("billing_profiles.id"), nullable=True)
    payment_method_id = Column(Integer, ForeignKey("billing_payment_methods.id"), nullable=True)
    status = Column(String(16), nullable=False, default="active")
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    grace_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)
    renewal_attempts = Column(Integer, nullable=False, default=0)
    last_renewal_attempt_at = Column(DateTime, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    plan = relationship("SubscriptionType")
    payment_method = relationship("PaymentMethod")

    def __repr__(self):
        return f"<Subscription {self.id} {self.status} until {self.current_period_end}>"
