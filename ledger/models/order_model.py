# ledger/models/order_model.py
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship

from ledger.db import Base
from ledger.models.base import _now

ORDER_STATUSES = ("draft", "pending", "confirmed", "paid", "cancelled", "refunded")


class Order(Base):
    __tablename__ = "billing_orders"
    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(64), nullable=False, unique=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    billing_profile_id = Column(Integer, ForeignKey("billing_profiles.id"), nullable=True, index=True)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default="draft")
    # [{"name", "description", "quantity", "unit_price", "total"}], amounts stored as strings
    line_items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Numeric(18, 4), nullable=False, default=0)
    tax_rate = Column(Numeric(9, 6), nullable=False, default=0)
    tax_amount = Column(Numeric(18, 4), nullable=False, default=0)
    total = Column(Numeric(18, 4), nullable=False, default=0)
    billing_snapshot = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    billing_profile = relationship("BillingProfile")
    invoice = relationship("Invoice", back_populates="order", uselist=False)

    @property
    def editable(self) -> bool:
        return self.status in ("draft", "pending")

    def __repr__(self):
        return f"<Order {self.order_number} {self.status} {self.total} {self.currency}>"
