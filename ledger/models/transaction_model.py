# ledger/models/transaction_model.py
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from ledger.db import Base
from ledger.models.base import _now


class Transaction(Base):
    """
    Ledger row against an invoice. amount > 0 is a payment, amount < 0 a refund.
    Rows are never updated after insert.
    """
    __tablename__ = "billing_transactions"
    id = Column(Integer, primary_key=True, index=True)
    transaction_number = Column(String(64), nullable=False, unique=True, index=True)
    invoice_id = Column(Integer, ForeignKey("billing_invoices.id"), nullable=False, index=True)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String(32), nullable=False, default="bank")
    description = Column(Text, nullable=True)
    provider = Column(String(32), nullable=True)                    # 'stripe', 'razorpay' ...
    provider_transaction_id = Column(String(128), nullable=True, index=True)
    refunded_transaction_id = Column(Integer, ForeignKey("billing_transactions.id"), nullable=True)
    provider_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_provider_transaction"),
    )

    invoice = relationship("Invoice", back_populates="transactions")

    @property
    def is_payment(self) -> bool:
        return self.amount > 0

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    def __repr__(self):
        return f"<Transaction {self.transaction_number} {self.amount} {self.currency}>"
