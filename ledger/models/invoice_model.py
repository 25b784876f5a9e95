# ledger/models/invoice_model.py
from sqlalchemy import (
    Column, Integer, String, Numeric, Date, DateTime, Text, JSON, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

from ledger.db import Base
from ledger.models.base import _now

INVOICE_STATUSES = ("draft", "sent", "paid", "void", "overdue")


class Invoice(Base):
    __tablename__ = "billing_invoices"
    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(64), nullable=False, unique=True, index=True)
    order_id = Column(Integer, ForeignKey("billing_orders.id"), nullable=False, unique=True)
    owner_id = Column(Integer, nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("billing_subscriptions.id"), nullable=True, index=True)
    period_start = Column(DateTime, nullable=True)      # renewal invoices only
    status = Column(String(16), nullable=False, default="draft")
    currency = Column(String(3), nullable=False)
    subtotal = Column(Numeric(18, 4), nullable=False, default=0)
    tax_rate = Column(Numeric(9, 6), nullable=False, default=0)
    tax_amount = Column(Numeric(18, 4), nullable=False, default=0)
    total = Column(Numeric(18, 4), nullable=False, default=0)
    paid_amount = Column(Numeric(18, 4), nullable=False, default=0)   # net of refunds, kept in sync by the ledger
    due_date = Column(Date, nullable=True)
    billing_details = Column(JSON, nullable=True)
    line_items = Column(JSON, nullable=False, default=list)
    payment_terms = Column(Text, nullable=True)
    bank_details = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    receipt_number = Column(String(64), nullable=True, unique=True)
    receipt_generated_at = Column(DateTime, nullable=True)
    receipt_data = Column(JSON, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (UniqueConstraint("subscription_id", "period_start", name="uq_invoice_subscription_period"),)

    order = relationship("Order", back_populates="invoice")
    transactions = relationship("Transaction", back_populates="invoice", order_by="Transaction.id")
    audit_entries = relationship("AuditEntry", back_populates="invoice", order_by="AuditEntry.id")

    def __repr__(self):
        return f"<Invoice {self.invoice_number} {self.status} {self.total} {self.currency}>"


class AuditEntry(Base):
    """
    Append-only delivery/audit trail for invoices and their transactions.
    kind: invoice_sent / receipt_sent / credit_note_sent / payment_confirmation_sent / voided
    """
    __tablename__ = "billing_audit_entries"
    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("billing_invoices.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("billing_transactions.id"), nullable=True, index=True)
    kind = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    invoice = relationship("Invoice", back_populates="audit_entries")
