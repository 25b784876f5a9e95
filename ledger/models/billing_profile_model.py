# ledger/models/billing_profile_model.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON

from ledger.db import Base
from ledger.models.base import _now


class BillingProfile(Base):
    """
    Billing identity of a payer (individual or company).
    Orders and invoices keep a snapshot of it, so edits never rewrite history.
    """
    __tablename__ = "billing_profiles"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    type = Column(String(16), nullable=False, default="individual")   # individual / company
    is_default = Column(Boolean, nullable=False, default=False)
    name = Column(String(255), nullable=True)                         # display name
    first_name = Column(String(128), nullable=True)
    last_name = Column(String(128), nullable=True)
    middle_name = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    company_name = Column(String(255), nullable=True)
    company_vat_number = Column(String(32), nullable=True)
    company_registration_number = Column(String(64), nullable=True)
    company_legal_address = Column(Text, nullable=True)
    address_line1 = Column(String(255), nullable=True)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(128), nullable=True)
    postal_code = Column(String(32), nullable=True)
    country = Column(String(2), nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)
