# ledger/models/currency_model.py
from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime

from ledger.db import Base
from ledger.models.base import _now


class Currency(Base):
    __tablename__ = "billing_currencies"
    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(3), nullable=False, unique=True, index=True)   # ISO 4217, upper case
    name = Column(String(128), nullable=False)
    symbol = Column(String(16), nullable=True)
    precision = Column(Integer, nullable=False, default=2)              # decimal places 0..4
    exchange_rate = Column(Numeric(18, 8), nullable=False, default=1)  # units per 1 base currency
    is_default = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    def __repr__(self):
        return f"<Currency {self.code} default={self.is_default}>"
