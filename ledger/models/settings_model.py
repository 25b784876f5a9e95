# ledger/models/settings_model.py
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from ledger.db import Base
from ledger.models.base import _now


class Setting(Base):
    __tablename__ = "billing_settings"
    key = Column(String(128), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class NumberSequence(Base):
    """Last issued number per (prefix, year) for documents like INV-2024-0001."""
    __tablename__ = "billing_sequences"
    id = Column(Integer, primary_key=True, index=True)
    prefix = Column(String(16), nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("prefix", "year", name="uq_sequence_prefix_year"),)
