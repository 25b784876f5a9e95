# ledger/models/webhook_model.py
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint

from ledger.db import Base
from ledger.models.base import _now


class WebhookEvent(Base):
    """
    Idempotency ledger for provider callbacks.
    One row per (provider, event_id); the row commits together with the mutation it caused.
    """
    __tablename__ = "billing_webhook_events"
    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload_hash = Column(String(64), nullable=False)      # sha256 hex of the raw body
    payload = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="processed")   # processed / ignored
    result = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)
