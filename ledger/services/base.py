# ledger/services/base.py
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.collaborators import DbSequenceGenerator
from ledger.errors import BillingError, NotFound
from ledger.models import Currency

log = logging.getLogger("ledger.services")


class BaseService:
    """
    Shared plumbing for billing services.

    autocommit=True  -> every public mutation commits (or rolls back) on its own.
    autocommit=False -> mutations only flush; the caller owns commit/rollback so
                        several services can apply one unit of work.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[BillingConfig] = None,
        autocommit: bool = True,
        sequences=None,
    ):
        self.db = db
        self.config = config or BillingConfig()
        self.autocommit = autocommit
        self.sequences = sequences or DbSequenceGenerator(db)

    def child(self, cls, **kwargs):
        """Sibling service joined to this unit of work."""
        return cls(self.db, self.config, autocommit=False, sequences=self.sequences, **kwargs)

    @contextmanager
    def atomic(self, action: str):
        try:
            yield
            if self.autocommit:
                self.db.commit()
            else:
                self.db.flush()
        except BillingError as e:
            if self.autocommit:
                self.db.rollback()
            log.warning("%s rejected: %s (%s)", action, e.code, e.message)
            raise
        except Exception:
            if self.autocommit:
                self.db.rollback()
            log.exception("%s failed", action)
            raise

    # -------------------------------------------------
    # LOOKUPS
    # -------------------------------------------------
    def _get(self, model, entity_id, label: str):
        obj = self.db.get(model, entity_id)
        if obj is None:
            raise NotFound("not_found", f"{label} {entity_id} not found")
        return obj

    def _lock(self, model, entity_id, label: str):
        """Row lock (SELECT ... FOR UPDATE) with a fresh read of the row."""
        obj = (
            self.db.query(model)
            .filter(model.id == entity_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if obj is None:
            raise NotFound("not_found", f"{label} {entity_id} not found")
        return obj

    def currency_places(self, code: str) -> int:
        cur = self.db.query(Currency).filter(Currency.code == (code or "").upper()).first()
        return cur.precision if cur is not None else 2


def _id(entity_or_id):
    return getattr(entity_or_id, "id", entity_or_id)
