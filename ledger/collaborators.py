# ledger/collaborators.py
"""
Default implementations of the collaborators the billing core consumes:

  tax lookup       get_standard_vat_rate(country_code) -> Decimal | None
  settings store   get(key, default) / put(key, value)
  mail sender      send(template, recipient, context), raises on failure
  sequences        next(prefix) -> "PREFIX-YYYY-NNNN"

Hosts can pass their own objects with the same methods.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ledger.models import Setting, NumberSequence, _now

log = logging.getLogger("ledger.collaborators")


# -----------------------------------------------------------
# Tax lookup
# -----------------------------------------------------------
def no_tax(country_code: Optional[str]) -> Optional[Decimal]:
    return None


class TaxTable:
    """Standard VAT rate per ISO country code, e.g. TaxTable({"EE": "0.22"})."""

    def __init__(self, rates: Dict[str, Any]):
        self.rates = {k.upper(): Decimal(str(v)) for k, v in rates.items()}

    def __call__(self, country_code: Optional[str]) -> Optional[Decimal]:
        return self.get_standard_vat_rate(country_code)

    def get_standard_vat_rate(self, country_code: Optional[str]) -> Optional[Decimal]:
        if not country_code:
            return None
        return self.rates.get(country_code.upper())


# -----------------------------------------------------------
# Settings store
# -----------------------------------------------------------
class MemorySettingsStore:
    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def put(self, key: str, value: Any) -> None:
        self.values[key] = value


class DbSettingsStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str, default: Any = None) -> Any:
        row = self.db.get(Setting, key)
        if row is None or row.value is None:
            return default
        return row.value

    def put(self, key: str, value: Any) -> None:
        row = self.db.get(Setting, key)
        if row is None:
            row = Setting(key=key, value=value)
            self.db.add(row)
        else:
            row.value = value
        self.db.commit()


# -----------------------------------------------------------
# Mail sender
# -----------------------------------------------------------
class LoggingMailSender:
    """Logs delivery requests; the host application wires a real mailer."""

    def send(self, template: str, recipient: str, context: Dict[str, Any]) -> None:
        log.info("mail %s -> %s (%s)", template, recipient, ", ".join(sorted(context)))


class RecordingMailSender:
    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []

    def send(self, template: str, recipient: str, context: Dict[str, Any]) -> None:
        self.outbox.append({"template": template, "recipient": recipient, "context": context})


# -----------------------------------------------------------
# Sequence generator
# -----------------------------------------------------------
class DbSequenceGenerator:
    """
    Strictly increasing numbers per (prefix, year).
    Runs inside the caller's transaction, so a rolled back document does not consume a number.
    """

    def __init__(self, db: Session):
        self.db = db

    def next(self, prefix: str) -> str:
        year = _now().year
        row = (
            self.db.query(NumberSequence)
            .filter(NumberSequence.prefix == prefix, NumberSequence.year == year)
            .with_for_update()
            .first()
        )
        if row is None:
            row = NumberSequence(prefix=prefix, year=year, last_value=0)
            self.db.add(row)
        row.last_value = (row.last_value or 0) + 1
        self.db.flush()
        return f"{prefix}-{year}-{row.last_value:04d}"
