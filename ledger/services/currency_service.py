# -----------------------------------------------------------
# ledger/services/currency_service.py
# Currency registry, default-currency invariant, conversion
# -----------------------------------------------------------
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ledger.errors import NotFound, StateError, ValidationError
from ledger.models import Currency, Order
from ledger.money import quantize, to_decimal
from ledger.services.base import BaseService

log = logging.getLogger("ledger.currency_service")

_EDITABLE = ("name", "symbol", "precision", "exchange_rate", "enabled", "sort_order")


def _normalize_code(code: str) -> str:
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError("invalid_currency", f"invalid currency code: {code!r}")
    return code


def _check_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    if "precision" in fields:
        precision = int(fields["precision"])
        if not 0 <= precision <= 4:
            raise ValidationError("invalid_currency", "precision must be between 0 and 4")
        fields["precision"] = precision
    if "exchange_rate" in fields:
        rate = to_decimal(fields["exchange_rate"])
        if rate <= 0:
            raise ValidationError("invalid_currency", "exchange rate must be positive")
        fields["exchange_rate"] = rate
    return fields


class CurrencyService(BaseService):

    def get(self, code: str) -> Currency:
        cur = self.db.query(Currency).filter(Currency.code == _normalize_code(code)).first()
        if cur is None:
            raise NotFound("not_found", f"currency {code} not found")
        return cur

    def list_currencies(self, enabled_only: bool = False) -> List[Currency]:
        q = self.db.query(Currency)
        if enabled_only:
            q = q.filter(Currency.enabled.is_(True))
        return q.order_by(Currency.sort_order, Currency.code).all()

    def get_default(self) -> Optional[Currency]:
        return self.db.query(Currency).filter(Currency.is_default.is_(True)).first()

    def create(self, code: str, name: str, symbol: Optional[str] = None, precision: int = 2,
               exchange_rate: Any = "1", enabled: bool = True, sort_order: int = 0,
               is_default: bool = False) -> Currency:
        code = _normalize_code(code)
        fields = _check_fields({"precision": precision, "exchange_rate": exchange_rate})
        with self.atomic(f"create_currency {code}"):
            if self.db.query(Currency).filter(Currency.code == code).first() is not None:
                raise ValidationError("invalid_currency", f"currency {code} already exists")
            cur = Currency(
                code=code,
                name=name,
                symbol=symbol,
                enabled=enabled,
                sort_order=sort_order,
                is_default=False,
                **fields,
            )
            self.db.add(cur)
            self.db.flush()
            # the first currency becomes the default so one always exists
            if is_default or self.get_default() is None:
                self._make_default(cur)
        log.info("Currency %s created (default=%s)", code, cur.is_default)
        return cur

    def update(self, code: str, **changes) -> Currency:
        fields = _check_fields({k: v for k, v in changes.items() if k in _EDITABLE})
        with self.atomic(f"update_currency {code}"):
            cur = self.get(code)
            if fields.get("enabled") is False and cur.is_default:
                raise StateError("is_default", "the default currency cannot be disabled")
            for k, v in fields.items():
                setattr(cur, k, v)
        return cur

    def enable(self, code: str) -> Currency:
        return self.update(code, enabled=True)

    def disable(self, code: str) -> Currency:
        return self.update(code, enabled=False)

    def set_default(self, code: str) -> Currency:
        with self.atomic(f"set_default_currency {code}"):
            cur = self.get(code)
            self._make_default(cur)
        log.info("Default currency is now %s", cur.code)
        return cur

    def _make_default(self, cur: Currency) -> None:
        others = (
            self.db.query(Currency)
            .filter(Currency.is_default.is_(True), Currency.id != cur.id)
            .with_for_update()
            .all()
        )
        for other in others:
            other.is_default = False
        cur.is_default = True
        cur.enabled = True
        self.db.flush()

    def delete(self, code: str) -> None:
        with self.atomic(f"delete_currency {code}"):
            cur = self.get(code)
            if cur.is_default:
                raise StateError("is_default", "the default currency cannot be deleted")
            in_use = self.db.query(Order.id).filter(Order.currency == cur.code).first()
            if in_use is not None:
                raise StateError("currency_in_use", f"currency {cur.code} is used by orders")
            self.db.delete(cur)
        log.info("Currency %s deleted", code)

    def import_currencies(self, rows: Iterable[Dict[str, Any]]) -> List[Currency]:
        """Upsert by code. Rows: {"code", "name", "symbol", "precision", "exchange_rate", ...}."""
        out = []
        with self.atomic("import_currencies"):
            for row in rows:
                code = _normalize_code(row.get("code"))
                fields = _check_fields({k: row[k] for k in _EDITABLE if k in row})
                cur = self.db.query(Currency).filter(Currency.code == code).first()
                if cur is None:
                    cur = Currency(code=code, name=row.get("name") or code, is_default=False)
                    self.db.add(cur)
                for k, v in fields.items():
                    setattr(cur, k, v)
                self.db.flush()
                if row.get("is_default"):
                    self._make_default(cur)
                out.append(cur)
            if out and self.get_default() is None:
                self._make_default(out[0])
        log.info("Imported %d currencies", len(out))
        return out

    def convert(self, amount: Any, from_code: str, to_code: str) -> Decimal:
        """Convert through the base currency; rates are units per 1 base unit."""
        amount = to_decimal(amount)
        source = self.get(from_code)
        target = self.get(to_code)
        if source.code == target.code:
            return quantize(amount, target.precision)
        base_amount = amount / to_decimal(source.exchange_rate)
        return quantize(base_amount * to_decimal(target.exchange_rate), target.precision)
