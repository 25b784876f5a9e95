# -----------------------------------------------------------
# ledger/services/order_service.py
# Orders: line items, totals, status machine
# -----------------------------------------------------------
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ledger.errors import StateError, ValidationError, invalid_transition
from ledger.models import Currency, Order, _now
from ledger.money import ZERO, quantize, to_decimal
from ledger.services.base import BaseService, _id
from ledger.services.billing_profile_service import BillingProfileService, to_snapshot

log = logging.getLogger("ledger.order_service")

ORDER_TRANSITIONS = {
    "draft": ("pending", "confirmed", "cancelled"),
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("paid", "cancelled", "refunded"),
    "paid": ("refunded",),
    "cancelled": (),
    "refunded": (),
}
FINAL_STATUSES = ("paid", "cancelled", "refunded")

_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "paid": "paid_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}


def build_line_items(items: Iterable[Dict[str, Any]], places: int = 2) -> List[Dict[str, Any]]:
    """
    Validate line items and compute each line total (quantity x unit_price).
    Amounts are stored as strings so JSON never holds floats.
    """
    out = []
    for idx, item in enumerate(items or [], start=1):
        if not isinstance(item, dict):
            raise ValidationError("invalid_line_item", f"item {idx}: must be a mapping")
        name = (item.get("name") or "").strip()
        if not name:
            raise ValidationError("invalid_line_item", f"item {idx}: missing name")
        quantity = to_decimal(item.get("quantity", 1))
        unit_price = to_decimal(item.get("unit_price", 0))
        if quantity <= 0:
            raise ValidationError("invalid_line_item", f"item {idx}: quantity must be > 0")
        if unit_price < 0:
            raise ValidationError("invalid_line_item", f"item {idx}: unit_price must be >= 0")
        if unit_price != quantize(unit_price, places):
            raise ValidationError(
                "invalid_line_item", f"item {idx}: unit_price {unit_price} has more than {places} decimal places"
            )
        line = {
            "name": name,
            "quantity": str(quantity),
            "unit_price": str(quantize(unit_price, places)),
            "total": str(quantize(quantity * unit_price, places)),
        }
        if item.get("description"):
            line["description"] = item["description"]
        out.append(line)
    return out


def compute_totals(line_items: List[Dict[str, Any]], tax_rate: Any = ZERO, places: int = 2) -> Dict[str, Decimal]:
    """subtotal = sum of line totals, tax = subtotal x rate (half-up), total = subtotal + tax."""
    rate = to_decimal(tax_rate)
    if rate < 0:
        raise ValidationError("invalid_amount", "tax rate must be >= 0")
    subtotal = sum((to_decimal(li["total"]) for li in line_items), ZERO)
    subtotal = quantize(subtotal, places)
    tax_amount = quantize(subtotal * rate, places)
    return {
        "subtotal": subtotal,
        "tax_rate": rate,
        "tax_amount": tax_amount,
        "total": subtotal + tax_amount,
    }


class OrderService(BaseService):
    def __init__(self, db, config=None, autocommit=True, sequences=None, tax_lookup=None):
        super().__init__(db, config, autocommit, sequences)
        self.tax_lookup = tax_lookup

    # -------------------------------------------------
    # READ
    # -------------------------------------------------
    def get(self, order_id: int) -> Order:
        return self._get(Order, order_id, "order")

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.order_number == order_number).first()

    def list_orders(self, owner_id: Optional[int] = None, status: Optional[str] = None,
                    limit: int = 100, offset: int = 0) -> List[Order]:
        q = self.db.query(Order)
        if owner_id is not None:
            q = q.filter(Order.owner_id == owner_id)
        if status:
            q = q.filter(Order.status == status)
        return q.order_by(Order.id.desc()).limit(limit).offset(offset).all()

    # -------------------------------------------------
    # CREATE / UPDATE
    # -------------------------------------------------
    def _currency(self, code: Optional[str]) -> Currency:
        code = (code or self.config.default_currency or "").upper()
        cur = self.db.query(Currency).filter(Currency.code == code).first()
        if cur is None or not cur.enabled:
            raise ValidationError("invalid_currency", f"currency {code} is not enabled")
        return cur

    def _resolve_tax_rate(self, tax_rate, profile) -> Decimal:
        if tax_rate is not None:
            return to_decimal(tax_rate)
        if not self.config.tax_enabled:
            return ZERO
        if profile is not None:
            profiles = self.child(BillingProfileService, tax_lookup=self.tax_lookup)
            rate = profiles.tax_rate_for(profile)
            if rate is not None:
                return to_decimal(rate)
        return to_decimal(self.config.default_tax_rate)

    def create(
        self,
        owner_id: int,
        line_items: Iterable[Dict[str, Any]],
        currency: Optional[str] = None,
        billing_profile_id: Optional[int] = None,
        tax_rate: Any = None,
        notes: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        billing_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Order:
        with self.atomic(f"create_order owner={owner_id}"):
            cur = self._currency(currency)
            items = build_line_items(line_items, cur.precision)

            profiles = self.child(BillingProfileService, tax_lookup=self.tax_lookup)
            profile = None
            if billing_profile_id is not None:
                profile = profiles.get(billing_profile_id)
                if profile.owner_id != owner_id:
                    raise ValidationError("invalid_profile", "billing profile belongs to another owner")
            elif billing_snapshot is None:
                profile = profiles.get_default(owner_id)

            totals = compute_totals(items, self._resolve_tax_rate(tax_rate, profile), cur.precision)
            order = Order(
                order_number=self.sequences.next(self.config.order_prefix),
                owner_id=owner_id,
                billing_profile_id=profile.id if profile is not None else None,
                currency=cur.code,
                status="draft",
                line_items=items,
                billing_snapshot=to_snapshot(profile) if profile is not None else (billing_snapshot or {}),
                notes=notes,
                meta=meta or {},
                **totals,
            )
            self.db.add(order)
        log.info("Order %s created: total=%s %s", order.order_number, order.total, order.currency)
        return order

    def update(self, order, line_items=None, tax_rate=None, notes=None) -> Order:
        with self.atomic(f"update_order {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if not order.editable:
                raise StateError("invalid_transition", f"order {order.order_number} is {order.status} and cannot be edited")
            places = self.currency_places(order.currency)
            items = build_line_items(line_items, places) if line_items is not None else order.line_items
            rate = to_decimal(tax_rate) if tax_rate is not None else to_decimal(order.tax_rate)
            totals = compute_totals(items, rate, places)
            order.line_items = items
            for k, v in totals.items():
                setattr(order, k, v)
            if notes is not None:
                order.notes = notes
        log.info("Order %s updated: total=%s", order.order_number, order.total)
        return order

    # -------------------------------------------------
    # STATUS MACHINE
    # -------------------------------------------------
    def _transition(self, order: Order, target: str) -> Order:
        if target not in ORDER_TRANSITIONS.get(order.status, ()):
            raise invalid_transition("order", order.status, target)
        order.status = target
        stamp = _TIMESTAMPS.get(target)
        if stamp:
            setattr(order, stamp, _now())
        log.info("Order %s -> %s", order.order_number, target)
        return order

    def submit(self, order) -> Order:
        with self.atomic(f"submit_order {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status != "draft":
                raise invalid_transition("order", order.status, "pending")
            self._transition(order, "pending")
        return order

    def confirm(self, order) -> Order:
        with self.atomic(f"confirm_order {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status not in ("draft", "pending"):
                raise invalid_transition("order", order.status, "confirmed")
            self._transition(order, "confirmed")
        return order

    def mark_paid(self, order) -> Order:
        with self.atomic(f"mark_order_paid {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            self._transition(order, "paid")
        return order

    def cancel(self, order, reason: Optional[str] = None) -> Order:
        with self.atomic(f"cancel_order {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status in FINAL_STATUSES:
                raise StateError("already_finalized", f"order {order.order_number} is already {order.status}")
            self._transition(order, "cancelled")
            if reason:
                note = f"Cancelled: {reason}"
                order.internal_notes = f"{order.internal_notes}\n{note}" if order.internal_notes else note
        return order

    def mark_refunded(self, order) -> Order:
        with self.atomic(f"mark_order_refunded {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status != "paid":
                raise invalid_transition("order", order.status, "refunded")
            self._transition(order, "refunded")
        return order

    def delete(self, order) -> None:
        with self.atomic(f"delete_order {_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status != "draft":
                raise StateError("invalid_transition", "only draft orders can be deleted")
            self.db.delete(order)
        log.info("Order %s deleted", order.order_number)
