# -----------------------------------------------------------
# ledger/api/orders_routes.py
# Admin order endpoints (/api/orders)
# -----------------------------------------------------------
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, require_admin_key
from ledger.schemas import OrderCreate, OrderOut, OrderUpdate, ReasonIn
from ledger.services.order_service import OrderService

log = logging.getLogger("ledger.orders_routes")

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(require_admin_key)])


def _service(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> OrderService:
    return OrderService(db, config)


@router.post("", response_model=OrderOut)
def create_order(payload: OrderCreate, svc: OrderService = Depends(_service)):
    return svc.create(
        payload.owner_id,
        [item.model_dump() for item in payload.line_items],
        currency=payload.currency,
        billing_profile_id=payload.billing_profile_id,
        tax_rate=payload.tax_rate,
        notes=payload.notes,
        meta=payload.meta,
    )


@router.get("", response_model=List[OrderOut])
def list_orders(owner_id: Optional[int] = None, status: Optional[str] = None,
                limit: int = 100, offset: int = 0, svc: OrderService = Depends(_service)):
    return svc.list_orders(owner_id=owner_id, status=status, limit=limit, offset=offset)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, svc: OrderService = Depends(_service)):
    return svc.get(order_id)


@router.patch("/{order_id}", response_model=OrderOut)
def update_order(order_id: int, payload: OrderUpdate, svc: OrderService = Depends(_service)):
    items = [item.model_dump() for item in payload.line_items] if payload.line_items is not None else None
    return svc.update(order_id, line_items=items, tax_rate=payload.tax_rate, notes=payload.notes)


@router.post("/{order_id}/submit", response_model=OrderOut)
def submit_order(order_id: int, svc: OrderService = Depends(_service)):
    return svc.submit(order_id)


@router.post("/{order_id}/confirm", response_model=OrderOut)
def confirm_order(order_id: int, svc: OrderService = Depends(_service)):
    return svc.confirm(order_id)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, payload: Optional[ReasonIn] = None, svc: OrderService = Depends(_service)):
    return svc.cancel(order_id, reason=payload.reason if payload else None)


@router.post("/{order_id}/refunded", response_model=OrderOut)
def mark_order_refunded(order_id: int, svc: OrderService = Depends(_service)):
    return svc.mark_refunded(order_id)


@router.delete("/{order_id}")
def delete_order(order_id: int, svc: OrderService = Depends(_service)):
    svc.delete(order_id)
    return {"ok": True}
