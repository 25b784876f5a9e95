# ledger/api/currency_routes.py
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, require_admin_key
from ledger.providers import available_payment_methods
from ledger.schemas import ConvertOut, CurrencyIn, CurrencyOut, CurrencyUpdate
from ledger.services.currency_service import CurrencyService

router = APIRouter(prefix="/currencies", tags=["currencies"], dependencies=[Depends(require_admin_key)])


def _service(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> CurrencyService:
    return CurrencyService(db, config)


@router.get("", response_model=List[CurrencyOut])
def list_currencies(enabled_only: bool = False, svc: CurrencyService = Depends(_service)):
    return svc.list_currencies(enabled_only=enabled_only)


@router.post("", response_model=CurrencyOut)
def create_currency(payload: CurrencyIn, svc: CurrencyService = Depends(_service)):
    return svc.create(**payload.model_dump())


@router.post("/import", response_model=List[CurrencyOut])
def import_currencies(payload: List[CurrencyIn], svc: CurrencyService = Depends(_service)):
    return svc.import_currencies([row.model_dump() for row in payload])


@router.get("/convert", response_model=ConvertOut)
def convert(amount: Decimal, from_currency: str, to_currency: str, svc: CurrencyService = Depends(_service)):
    return ConvertOut(
        amount=amount,
        from_currency=from_currency.upper(),
        to_currency=to_currency.upper(),
        converted=svc.convert(amount, from_currency, to_currency),
    )


@router.get("/payment-methods")
def payment_methods(config: BillingConfig = Depends(get_config)):
    return {"payment_methods": available_payment_methods(config)}


@router.get("/{code}", response_model=CurrencyOut)
def get_currency(code: str, svc: CurrencyService = Depends(_service)):
    return svc.get(code)


@router.patch("/{code}", response_model=CurrencyOut)
def update_currency(code: str, payload: CurrencyUpdate, svc: CurrencyService = Depends(_service)):
    return svc.update(code, **payload.model_dump(exclude_none=True))


@router.post("/{code}/enable", response_model=CurrencyOut)
def enable_currency(code: str, svc: CurrencyService = Depends(_service)):
    return svc.enable(code)


@router.post("/{code}/disable", response_model=CurrencyOut)
def disable_currency(code: str, svc: CurrencyService = Depends(_service)):
    return svc.disable(code)


@router.post("/{code}/default", response_model=CurrencyOut)
def set_default_currency(code: str, svc: CurrencyService = Depends(_service)):
    return svc.set_default(code)


@router.delete("/{code}")
def delete_currency(code: str, svc: CurrencyService = Depends(_service)):
    svc.delete(code)
    return {"ok": True}
