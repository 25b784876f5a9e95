# -----------------------------------------------------------
# ledger/api/invoice_routes.py
# Admin invoice + ledger endpoints (/api/invoices, /api/transactions)
# -----------------------------------------------------------
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, get_registry, require_admin_key
from ledger.providers import ProviderRegistry
from ledger.schemas import (
    AuditEntryOut, BalanceOut, CheckoutIn, CheckoutOut, InvoiceCreate, InvoiceOut, PaymentIn,
    ProviderRefundIn, ReasonIn, RefundIn, SendIn, TransactionOut,
)
from ledger.services.invoice_service import InvoiceService
from ledger.services.transaction_service import TransactionService

log = logging.getLogger("ledger.invoice_routes")

router = APIRouter(tags=["invoices"], dependencies=[Depends(require_admin_key)])


def _invoices(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> InvoiceService:
    return InvoiceService(db, config)


def _transactions(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> TransactionService:
    return TransactionService(db, config)


# ---------------------------------------------------------
# INVOICES
# ---------------------------------------------------------
@router.post("/invoices", response_model=InvoiceOut)
def create_invoice(payload: InvoiceCreate, svc: InvoiceService = Depends(_invoices)):
    return svc.create_from_order(payload.order_id, due_days=payload.due_days, notes=payload.notes)


@router.get("/invoices", response_model=List[InvoiceOut])
def list_invoices(owner_id: Optional[int] = None, status: Optional[str] = None,
                  limit: int = 100, offset: int = 0, svc: InvoiceService = Depends(_invoices)):
    return svc.list_invoices(owner_id=owner_id, status=status, limit=limit, offset=offset)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(invoice_id: int, svc: InvoiceService = Depends(_invoices)):
    return svc.get(invoice_id)


@router.get("/invoices/{invoice_id}/balance", response_model=BalanceOut)
def invoice_balance(invoice_id: int, svc: InvoiceService = Depends(_invoices)):
    invoice = svc.get(invoice_id)
    return BalanceOut(
        invoice_id=invoice.id,
        total=invoice.total,
        net_paid=svc.net_paid(invoice),
        remaining=svc.remaining_amount(invoice),
        status=invoice.status,
        receipt_status=svc.receipt_status(invoice),
        fully_refunded=svc.fully_refunded(invoice),
    )


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceOut)
def send_invoice(invoice_id: int, payload: Optional[SendIn] = None, svc: InvoiceService = Depends(_invoices)):
    return svc.send(invoice_id, recipient=payload.recipient if payload else None)


@router.get("/invoices/{invoice_id}/history", response_model=List[AuditEntryOut])
def invoice_history(invoice_id: int, svc: InvoiceService = Depends(_invoices)):
    svc.get(invoice_id)
    return svc.send_history(invoice_id)


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceOut)
def void_invoice(invoice_id: int, payload: Optional[ReasonIn] = None, svc: InvoiceService = Depends(_invoices)):
    return svc.void(invoice_id, reason=payload.reason if payload else None)


@router.post("/invoices/{invoice_id}/mark-paid", response_model=InvoiceOut)
def mark_invoice_paid(invoice_id: int, svc: InvoiceService = Depends(_invoices)):
    return svc.mark_paid(invoice_id)


@router.post("/invoices/{invoice_id}/checkout", response_model=CheckoutOut)
def open_checkout(invoice_id: int, payload: CheckoutIn, svc: InvoiceService = Depends(_invoices),
                  registry: ProviderRegistry = Depends(get_registry)):
    return svc.checkout_session(
        invoice_id,
        payload.provider,
        payload.success_url,
        payload.cancel_url,
        registry=registry,
        customer_email=payload.customer_email,
        save_payment_method=payload.save_payment_method,
    )


@router.post("/checkout/{provider}/{session_id}/capture")
def capture_checkout(provider: str, session_id: str,
                     registry: ProviderRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Providers whose checkout stops at payer approval (paypal); the payment arrives by webhook."""
    impl = registry.get(provider)
    impl.require_available()
    return impl.capture_checkout(session_id)


# ---------------------------------------------------------
# RECEIPTS
# ---------------------------------------------------------
@router.post("/invoices/{invoice_id}/receipt")
def generate_receipt(invoice_id: int, svc: InvoiceService = Depends(_invoices)) -> Dict[str, Any]:
    svc.generate_receipt(invoice_id)
    return svc.receipt(invoice_id)


@router.get("/invoices/{invoice_id}/receipt")
def get_receipt(invoice_id: int, svc: InvoiceService = Depends(_invoices)) -> Dict[str, Any]:
    return svc.receipt(invoice_id)


@router.post("/invoices/{invoice_id}/receipt/send", response_model=InvoiceOut)
def send_receipt(invoice_id: int, payload: Optional[SendIn] = None, svc: InvoiceService = Depends(_invoices)):
    return svc.send_receipt(invoice_id, recipient=payload.recipient if payload else None)


# ---------------------------------------------------------
# LEDGER
# ---------------------------------------------------------
@router.get("/invoices/{invoice_id}/transactions", response_model=List[TransactionOut])
def list_transactions(invoice_id: int, svc: TransactionService = Depends(_transactions)):
    return svc.list_transactions(invoice_id)


@router.post("/invoices/{invoice_id}/payments", response_model=TransactionOut)
def record_payment(invoice_id: int, payload: PaymentIn, svc: TransactionService = Depends(_transactions)):
    return svc.record_payment(invoice_id, payload.amount, payment_method=payload.payment_method,
                              description=payload.description)


@router.post("/invoices/{invoice_id}/refunds", response_model=TransactionOut)
def record_refund(invoice_id: int, payload: RefundIn, svc: TransactionService = Depends(_transactions)):
    return svc.record_refund(invoice_id, payload.amount, payload.reason, payment_method=payload.payment_method)


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, svc: TransactionService = Depends(_transactions)):
    return svc.get(transaction_id)


@router.post("/transactions/{transaction_id}/refund", response_model=TransactionOut)
def refund_via_provider(transaction_id: int, payload: ProviderRefundIn,
                        svc: TransactionService = Depends(_transactions),
                        registry: ProviderRegistry = Depends(get_registry)):
    return svc.refund_via_provider(transaction_id, amount=payload.amount, reason=payload.reason, registry=registry)


@router.post("/transactions/{transaction_id}/credit-note", response_model=TransactionOut)
def send_credit_note(transaction_id: int, payload: Optional[SendIn] = None,
                     svc: InvoiceService = Depends(_invoices)):
    return svc.send_credit_note(transaction_id, recipient=payload.recipient if payload else None)


@router.post("/transactions/{transaction_id}/confirmation", response_model=TransactionOut)
def send_payment_confirmation(transaction_id: int, payload: Optional[SendIn] = None,
                              svc: InvoiceService = Depends(_invoices)):
    return svc.send_payment_confirmation(transaction_id, recipient=payload.recipient if payload else None)
