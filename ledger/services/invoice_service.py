# -----------------------------------------------------------
# ledger/services/invoice_service.py
# Invoices: generation from orders, delivery, void, receipts
# -----------------------------------------------------------
import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ledger.collaborators import LoggingMailSender
from ledger.errors import NotFound, ProviderError, StateError, ValidationError, invalid_transition
from ledger.models import AuditEntry, Invoice, Order, Transaction, _now
from ledger.money import to_decimal
from ledger.services import balances
from ledger.services.base import BaseService, _id

log = logging.getLogger("ledger.invoice_service")


class InvoiceService(BaseService):
    def __init__(self, db, config=None, autocommit=True, sequences=None, mailer=None):
        super().__init__(db, config, autocommit, sequences)
        self.mailer = mailer or LoggingMailSender()

    # -------------------------------------------------
    # READ
    # -------------------------------------------------
    def get(self, invoice_id: int) -> Invoice:
        return self._get(Invoice, invoice_id, "invoice")

    def get_by_number(self, invoice_number: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.invoice_number == invoice_number).first()

    def list_invoices(self, owner_id: Optional[int] = None, status: Optional[str] = None,
                      limit: int = 100, offset: int = 0) -> List[Invoice]:
        q = self.db.query(Invoice)
        if owner_id is not None:
            q = q.filter(Invoice.owner_id == owner_id)
        if status:
            q = q.filter(Invoice.status == status)
        return q.order_by(Invoice.id.desc()).limit(limit).offset(offset).all()

    def net_paid(self, invoice):
        return balances.net_paid(self.db, self.get(_id(invoice)))

    def remaining_amount(self, invoice):
        return balances.remaining_amount(self.db, self.get(_id(invoice)))

    def fully_refunded(self, invoice) -> bool:
        return balances.fully_refunded(self.db, self.get(_id(invoice)))

    def receipt_status(self, invoice) -> str:
        return balances.receipt_status(self.db, self.get(_id(invoice)))

    def send_history(self, invoice) -> List[AuditEntry]:
        return (
            self.db.query(AuditEntry)
            .filter(AuditEntry.invoice_id == _id(invoice))
            .order_by(AuditEntry.id)
            .all()
        )

    def sent_to(self, invoice, recipient: str) -> bool:
        """Has this invoice been sent to `recipient`?"""
        recipient = (recipient or "").strip().lower()
        return any(
            e.kind == "invoice_sent" and (e.recipient or "").lower() == recipient
            for e in self.send_history(invoice)
        )

    # -------------------------------------------------
    # GENERATION
    # -------------------------------------------------
    def create_from_order(
        self,
        order,
        due_days: Optional[int] = None,
        notes: Optional[str] = None,
        subscription_id: Optional[int] = None,
        period_start: Optional[datetime] = None,
    ) -> Invoice:
        with self.atomic(f"create_invoice order={_id(order)}"):
            order = self._lock(Order, _id(order), "order")
            if order.status != "confirmed":
                raise StateError("order_not_confirmed", f"order {order.order_number} is {order.status}")
            if self.db.query(Invoice.id).filter(Invoice.order_id == order.id).first() is not None:
                raise StateError("invoice_exists", f"order {order.order_number} already has an invoice")

            days = self.config.invoice_due_days if due_days is None else due_days
            invoice = Invoice(
                invoice_number=self.sequences.next(self.config.invoice_prefix),
                order_id=order.id,
                owner_id=order.owner_id,
                subscription_id=subscription_id,
                period_start=period_start,
                status="draft",
                currency=order.currency,
                subtotal=order.subtotal,
                tax_rate=order.tax_rate,
                tax_amount=order.tax_amount,
                total=order.total,
                paid_amount=0,
                due_date=_now().date() + timedelta(days=days),
                billing_details=copy.deepcopy(order.billing_snapshot or {}),
                line_items=copy.deepcopy(order.line_items or []),
                payment_terms=self.config.payment_terms,
                bank_details=dict(self.config.bank_details or {}),
                notes=notes if notes is not None else order.notes,
            )
            self.db.add(invoice)
            self.db.flush()
        log.info("Invoice %s generated from order %s: total=%s %s",
                 invoice.invoice_number, order.order_number, invoice.total, invoice.currency)
        return invoice

    def create_for_subscription(self, subscription, plan, period_start: datetime,
                                period_end: Optional[datetime] = None) -> Invoice:
        """
        Renewal invoice for one billing period, produced through a confirmed order.
        At most one exists per (subscription, period_start).
        """
        from ledger.services.order_service import OrderService

        with self.atomic(f"create_renewal_invoice subscription={subscription.id}"):
            existing = (
                self.db.query(Invoice)
                .filter(Invoice.subscription_id == subscription.id, Invoice.period_start == period_start)
                .first()
            )
            if existing is not None:
                return existing

            description = f"{period_start.date().isoformat()}"
            if period_end is not None:
                description += f" - {period_end.date().isoformat()}"
            orders = self.child(OrderService)
            order = orders.create(
                subscription.owner_id,
                [{
                    "name": f"{plan.name} subscription",
                    "description": description,
                    "quantity": 1,
                    "unit_price": plan.price,
                }],
                currency=plan.currency,
                billing_profile_id=subscription.billing_profile_id,
                meta={"subscription_id": subscription.id},
            )
            orders.confirm(order)
            invoice = self.child(InvoiceService, mailer=self.mailer).create_from_order(
                order,
                due_days=0,
                notes=f"Subscription renewal: {plan.name}",
                subscription_id=subscription.id,
                period_start=period_start,
            )
            invoice.status = "sent"
            invoice.sent_at = _now()
        return invoice

    # -------------------------------------------------
    # DELIVERY
    # -------------------------------------------------
    def _recipient(self, invoice: Invoice, recipient: Optional[str]) -> str:
        recipient = (recipient or (invoice.billing_details or {}).get("email") or "").strip()
        if not recipient:
            raise ValidationError("no_recipient_email", f"invoice {invoice.invoice_number} has no recipient email")
        return recipient

    def _deliver(self, template: str, recipient: str, context: Dict[str, Any]) -> None:
        try:
            self.mailer.send(template, recipient, context)
        except Exception as e:
            log.exception("Delivery of %s to %s failed", template, recipient)
            raise ProviderError("delivery_failed", f"could not send {template} to {recipient}: {e}")

    def _audit(self, invoice: Invoice, kind: str, recipient: Optional[str] = None,
               transaction: Optional[Transaction] = None, note: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(
            invoice_id=invoice.id,
            transaction_id=transaction.id if transaction is not None else None,
            kind=kind,
            recipient=recipient,
            note=note,
            created_at=_now(),
        )
        self.db.add(entry)
        return entry

    def _context(self, invoice: Invoice) -> Dict[str, Any]:
        return {
            "invoice_number": invoice.invoice_number,
            "status": invoice.status,
            "total": str(invoice.total),
            "currency": invoice.currency,
            "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
            "remaining": str(balances.remaining_amount(self.db, invoice)),
            "billing_details": invoice.billing_details or {},
            "line_items": invoice.line_items or [],
        }

    def send(self, invoice, recipient: Optional[str] = None) -> Invoice:
        """
        Deliver the invoice. First send moves draft -> sent; later sends only
        append to the history.
        """
        with self.atomic(f"send_invoice {_id(invoice)}"):
            invoice = self._lock(Invoice, _id(invoice), "invoice")
            if invoice.status == "void":
                raise invalid_transition("invoice", "void", "sent")
            recipient = self._recipient(invoice, recipient)
            if invoice.status == "draft":
                invoice.status = "sent"
                invoice.sent_at = _now()
            self._deliver("invoice", recipient, self._context(invoice))
            self._audit(invoice, "invoice_sent", recipient)
        log.info("Invoice %s sent to %s", invoice.invoice_number, recipient)
        return invoice

    def send_receipt(self, invoice, recipient: Optional[str] = None) -> Invoice:
        with self.atomic(f"send_receipt {_id(invoice)}"):
            invoice = self._lock(Invoice, _id(invoice), "invoice")
            recipient = self._recipient(invoice, recipient)
            if not invoice.receipt_number:
                self._issue_receipt(invoice)
            context = self._context(invoice)
            context["receipt_number"] = invoice.receipt_number
            context["receipt"] = invoice.receipt_data or {}
            self._deliver("receipt", recipient, context)
            self._audit(invoice, "receipt_sent", recipient)
        log.info("Receipt %s sent to %s", invoice.receipt_number, recipient)
        return invoice

    def _send_for_transaction(self, transaction, kind: str, template: str, recipient: Optional[str],
                              want_refund: bool) -> Transaction:
        with self.atomic(f"{template} transaction={_id(transaction)}"):
            txn = self._get(Transaction, _id(transaction), "transaction")
            if want_refund and not txn.is_refund:
                raise ValidationError("not_a_refund", f"transaction {txn.transaction_number} is not a refund")
            if not want_refund and not txn.is_payment:
                raise ValidationError("not_a_payment", f"transaction {txn.transaction_number} is not a payment")
            invoice = self._lock(Invoice, txn.invoice_id, "invoice")
            recipient = self._recipient(invoice, recipient)
            context = self._context(invoice)
            context.update({
                "transaction_number": txn.transaction_number,
                "amount": str(abs(to_decimal(txn.amount))),
                "payment_method": txn.payment_method,
                "description": txn.description,
            })
            self._deliver(template, recipient, context)
            self._audit(invoice, kind, recipient, transaction=txn)
        log.info("%s for %s sent to %s", template, txn.transaction_number, recipient)
        return txn

    def send_credit_note(self, transaction, recipient: Optional[str] = None) -> Transaction:
        return self._send_for_transaction(transaction, "credit_note_sent", "credit_note", recipient, True)

    def send_payment_confirmation(self, transaction, recipient: Optional[str] = None) -> Transaction:
        return self._send_for_transaction(
            transaction, "payment_confirmation_sent", "payment_confirmation", recipient, False
        )

    # -------------------------------------------------
    # STATUS
    # -------------------------------------------------
    def void(self, invoice, reason: Optional[str] = None) -> Invoice:
        with self.atomic(f"void_invoice {_id(invoice)}"):
            invoice = self._lock(Invoice, _id(invoice), "invoice")
            if invoice.status == "void":
                raise invalid_transition("invoice", "void", "void")
            has_transactions = (
                self.db.query(Transaction.id).filter(Transaction.invoice_id == invoice.id).first() is not None
            )
            if invoice.status == "paid" and has_transactions:
                raise StateError("cannot_void_paid", f"invoice {invoice.invoice_number} is paid")
            invoice.status = "void"
            invoice.voided_at = _now()
            if reason:
                note = f"Voided: {reason}"
                invoice.notes = f"{invoice.notes}\n{note}" if invoice.notes else note
            self._audit(invoice, "voided", note=reason)
        log.info("Invoice %s voided", invoice.invoice_number)
        return invoice

    def mark_overdue(self, now: Optional[datetime] = None) -> List[Invoice]:
        """sent invoices whose due date has passed -> overdue. Safe to re-run."""
        today = (now or _now()).date()
        with self.atomic("mark_overdue_invoices"):
            rows = (
                self.db.query(Invoice)
                .filter(Invoice.status == "sent", Invoice.due_date.isnot(None), Invoice.due_date < today)
                .with_for_update()
                .all()
            )
            for invoice in rows:
                invoice.status = "overdue"
        if rows:
            log.info("Marked %d invoices overdue", len(rows))
        return rows

    def mark_paid(self, invoice, payment_method: str = "bank", description: Optional[str] = None) -> Invoice:
        """Record a payment for whatever is still open."""
        from ledger.services.transaction_service import TransactionService

        inv = self.get(_id(invoice))
        remaining = balances.remaining_amount(self.db, inv)
        if inv.status == "void" or remaining <= 0:
            raise StateError("not_payable", f"invoice {inv.invoice_number} has nothing left to pay")
        txns = TransactionService(self.db, self.config, autocommit=self.autocommit, sequences=self.sequences)
        txns.record_payment(inv, remaining, payment_method=payment_method,
                            description=description or "Marked as paid")
        return self.get(inv.id)

    def checkout_session(self, invoice, provider_name: str, success_url: str, cancel_url: str,
                         registry=None, customer_email: Optional[str] = None,
                         save_payment_method: bool = False) -> Dict[str, Any]:
        """Hosted checkout for the open balance; the payment itself arrives by webhook."""
        from ledger.providers import ProviderRegistry

        inv = self.get(_id(invoice))
        remaining = balances.remaining_amount(self.db, inv)
        if inv.status in ("void", "paid") or remaining <= 0:
            raise StateError("not_payable", f"invoice {inv.invoice_number} has nothing left to pay")

        provider = (registry or ProviderRegistry(self.config)).get(provider_name)
        provider.require_available()
        session = provider.create_checkout_session(
            inv,
            success_url,
            cancel_url,
            amount=remaining,
            places=self.currency_places(inv.currency),
            customer_email=customer_email or (inv.billing_details or {}).get("email"),
            save_payment_method=save_payment_method,
        )
        log.info("Checkout %s opened for invoice %s via %s", session.get("id"), inv.invoice_number, provider.name)
        return session

    # -------------------------------------------------
    # RECEIPTS
    # -------------------------------------------------
    def _issue_receipt(self, invoice: Invoice) -> None:
        if invoice.status != "paid":
            raise StateError("invoice_not_paid", f"invoice {invoice.invoice_number} is {invoice.status}")
        if balances.remaining_amount(self.db, invoice) != 0:
            raise StateError("invoice_not_paid", f"invoice {invoice.invoice_number} still has an open balance")
        now = _now()
        invoice.receipt_number = self.sequences.next(self.config.receipt_prefix)
        invoice.receipt_generated_at = now
        invoice.receipt_data = {
            "invoice_number": invoice.invoice_number,
            "total": str(invoice.total),
            "paid_amount": str(balances.net_paid(self.db, invoice)),
            "currency": invoice.currency,
            "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
            "generated_at": now.isoformat(),
            "billing_details": invoice.billing_details or {},
            "status": balances.receipt_status(self.db, invoice),
        }
        log.info("Receipt %s generated for invoice %s", invoice.receipt_number, invoice.invoice_number)

    def generate_receipt(self, invoice) -> Invoice:
        """Assign a receipt number once; later calls return the invoice unchanged."""
        with self.atomic(f"generate_receipt {_id(invoice)}"):
            invoice = self._lock(Invoice, _id(invoice), "invoice")
            if not invoice.receipt_number:
                self._issue_receipt(invoice)
        return invoice

    def receipt(self, invoice) -> Dict[str, Any]:
        invoice = self.get(_id(invoice))
        if not invoice.receipt_number:
            raise NotFound("not_found", f"invoice {invoice.invoice_number} has no receipt")
        out = dict(invoice.receipt_data or {})
        out["receipt_number"] = invoice.receipt_number
        out["generated_at"] = invoice.receipt_generated_at.isoformat() if invoice.receipt_generated_at else None
        out["status"] = balances.receipt_status(self.db, invoice)
        return out
