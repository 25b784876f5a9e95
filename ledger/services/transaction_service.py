# -----------------------------------------------------------
# ledger/services/transaction_service.py
# Payments and refunds against invoices (signed amounts)
# -----------------------------------------------------------
import logging
from typing import Any, Dict, List, Optional

from ledger.errors import StateError, ValidationError
from ledger.models import Invoice, Order, Transaction, _now
from ledger.money import ZERO, quantize, to_decimal
from ledger.services.balances import fully_refunded, net_paid, receipt_status, remaining_amount
from ledger.services.base import BaseService, _id

log = logging.getLogger("ledger.transaction_service")


class TransactionService(BaseService):

    # -------------------------------------------------
    # READ
    # -------------------------------------------------
    def get(self, transaction_id: int) -> Transaction:
        return self._get(Transaction, transaction_id, "transaction")

    def list_transactions(self, invoice) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.invoice_id == _id(invoice))
            .order_by(Transaction.id)
            .all()
        )

    def find_by_provider_id(self, provider: str, provider_transaction_id: str) -> Optional[Transaction]:
        if not provider or not provider_transaction_id:
            return None
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.provider == provider,
                Transaction.provider_transaction_id == provider_transaction_id,
            )
            .first()
        )

    def fully_refunded(self, invoice) -> bool:
        return fully_refunded(self.db, self._get(Invoice, _id(invoice), "invoice"))

    # -------------------------------------------------
    # HELPERS
    # -------------------------------------------------
    def _exact_amount(self, amount: Any, currency: str):
        amount = to_decimal(amount)
        places = self.currency_places(currency)
        if amount != quantize(amount, places):
            raise ValidationError("invalid_amount", f"amount {amount} has more than {places} decimal places")
        return amount

    def _append(self, invoice: Invoice, amount, payment_method: str, description: Optional[str],
                provider: Optional[str], provider_transaction_id: Optional[str],
                provider_data: Optional[Dict[str, Any]], refunded_transaction_id: Optional[int] = None) -> Transaction:
        txn = Transaction(
            transaction_number=self.sequences.next(self.config.transaction_prefix),
            invoice_id=invoice.id,
            amount=amount,
            currency=invoice.currency,
            payment_method=payment_method or "bank",
            description=description,
            provider=provider,
            provider_transaction_id=provider_transaction_id,
            refunded_transaction_id=refunded_transaction_id,
            provider_data=provider_data,
            created_at=_now(),
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    # -------------------------------------------------
    # PAYMENTS
    # -------------------------------------------------
    def record_payment(
        self,
        invoice,
        amount: Any,
        payment_method: str = "bank",
        description: Optional[str] = None,
        provider: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
        provider_data: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Append a positive transaction. The invoice row is locked for the whole
        check-and-write; reaching remaining == 0 marks the invoice (and a confirmed
        source order) paid in the same unit of work.
        """
        amount = to_decimal(amount)

        with self.atomic(f"record_payment invoice={_id(invoice)}"):
            existing = self.find_by_provider_id(provider, provider_transaction_id)
            if existing is not None:
                log.info("Payment %s/%s already recorded as %s", provider, provider_transaction_id,
                         existing.transaction_number)
                return existing
            if amount <= 0:
                raise ValidationError("invalid_amount", "payment amount must be greater than zero")

            invoice = self._lock(Invoice, _id(invoice), "invoice")
            amount = self._exact_amount(amount, invoice.currency)
            if invoice.status == "void":
                raise StateError("not_payable", f"invoice {invoice.invoice_number} is void")
            remaining = remaining_amount(self.db, invoice)
            if remaining <= 0:
                raise StateError("not_payable", f"invoice {invoice.invoice_number} has nothing left to pay")
            if amount > remaining:
                raise ValidationError(
                    "exceeds_remaining",
                    f"payment {amount} exceeds remaining {remaining}",
                    remaining=remaining,
                )

            txn = self._append(invoice, amount, payment_method, description or "Payment",
                               provider, provider_transaction_id, provider_data)
            invoice.paid_amount = net_paid(self.db, invoice)

            if remaining_amount(self.db, invoice) == ZERO and invoice.status != "paid":
                invoice.status = "paid"
                invoice.paid_at = _now()
                self._settle_order(invoice)
                log.info("Invoice %s fully paid", invoice.invoice_number)

        log.info("Payment %s recorded: %s %s on invoice %s via %s",
                 txn.transaction_number, amount, txn.currency, invoice.invoice_number, txn.payment_method)
        return txn

    def _settle_order(self, invoice: Invoice) -> None:
        from ledger.services.order_service import OrderService

        order = self.db.get(Order, invoice.order_id)
        if order is not None and order.status == "confirmed":
            self.child(OrderService).mark_paid(order)

    # -------------------------------------------------
    # REFUNDS
    # -------------------------------------------------
    def record_refund(
        self,
        invoice,
        amount: Any,
        reason: str,
        payment_method: str = "bank",
        provider: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
        refunded_transaction_id: Optional[int] = None,
        provider_data: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Append a negative transaction. Paid invoices stay paid: once reached, paid is
        never reverted; fully_refunded() reports the refund for audit/display.
        """
        amount = abs(to_decimal(amount))
        if amount == 0:
            raise ValidationError("invalid_amount", "refund amount must not be zero")
        if not reason or not str(reason).strip():
            raise ValidationError("reason_required", "a refund needs a reason")

        with self.atomic(f"record_refund invoice={_id(invoice)}"):
            existing = self.find_by_provider_id(provider, provider_transaction_id)
            if existing is not None:
                log.info("Refund %s/%s already recorded as %s", provider, provider_transaction_id,
                         existing.transaction_number)
                return existing

            invoice = self._lock(Invoice, _id(invoice), "invoice")
            amount = self._exact_amount(amount, invoice.currency)
            paid = net_paid(self.db, invoice)
            if paid <= 0:
                raise StateError("not_refundable", f"invoice {invoice.invoice_number} has no net payments")
            if amount > paid:
                raise ValidationError("exceeds_paid_amount", f"refund {amount} exceeds paid amount {paid}", paid=paid)

            txn = self._append(invoice, -amount, payment_method, str(reason).strip(),
                               provider, provider_transaction_id, provider_data,
                               refunded_transaction_id=refunded_transaction_id)
            invoice.paid_amount = paid - amount
            if invoice.receipt_number:
                data = dict(invoice.receipt_data or {})
                data["status"] = receipt_status(self.db, invoice)
                data["paid_amount"] = str(invoice.paid_amount)
                invoice.receipt_data = data

        log.info("Refund %s recorded: %s %s on invoice %s (%s)",
                 txn.transaction_number, amount, txn.currency, invoice.invoice_number, reason)
        return txn

    def refund_via_provider(self, transaction, amount: Any = None, reason: str = "requested_by_customer",
                            registry=None) -> Transaction:
        """
        Refund a provider payment at the provider first (no lock held across the
        network call), then record the negative transaction.
        """
        from ledger.providers import ProviderRegistry

        txn = self.get(_id(transaction))
        if not txn.is_payment or not txn.provider or not txn.provider_transaction_id:
            raise StateError("not_refundable", f"transaction {txn.transaction_number} is not a provider payment")
        if not reason or not str(reason).strip():
            raise ValidationError("reason_required", "a refund needs a reason")

        invoice = self._get(Invoice, txn.invoice_id, "invoice")
        refund_amount = abs(to_decimal(amount)) if amount is not None else to_decimal(txn.amount)
        paid = net_paid(self.db, invoice)
        if paid <= 0:
            raise StateError("not_refundable", f"invoice {invoice.invoice_number} has no net payments")
        if refund_amount > min(paid, to_decimal(txn.amount)):
            raise ValidationError("exceeds_paid_amount", f"refund {refund_amount} exceeds refundable amount")

        registry = registry or ProviderRegistry(self.config)
        provider = registry.get(txn.provider)
        provider.require_available()
        # release the read snapshot before the network call
        if self.autocommit:
            self.db.commit()
        result = provider.create_refund(
            txn.provider_transaction_id,
            refund_amount,
            reason,
            currency=invoice.currency,
            places=self.currency_places(invoice.currency),
        )
        return self.record_refund(
            invoice,
            refund_amount,
            reason,
            payment_method=txn.payment_method,
            provider=txn.provider,
            provider_transaction_id=result["id"],
            refunded_transaction_id=txn.id,
            provider_data=result,
        )
