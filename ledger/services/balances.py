# ledger/services/balances.py
"""
Balances derived from the transaction ledger of one invoice.

net_paid  = sum of all transaction amounts (refunds are negative)
remaining = max(total - net_paid, 0)
"""
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session

from ledger.models import Invoice, Transaction
from ledger.money import ZERO, money_sum, to_decimal


def ledger_amounts(db: Session, invoice: Invoice) -> List[Decimal]:
    rows = db.query(Transaction.amount).filter(Transaction.invoice_id == invoice.id).all()
    return [to_decimal(r[0]) for r in rows]


def net_paid(db: Session, invoice: Invoice) -> Decimal:
    return money_sum(ledger_amounts(db, invoice))


def remaining_amount(db: Session, invoice: Invoice) -> Decimal:
    return max(to_decimal(invoice.total) - net_paid(db, invoice), ZERO)


def fully_refunded(db: Session, invoice: Invoice) -> bool:
    """True once money was received and every unit of it went back."""
    amounts = ledger_amounts(db, invoice)
    return any(a > 0 for a in amounts) and money_sum(amounts) <= ZERO


def receipt_status(db: Session, invoice: Invoice) -> str:
    amounts = ledger_amounts(db, invoice)
    net = money_sum(amounts)
    if any(a < 0 for a in amounts) and net <= ZERO:
        return "refunded"
    if net >= to_decimal(invoice.total) and (amounts or invoice.status == "paid"):
        return "paid"
    if net > ZERO:
        return "partially_paid"
    return "unpaid"
