# ledger/schemas.py

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# Decimal fields serialize as strings in JSON, so money never passes through float.

# =====================================================
# CURRENCIES
# =====================================================

class CurrencyIn(BaseModel):
    code: str = Field(..., min_length=3, max_length=3)
    name: str
    symbol: Optional[str] = None
    precision: int = 2
    exchange_rate: Decimal = Decimal("1")
    enabled: bool = True
    sort_order: int = 0
    is_default: bool = False


class CurrencyUpdate(BaseModel):
    name: Optional[str] = None
    symbol: Optional[str] = None
    precision: Optional[int] = None
    exchange_rate: Optional[Decimal] = None
    sort_order: Optional[int] = None


class CurrencyOut(BaseModel):
    id: int
    code: str
    name: str
    symbol: Optional[str]
    precision: int
    exchange_rate: Decimal
    is_default: bool
    enabled: bool

    class Config:
        from_attributes = True


class ConvertOut(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str
    converted: Decimal


# =====================================================
# BILLING PROFILES
# =====================================================

class BillingProfileIn(BaseModel):
    owner_id: int
    type: str = "individual"
    is_default: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    company_vat_number: Optional[str] = None
    company_registration_number: Optional[str] = None
    company_legal_address: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class BillingProfileOut(BaseModel):
    id: int
    owner_id: int
    type: str
    is_default: bool
    name: Optional[str]
    email: Optional[str]
    company_name: Optional[str]
    company_vat_number: Optional[str]
    country: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


# =====================================================
# ORDERS
# =====================================================

class LineItemIn(BaseModel):
    name: str
    description: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal


class OrderCreate(BaseModel):
    owner_id: int
    line_items: List[LineItemIn]
    currency: Optional[str] = None
    billing_profile_id: Optional[int] = None
    tax_rate: Optional[Decimal] = None
    notes: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class OrderUpdate(BaseModel):
    line_items: Optional[List[LineItemIn]] = None
    tax_rate: Optional[Decimal] = None
    notes: Optional[str] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class OrderOut(BaseModel):
    id: int
    order_number: str
    owner_id: int
    billing_profile_id: Optional[int]
    currency: str
    status: str
    line_items: List[Dict[str, Any]]
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    billing_snapshot: Optional[Dict[str, Any]]
    notes: Optional[str]
    created_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True


# =====================================================
# INVOICES / TRANSACTIONS
# =====================================================

class InvoiceCreate(BaseModel):
    order_id: int
    due_days: Optional[int] = None
    notes: Optional[str] = None


class SendIn(BaseModel):
    recipient: Optional[str] = None


class PaymentIn(BaseModel):
    amount: Decimal
    payment_method: str = "bank"
    description: Optional[str] = None


class RefundIn(BaseModel):
    amount: Decimal
    reason: str
    payment_method: str = "bank"


class ProviderRefundIn(BaseModel):
    amount: Optional[Decimal] = None
    reason: str = "requested_by_customer"


class CheckoutIn(BaseModel):
    provider: str
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None
    save_payment_method: bool = False


class CheckoutOut(BaseModel):
    id: str
    url: Optional[str]
    expires_at: Optional[int]


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    order_id: int
    owner_id: int
    subscription_id: Optional[int]
    status: str
    currency: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    paid_amount: Decimal
    due_date: Optional[date]
    billing_details: Optional[Dict[str, Any]]
    line_items: List[Dict[str, Any]]
    payment_terms: Optional[str]
    notes: Optional[str]
    receipt_number: Optional[str]
    sent_at: Optional[datetime]
    paid_at: Optional[datetime]
    voided_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class TransactionOut(BaseModel):
    id: int
    transaction_number: str
    invoice_id: int
    amount: Decimal
    currency: str
    payment_method: str
    description: Optional[str]
    provider: Optional[str]
    provider_transaction_id: Optional[str]
    refunded_transaction_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class AuditEntryOut(BaseModel):
    id: int
    kind: str
    recipient: Optional[str]
    transaction_id: Optional[int]
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class BalanceOut(BaseModel):
    invoice_id: int
    total: Decimal
    net_paid: Decimal
    remaining: Decimal
    status: str
    receipt_status: str
    fully_refunded: bool


# =====================================================
# SUBSCRIPTIONS
# =====================================================

class PlanIn(BaseModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Decimal
    currency: str
    interval: str = "month"
    interval_count: int = 1
    trial_days: int = 0
    features: Optional[Dict[str, Any]] = None
    sort_order: int = 0


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    trial_days: Optional[int] = None
    features: Optional[Dict[str, Any]] = None
    active: Optional[bool] = None
    sort_order: Optional[int] = None


class PlanOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str]
    price: Decimal
    currency: str
    interval: str
    interval_count: int
    trial_days: int
    features: Optional[Dict[str, Any]]
    active: bool

    class Config:
        from_attributes = True


class SubscribeIn(BaseModel):
    owner_id: int
    plan_id: int
    payment_method_id: Optional[int] = None
    billing_profile_id: Optional[int] = None
    trial_days: Optional[int] = None


class CancelSubscriptionIn(BaseModel):
    immediately: bool = False
    reason: Optional[str] = None


class ChangePlanIn(BaseModel):
    plan_id: int


class AttachPaymentMethodIn(BaseModel):
    payment_method_id: int


class SubscriptionOut(BaseModel):
    id: int
    owner_id: int
    subscription_type_id: int
    payment_method_id: Optional[int]
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime]
    grace_period_end: Optional[datetime]
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime]
    renewal_attempts: int

    class Config:
        from_attributes = True


class PaymentMethodIn(BaseModel):
    owner_id: int
    provider: str
    provider_payment_method_id: str
    provider_customer_id: Optional[str] = None
    type: str = "card"
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    label: Optional[str] = None
    make_default: bool = False


class PaymentMethodOut(BaseModel):
    id: int
    owner_id: int
    provider: str
    type: str
    brand: Optional[str]
    last4: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]
    is_default: bool
    status: str
    display_name: str

    class Config:
        from_attributes = True


class SetupSessionIn(BaseModel):
    owner_id: int
    provider: str
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None


class SetupSessionOut(BaseModel):
    id: str
    url: Optional[str]
    customer_id: Optional[str] = None
