# -----------------------------------------------------------
# ledger/api/subscription_routes.py
# Plans, subscriptions and saved payment methods
# -----------------------------------------------------------
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, get_registry, require_admin_key
from ledger.providers import ProviderRegistry
from ledger.schemas import (
    AttachPaymentMethodIn, CancelSubscriptionIn, ChangePlanIn, PaymentMethodIn, PaymentMethodOut,
    PlanIn, PlanOut, PlanUpdate, SetupSessionIn, SetupSessionOut, SubscribeIn, SubscriptionOut,
)
from ledger.services.payment_method_service import PaymentMethodService
from ledger.services.subscription_service import SubscriptionService


router = APIRouter(tags=["subscriptions"], dependencies=[Depends(require_admin_key)])


def _subs(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> SubscriptionService:
    return SubscriptionService(db, config)


def _methods(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> PaymentMethodService:
    return PaymentMethodService(db, config)


# --------------------------------------------------------
# PLANS
# --------------------------------------------------------
@router.get("/plans", response_model=List[PlanOut])
def list_plans(include_inactive: bool = False, svc: SubscriptionService = Depends(_subs)):
    return svc.list_types(active_only=not include_inactive)


@router.post("/plans", response_model=PlanOut)
def create_plan(payload: PlanIn, svc: SubscriptionService = Depends(_subs)):
    data = payload.model_dump()
    return svc.create_type(
        data.pop("name"), data.pop("price"), data.pop("currency"),
        interval=data.pop("interval"), interval_count=data.pop("interval_count"),
        trial_days=data.pop("trial_days"), slug=data.pop("slug"), **data,
    )


@router.patch("/plans/{plan_id}", response_model=PlanOut)
def update_plan(plan_id: int, payload: PlanUpdate, svc: SubscriptionService = Depends(_subs)):
    return svc.update_type(plan_id, **payload.model_dump(exclude_none=True))


@router.delete("/plans/{plan_id}")
def delete_plan(plan_id: int, svc: SubscriptionService = Depends(_subs)):
    deleted = svc.delete_type(plan_id)
    return {"ok": True, "deleted": deleted, "deactivated": not deleted}


# --------------------------------------------------------
# SUBSCRIPTIONS
# --------------------------------------------------------
@router.post("/subscriptions", response_model=SubscriptionOut)
def subscribe(payload: SubscribeIn, svc: SubscriptionService = Depends(_subs)):
    return svc.create(
        payload.owner_id,
        payload.plan_id,
        payment_method_id=payload.payment_method_id,
        trial_days=payload.trial_days,
        billing_profile_id=payload.billing_profile_id,
    )


@router.get("/subscriptions", response_model=List[SubscriptionOut])
def list_subscriptions(owner_id: Optional[int] = None, status: Optional[str] = None,
                       svc: SubscriptionService = Depends(_subs)):
    return svc.list_subscriptions(owner_id=owner_id, status=status)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(subscription_id: int, svc: SubscriptionService = Depends(_subs)):
    return svc.get(subscription_id)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel_subscription(subscription_id: int, payload: Optional[CancelSubscriptionIn] = None,
                        svc: SubscriptionService = Depends(_subs)):
    payload = payload or CancelSubscriptionIn()
    return svc.cancel(subscription_id, immediately=payload.immediately, reason=payload.reason)


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionOut)
def pause_subscription(subscription_id: int, svc: SubscriptionService = Depends(_subs)):
    return svc.pause(subscription_id)


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionOut)
def resume_subscription(subscription_id: int, svc: SubscriptionService = Depends(_subs)):
    return svc.resume(subscription_id)


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=SubscriptionOut)
def change_plan(subscription_id: int, payload: ChangePlanIn, svc: SubscriptionService = Depends(_subs)):
    return svc.change_plan(subscription_id, payload.plan_id)


@router.post("/subscriptions/{subscription_id}/payment-method", response_model=SubscriptionOut)
def attach_payment_method(subscription_id: int, payload: AttachPaymentMethodIn,
                          svc: SubscriptionService = Depends(_subs)):
    return svc.attach_payment_method(subscription_id, payload.payment_method_id)


# --------------------------------------------------------
# PAYMENT METHODS
# --------------------------------------------------------
@router.get("/payment-methods", response_model=List[PaymentMethodOut])
def list_payment_methods(owner_id: int, include_inactive: bool = False,
                         svc: PaymentMethodService = Depends(_methods)):
    return svc.list_payment_methods(owner_id, include_inactive=include_inactive)


@router.post("/payment-methods", response_model=PaymentMethodOut)
def save_payment_method(payload: PaymentMethodIn, svc: PaymentMethodService = Depends(_methods)):
    return svc.save(**payload.model_dump())


@router.post("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodOut)
def set_default_payment_method(payment_method_id: int, svc: PaymentMethodService = Depends(_methods)):
    return svc.set_default(payment_method_id)


@router.delete("/payment-methods/{payment_method_id}", response_model=PaymentMethodOut)
def remove_payment_method(payment_method_id: int, svc: PaymentMethodService = Depends(_methods),
                          registry: ProviderRegistry = Depends(get_registry)):
    return svc.remove(payment_method_id, registry=registry)


@router.post("/payment-methods/setup", response_model=SetupSessionOut)
def open_setup_session(payload: SetupSessionIn, svc: PaymentMethodService = Depends(_methods),
                       registry: ProviderRegistry = Depends(get_registry)):
    return svc.setup_session(
        payload.owner_id,
        payload.provider,
        payload.success_url,
        payload.cancel_url,
        registry=registry,
        customer_email=payload.customer_email,
    )
