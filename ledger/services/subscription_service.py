# -----------------------------------------------------------
# ledger/services/subscription_service.py
# Plans and the subscription lifecycle
#
#   trialing -> active -> [past_due -> active] -> cancelled
#                      -> paused -> active
# -----------------------------------------------------------
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta

from ledger.errors import StateError, ValidationError, invalid_transition
from ledger.models import (
    INTERVALS, LIVE_STATUSES, PaymentMethod, Subscription, SubscriptionType, _now
)
from ledger.money import to_decimal
from ledger.services.base import BaseService, _id

log = logging.getLogger("ledger.subscription_service")

_PLAN_FIELDS = ("name", "description", "price", "currency", "interval", "interval_count",
                "trial_days", "features", "active", "sort_order")


# -------------------------------------------------
# HELPERS
# -------------------------------------------------
def add_interval(dt: datetime, interval: str, count: int = 1) -> datetime:
    count = int(count or 1)
    if interval == "day":
        return dt + relativedelta(days=count)
    if interval == "week":
        return dt + relativedelta(weeks=count)
    if interval == "month":
        return dt + relativedelta(months=count)
    if interval == "year":
        return dt + relativedelta(years=count)
    raise ValidationError("invalid_interval", f"unknown billing interval {interval!r}")


def next_period_end(plan: SubscriptionType, start: datetime) -> datetime:
    return add_interval(start, plan.interval, plan.interval_count)


def interval_description(plan: SubscriptionType) -> str:
    if (plan.interval_count or 1) == 1:
        return {"day": "Daily", "week": "Weekly", "month": "Monthly", "year": "Yearly"}[plan.interval]
    return f"Every {plan.interval_count} {plan.interval}s"


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")


def _check_plan(data: Dict[str, Any]) -> Dict[str, Any]:
    if "interval" in data and data["interval"] not in INTERVALS:
        raise ValidationError("invalid_interval", f"interval must be one of {INTERVALS}")
    if "interval_count" in data and int(data["interval_count"]) < 1:
        raise ValidationError("invalid_interval", "interval_count must be >= 1")
    if "trial_days" in data and int(data["trial_days"]) < 0:
        raise ValidationError("invalid_amount", "trial_days must be >= 0")
    if "price" in data:
        data["price"] = to_decimal(data["price"])
        if data["price"] < 0:
            raise ValidationError("invalid_amount", "price must be >= 0")
    if "currency" in data:
        data["currency"] = data["currency"].upper()
    return data


class SubscriptionService(BaseService):

    # =================================================
    # PLANS
    # =================================================
    def get_type(self, type_id: int) -> SubscriptionType:
        return self._get(SubscriptionType, type_id, "subscription type")

    def list_types(self, active_only: bool = True) -> List[SubscriptionType]:
        q = self.db.query(SubscriptionType)
        if active_only:
            q = q.filter(SubscriptionType.active.is_(True))
        return q.order_by(SubscriptionType.sort_order, SubscriptionType.id).all()

    def create_type(self, name: str, price: Any, currency: str, interval: str = "month",
                    interval_count: int = 1, trial_days: int = 0, slug: Optional[str] = None,
                    **extra) -> SubscriptionType:
        data = _check_plan({
            "name": name,
            "price": price,
            "currency": currency,
            "interval": interval,
            "interval_count": interval_count,
            "trial_days": trial_days,
            **{k: v for k, v in extra.items() if k in _PLAN_FIELDS},
        })
        with self.atomic(f"create_subscription_type {name}"):
            plan = SubscriptionType(slug=slug or slugify(name), **data)
            self.db.add(plan)
            self.db.flush()
        log.info("Subscription type %s created: %s %s / %s", plan.slug, plan.price, plan.currency,
                 interval_description(plan))
        return plan

    def update_type(self, type_id: int, **changes) -> SubscriptionType:
        data = _check_plan({k: v for k, v in changes.items() if k in _PLAN_FIELDS})
        with self.atomic(f"update_subscription_type {type_id}"):
            plan = self.get_type(type_id)
            for k, v in data.items():
                setattr(plan, k, v)
        return plan

    def deactivate_type(self, type_id: int) -> SubscriptionType:
        return self.update_type(type_id, active=False)

    def delete_type(self, type_id: int) -> bool:
        """
        Hard delete an unreferenced plan. Plans referenced only by cancelled
        subscriptions are deactivated instead; returns True when the row was deleted.
        """
        with self.atomic(f"delete_subscription_type {type_id}"):
            plan = self.get_type(type_id)
            refs = self.db.query(Subscription.status).filter(Subscription.subscription_type_id == plan.id).all()
            if any(r[0] in LIVE_STATUSES for r in refs):
                raise StateError("type_in_use", f"subscription type {plan.slug} has live subscriptions")
            if refs:
                plan.active = False
                deleted = False
            else:
                self.db.delete(plan)
                deleted = True
        log.info("Subscription type %s %s", type_id, "deleted" if deleted else "deactivated")
        return deleted

    # =================================================
    # SUBSCRIPTIONS
    # =================================================
    def get(self, subscription_id: int) -> Subscription:
        return self._get(Subscription, subscription_id, "subscription")

    def list_subscriptions(self, owner_id: Optional[int] = None, status: Optional[str] = None) -> List[Subscription]:
        q = self.db.query(Subscription)
        if owner_id is not None:
            q = q.filter(Subscription.owner_id == owner_id)
        if status:
            q = q.filter(Subscription.status == status)
        return q.order_by(Subscription.id).all()

    def _check_payment_method(self, owner_id: int, payment_method_id: Optional[int]) -> Optional[PaymentMethod]:
        if payment_method_id is None:
            return None
        pm = self._get(PaymentMethod, payment_method_id, "payment method")
        if pm.owner_id != owner_id or pm.status != "active":
            raise ValidationError("invalid_payment_method", f"payment method {pm.id} cannot be used")
        return pm

    def create(self, owner_id: int, plan_id: int, payment_method_id: Optional[int] = None,
               trial_days: Optional[int] = None, billing_profile_id: Optional[int] = None,
               now: Optional[datetime] = None) -> Subscription:
        now = now or _now()
        with self.atomic(f"create_subscription owner={owner_id}"):
            plan = self.get_type(plan_id)
            if not plan.active:
                raise ValidationError("inactive_plan", f"subscription type {plan.slug} is not active")
            self._check_payment_method(owner_id, payment_method_id)
            days = plan.trial_days if trial_days is None else int(trial_days)

            sub = Subscription(
                owner_id=owner_id,
                subscription_type_id=plan.id,
                billing_profile_id=billing_profile_id,
                payment_method_id=payment_method_id,
                current_period_start=now,
                renewal_attempts=0,
                cancel_at_period_end=False,
                meta={},
            )
            if days > 0:
                sub.status = "trialing"
                sub.trial_start = now
                sub.trial_end = now + timedelta(days=days)
                sub.current_period_end = sub.trial_end
            else:
                sub.status = "active"
                sub.current_period_end = next_period_end(plan, now)
            self.db.add(sub)
            self.db.flush()
        log.info("Subscription %s created for owner=%s plan=%s status=%s until %s",
                 sub.id, owner_id, plan.slug, sub.status, sub.current_period_end)
        return sub

    def _advance(self, sub: Subscription, now: datetime) -> None:
        plan = self.get_type(sub.subscription_type_id)
        start = sub.current_period_end
        sub.current_period_start = start
        sub.current_period_end = next_period_end(plan, start)
        sub.status = "active"
        sub.grace_period_end = None
        sub.renewal_attempts = 0
        sub.last_renewal_attempt_at = now

    def renew(self, subscription, period_start: Optional[datetime] = None,
              now: Optional[datetime] = None) -> Subscription:
        """
        Successful recurring charge: advance one interval (trialing converts to active).
        With period_start, a call for a period already advanced past is a no-op.
        """
        now = now or _now()
        with self.atomic(f"renew_subscription {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if period_start is not None and sub.current_period_end != period_start:
                log.info("Subscription %s already renewed past %s", sub.id, period_start)
                return sub
            if sub.status not in ("active", "trialing"):
                raise invalid_transition("subscription", sub.status, "active")
            self._advance(sub, now)
        log.info("Subscription %s renewed until %s", sub.id, sub.current_period_end)
        return sub

    def mark_past_due(self, subscription, charge_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> Subscription:
        """
        Failed recurring charge. Entering past_due opens the grace window; further
        failures only count attempts. The same failed charge is counted once.
        """
        now = now or _now()
        with self.atomic(f"mark_past_due {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            meta = dict(sub.meta or {})
            if charge_id and meta.get("last_failed_charge") == charge_id:
                return sub
            if sub.status in ("active", "trialing"):
                sub.status = "past_due"
                sub.grace_period_end = now + timedelta(days=self.config.subscription_grace_days)
            elif sub.status != "past_due":
                raise invalid_transition("subscription", sub.status, "past_due")
            sub.renewal_attempts = (sub.renewal_attempts or 0) + 1
            sub.last_renewal_attempt_at = now
            if charge_id:
                meta["last_failed_charge"] = charge_id
                sub.meta = meta
        log.warning("Subscription %s past due (attempt %s, grace until %s)",
                    sub.id, sub.renewal_attempts, sub.grace_period_end)
        return sub

    def resolve_past_due(self, subscription, period_start: Optional[datetime] = None,
                         now: Optional[datetime] = None) -> Subscription:
        """Retried charge succeeded: past_due -> active, paying the open period."""
        now = now or _now()
        with self.atomic(f"resolve_past_due {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if period_start is not None and sub.current_period_end != period_start:
                return sub
            if sub.status != "past_due":
                raise invalid_transition("subscription", sub.status, "active")
            self._advance(sub, now)
        log.info("Subscription %s recovered, active until %s", sub.id, sub.current_period_end)
        return sub

    def evaluate(self, subscription, now: Optional[datetime] = None) -> Subscription:
        """
        Time-driven checks: expired grace period and cancel-at-period-end both end
        the subscription. Cancelled subscriptions are left alone.
        """
        now = now or _now()
        with self.atomic(f"evaluate_subscription {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status == "cancelled":
                return sub
            if sub.status == "past_due" and sub.grace_period_end is not None and now > sub.grace_period_end:
                self._cancel_now(sub, now, "grace period expired")
            elif sub.cancel_at_period_end and now >= sub.current_period_end:
                self._cancel_now(sub, now, "cancelled at period end")
        return sub

    def _cancel_now(self, sub: Subscription, now: datetime, reason: Optional[str]) -> None:
        sub.status = "cancelled"
        sub.cancelled_at = now
        if reason:
            meta = dict(sub.meta or {})
            meta["cancel_reason"] = reason
            sub.meta = meta
        log.info("Subscription %s cancelled: %s", sub.id, reason or "requested")

    def cancel(self, subscription, immediately: bool = False, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> Subscription:
        now = now or _now()
        with self.atomic(f"cancel_subscription {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status == "cancelled":
                raise invalid_transition("subscription", "cancelled", "cancelled")
            if immediately:
                self._cancel_now(sub, now, reason)
            else:
                sub.cancel_at_period_end = True
                log.info("Subscription %s will cancel at %s", sub.id, sub.current_period_end)
        return sub

    def pause(self, subscription) -> Subscription:
        with self.atomic(f"pause_subscription {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status != "active":
                raise invalid_transition("subscription", sub.status, "paused")
            sub.status = "paused"
        log.info("Subscription %s paused", sub.id)
        return sub

    def resume(self, subscription) -> Subscription:
        with self.atomic(f"resume_subscription {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status != "paused":
                raise invalid_transition("subscription", sub.status, "active")
            sub.status = "active"
        log.info("Subscription %s resumed", sub.id)
        return sub

    def change_plan(self, subscription, new_plan_id: int) -> Subscription:
        """Switch the plan reference; the current period is not re-billed."""
        with self.atomic(f"change_plan {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status not in ("trialing", "active", "past_due"):
                raise invalid_transition("subscription", sub.status, "plan change")
            plan = self.get_type(new_plan_id)
            if not plan.active:
                raise ValidationError("inactive_plan", f"subscription type {plan.slug} is not active")
            old = sub.subscription_type_id
            sub.subscription_type_id = plan.id
        log.info("Subscription %s changed plan %s -> %s", sub.id, old, new_plan_id)
        return sub

    def attach_payment_method(self, subscription, payment_method_id: int) -> Subscription:
        with self.atomic(f"attach_payment_method {_id(subscription)}"):
            sub = self._lock(Subscription, _id(subscription), "subscription")
            if sub.status == "cancelled":
                raise invalid_transition("subscription", "cancelled", "payment method change")
            self._check_payment_method(sub.owner_id, payment_method_id)
            sub.payment_method_id = payment_method_id
        return sub
