# ledger/tasks/billing_jobs.py
"""
Scheduled billing hooks. Each job opens its own session and handles one
subscription per transaction; a failure is logged and the batch continues.
Re-running a job on unchanged state does nothing.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ledger.collaborators import DbSettingsStore
from ledger.config import load_config
from ledger.db import SessionLocal
from ledger.models import Subscription, _now
from ledger.services.invoice_service import InvoiceService
from ledger.services.renewal_service import RenewalService
from ledger.services.subscription_service import SubscriptionService

log = logging.getLogger("ledger.tasks.billing_jobs")


def _run(job: str, session_factory: Optional[Callable], body) -> Dict[str, Any]:
    db = (session_factory or SessionLocal)()
    try:
        config = load_config(DbSettingsStore(db))
        result = body(db, config)
        log.info("%s finished: %s", job, result)
        return {"success": True, **result}
    except Exception as e:
        db.rollback()
        log.exception("%s failed", job)
        return {"success": False, "error": str(e)}
    finally:
        db.close()


def _each(db, ids, handle) -> Dict[str, int]:
    outcomes: Counter = Counter()
    for sub_id in ids:
        try:
            outcomes[handle(sub_id)] += 1
        except Exception:
            db.rollback()
            log.exception("Subscription %s could not be processed", sub_id)
            outcomes["failed"] += 1
    return dict(outcomes)


def run_renewals(now: Optional[datetime] = None, session_factory=None, registry=None, mailer=None) -> Dict[str, Any]:
    def body(db, config):
        svc = RenewalService(db, config, registry=registry, mailer=mailer)
        ids = svc.due_subscriptions(now)
        return {"processed": len(ids), "outcomes": _each(db, ids, lambda i: svc.process_renewal(i, now))}

    return _run("run_renewals", session_factory, body)


def run_dunning(now: Optional[datetime] = None, session_factory=None, registry=None, mailer=None) -> Dict[str, Any]:
    def body(db, config):
        svc = RenewalService(db, config, registry=registry, mailer=mailer)
        ids = svc.past_due_subscriptions()
        return {"processed": len(ids), "outcomes": _each(db, ids, lambda i: svc.process_dunning(i, now))}

    return _run("run_dunning", session_factory, body)


def expire_subscriptions(now: Optional[datetime] = None, session_factory=None) -> Dict[str, Any]:
    """Grace-period expiry and cancel-at-period-end, without charging anything."""
    def body(db, config):
        svc = SubscriptionService(db, config)
        ids = [
            r[0] for r in db.query(Subscription.id)
            .filter(Subscription.status.in_(("past_due", "active", "trialing", "paused")))
            .all()
        ]
        at = now or _now()
        return {"processed": len(ids), "outcomes": _each(db, ids, lambda i: svc.evaluate(i, at).status)}

    return _run("expire_subscriptions", session_factory, body)


def mark_overdue_invoices(now: Optional[datetime] = None, session_factory=None) -> Dict[str, Any]:
    def body(db, config):
        rows = InvoiceService(db, config).mark_overdue(now)
        return {"marked": len(rows)}

    return _run("mark_overdue_invoices", session_factory, body)
