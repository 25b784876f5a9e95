# ledger/scheduler.py
"""
Scheduler:
  - renewals: charge subscriptions whose period ended (daily at RENEWAL_HOUR)
  - dunning: retry past_due subscriptions (every DUNNING_INTERVAL_MIN minutes)
  - expiry: grace-period / cancel-at-period-end evaluation (hourly)
  - overdue: sent invoices past their due date -> overdue (daily at OVERDUE_HOUR)

Config via .env:
  BILLING_SCHEDULER_ENABLED (started by ledger.main when true),
  BILLING_TIMEZONE (default UTC), RENEWAL_HOUR, DUNNING_INTERVAL_MIN, OVERDUE_HOUR
"""
import logging

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ledger.config import BILLING_TIMEZONE, DUNNING_INTERVAL_MIN, OVERDUE_HOUR, RENEWAL_HOUR
from ledger.tasks.billing_jobs import expire_subscriptions, mark_overdue_invoices, run_dunning, run_renewals

log = logging.getLogger("ledger.scheduler")

TZ = pytz.timezone(BILLING_TIMEZONE)

_RENEWAL_JOB_ID = "billing_renewals"
_DUNNING_JOB_ID = "billing_dunning"
_EXPIRY_JOB_ID = "billing_expiry"
_OVERDUE_JOB_ID = "billing_overdue"

_scheduler = None


# -------------------------
# Scheduler lifecycle
# -------------------------
def start_scheduler():
    global _scheduler
    if _scheduler is not None:
        log.info("Scheduler already running.")
        return _scheduler

    _scheduler = BackgroundScheduler(timezone=TZ)

    _scheduler.add_job(
        func=run_renewals,
        trigger=CronTrigger(hour=RENEWAL_HOUR, minute=0, timezone=TZ),
        id=_RENEWAL_JOB_ID,
        name="renew due subscriptions",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.add_job(
        func=run_dunning,
        trigger=IntervalTrigger(minutes=DUNNING_INTERVAL_MIN),
        id=_DUNNING_JOB_ID,
        name="retry past due subscriptions",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.add_job(
        func=expire_subscriptions,
        trigger=IntervalTrigger(hours=1),
        id=_EXPIRY_JOB_ID,
        name="expire grace periods and scheduled cancellations",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.add_job(
        func=mark_overdue_invoices,
        trigger=CronTrigger(hour=OVERDUE_HOUR, minute=0, timezone=TZ),
        id=_OVERDUE_JOB_ID,
        name="mark overdue invoices",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.start()
    log.info(
        "Scheduler started: renewals daily %02d:00, dunning every %d min, overdue daily %02d:00 (%s)",
        RENEWAL_HOUR, DUNNING_INTERVAL_MIN, OVERDUE_HOUR, BILLING_TIMEZONE,
    )
    return _scheduler


def stop_scheduler():
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        log.info("Scheduler stopped.")


def get_scheduler_status():
    status = {"running": False, "jobs": []}
    if _scheduler is None:
        return status
    status["running"] = True
    for job in _scheduler.get_jobs():
        status["jobs"].append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "max_instances": job.max_instances,
        })
    return status
