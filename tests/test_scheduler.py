# tests/test_scheduler.py
from ledger import scheduler


def test_start_registers_billing_jobs():
    try:
        scheduler.start_scheduler()
        assert scheduler.start_scheduler() is scheduler._scheduler
        status = scheduler.get_scheduler_status()
        assert status["running"] is True
        assert {job["id"] for job in status["jobs"]} == {
            "billing_renewals", "billing_dunning", "billing_expiry", "billing_overdue",
        }
        assert all(job["max_instances"] == 1 for job in status["jobs"])
    finally:
        scheduler.stop_scheduler()
    assert scheduler.get_scheduler_status() == {"running": False, "jobs": []}
