# ledger/models/base.py
from datetime import datetime, timezone


def _now() -> datetime:
    """Naive UTC timestamp used for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
