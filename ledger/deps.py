# ledger/deps.py
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ledger.collaborators import DbSettingsStore
from ledger.config import ADMIN_API_KEY, BillingConfig, load_config
from ledger.db import SessionLocal
from ledger.providers import ProviderRegistry


# ======================================================
# DATABASE SESSION DEPENDENCY
# ======================================================
def get_db() -> Generator[Session, None, None]:
    """
    Provides a SQLAlchemy DB session.
    Automatically closes after request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ======================================================
# BILLING CONFIG (loaded once per request)
# ======================================================
def get_config(db: Session = Depends(get_db)) -> BillingConfig:
    return load_config(DbSettingsStore(db))


def get_registry(config: BillingConfig = Depends(get_config)) -> ProviderRegistry:
    return ProviderRegistry(config)


# ======================================================
# API KEY BASED ADMIN
# ======================================================
def require_admin_key(
    x_api_key: Optional[str] = Header(None),
):
    """
    Admin auth using the X-API-Key header.
    Owner-facing authentication is the host application's concern.
    """
    if not x_api_key or x_api_key != ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )
    return True
