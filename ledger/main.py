# ledger/main.py
import os
import time
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger.config import LOG_LEVEL, SCHEDULER_ENABLED
from ledger.db import init_db
from ledger.scheduler import get_scheduler_status, start_scheduler, stop_scheduler
from ledger.errors import BillingError, NotFound, ProviderError, StateError, ValidationError, WebhookError

# =====================================================
# LOGGING
# =====================================================
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("ledger.main")

# =====================================================
# CREATE APP
# =====================================================
app = FastAPI(
    title="Billing Ledger",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# =====================================================
# MIDDLEWARE
# =====================================================
allowed_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
if os.getenv("CORS_ALLOW_ALL", "false").lower() in ("1", "true", "yes"):
    allowed_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =====================================================
# ERRORS
# =====================================================
def status_for(error: BillingError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, WebhookError):
        return 401
    if isinstance(error, ProviderError):
        if error.code == "not_configured":
            return 503
        if error.code in ("provider_error", "delivery_failed"):
            return 502
        return 402
    if isinstance(error, StateError):
        return 409
    if isinstance(error, ValidationError):
        return 422
    return 400


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=status_for(exc), content=exc.to_dict())


# =====================================================
# AUTO LOAD ALL API ROUTES
# =====================================================
from ledger.api import router as api_router  # noqa: E402
from ledger.api import auto_register_routes  # noqa: E402

auto_register_routes()
app.include_router(api_router, prefix="/api")


# =====================================================
# HEALTH
# =====================================================
@app.get("/health")
def health():
    return {"ok": True, "time": int(time.time()), "scheduler": get_scheduler_status()}


# =====================================================
# STARTUP / SHUTDOWN
# =====================================================
@app.on_event("startup")
async def startup():
    init_db()
    if SCHEDULER_ENABLED:
        start_scheduler()
    log.info("Billing ledger started")


@app.on_event("shutdown")
async def shutdown():
    stop_scheduler()
    log.info("Billing ledger stopped")


# =====================================================
# ENTRYPOINT
# =====================================================
if __name__ == "__main__":
    uvicorn.run(
        "ledger.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=True,
    )
