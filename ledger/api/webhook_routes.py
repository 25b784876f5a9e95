# -----------------------------------------------------------
# ledger/api/webhook_routes.py
# Provider callbacks: 200 handled/duplicate/unknown, 401 bad signature, 400 otherwise
# -----------------------------------------------------------
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, get_registry
from ledger.errors import BillingError, WebhookError
from ledger.providers import ProviderRegistry
from ledger.services.webhook_processor import WebhookProcessor

log = logging.getLogger("ledger.webhook_routes")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    config: BillingConfig = Depends(get_config),
    registry: ProviderRegistry = Depends(get_registry),
):
    raw_body = await request.body()

    try:
        impl = registry.get(provider)
        signature = impl.signature_from_headers(request.headers)
        result = WebhookProcessor(db, config, registry=registry).process(raw_body, signature, provider)
    except WebhookError as e:
        raise HTTPException(status_code=401, detail=e.code)
    except BillingError as e:
        log.warning("Webhook %s rejected: %s (%s)", provider, e.code, e.message)
        raise HTTPException(status_code=400, detail=e.code)
    except Exception:
        log.exception("Webhook %s processing failed", provider)
        raise HTTPException(status_code=400, detail="processing_failed")

    return {"ok": True, **result}
