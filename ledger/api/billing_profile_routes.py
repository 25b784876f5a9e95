# ledger/api/billing_profile_routes.py
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledger.config import BillingConfig
from ledger.deps import get_config, get_db, require_admin_key
from ledger.schemas import BillingProfileIn, BillingProfileOut
from ledger.services.billing_profile_service import BillingProfileService, formatted_address, to_snapshot

router = APIRouter(prefix="/billing-profiles", tags=["billing-profiles"], dependencies=[Depends(require_admin_key)])


def _service(db: Session = Depends(get_db), config: BillingConfig = Depends(get_config)) -> BillingProfileService:
    return BillingProfileService(db, config)


@router.get("", response_model=List[BillingProfileOut])
def list_profiles(owner_id: int, svc: BillingProfileService = Depends(_service)):
    return svc.list_profiles(owner_id)


@router.post("", response_model=BillingProfileOut)
def create_profile(payload: BillingProfileIn, svc: BillingProfileService = Depends(_service)):
    data = payload.model_dump(exclude_none=True)
    return svc.create(data.pop("owner_id"), is_default=data.pop("is_default", False), **data)


@router.get("/{profile_id}", response_model=BillingProfileOut)
def get_profile(profile_id: int, svc: BillingProfileService = Depends(_service)):
    return svc.get(profile_id)


@router.get("/{profile_id}/snapshot")
def profile_snapshot(profile_id: int, svc: BillingProfileService = Depends(_service)) -> Dict[str, Any]:
    profile = svc.get(profile_id)
    return {"snapshot": to_snapshot(profile), "address": formatted_address(profile)}


@router.patch("/{profile_id}", response_model=BillingProfileOut)
def update_profile(profile_id: int, payload: Dict[str, Any], svc: BillingProfileService = Depends(_service)):
    return svc.update(profile_id, **payload)


@router.post("/{profile_id}/default", response_model=BillingProfileOut)
def set_default_profile(profile_id: int, svc: BillingProfileService = Depends(_service)):
    return svc.set_default(profile_id)


@router.delete("/{profile_id}")
def delete_profile(profile_id: int, svc: BillingProfileService = Depends(_service)):
    svc.delete(profile_id)
    return {"ok": True}
