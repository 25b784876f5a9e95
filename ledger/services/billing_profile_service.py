# -----------------------------------------------------------
# ledger/services/billing_profile_service.py
# Billing identities (individual / company) per owner
# -----------------------------------------------------------
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ledger.collaborators import no_tax
from ledger.errors import StateError, ValidationError
from ledger.models import BillingProfile, Order, Subscription, _now
from ledger.services.base import BaseService, _id

log = logging.getLogger("ledger.billing_profile_service")

PROFILE_TYPES = ("individual", "company")

EU_COUNTRIES = {
    "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "ES", "FI", "FR", "GR", "HR", "HU",
    "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT", "RO", "SE", "SI", "SK",
}

_FIELDS = (
    "type", "name", "first_name", "last_name", "middle_name", "email", "phone",
    "company_name", "company_vat_number", "company_registration_number",
    "company_legal_address", "address_line1", "address_line2", "city", "state",
    "postal_code", "country", "meta",
)
_SNAPSHOT_FIELDS = _FIELDS[:-1]

_VAT_RE = re.compile(r"^[A-Z]{2}[0-9A-Z]{2,12}$")


def display_name(profile: BillingProfile) -> str:
    if profile.name:
        return profile.name
    if profile.type == "company":
        return profile.company_name or ""
    return f"{profile.first_name or ''} {profile.last_name or ''}".strip()


def formatted_address(profile: BillingProfile) -> str:
    city_line = " ".join(p for p in (profile.postal_code, profile.city) if p)
    parts = [profile.address_line1, profile.address_line2, city_line, profile.state, profile.country]
    return "\n".join(p for p in parts if p)


def to_snapshot(profile: BillingProfile) -> Dict[str, Any]:
    """Immutable copy stored on orders and invoices."""
    snap = {"profile_id": profile.id}
    for field in _SNAPSHOT_FIELDS:
        value = getattr(profile, field)
        if value is not None:
            snap[field] = value
    snap["snapshot_at"] = _now().isoformat()
    return snap


def validate_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    ptype = data.get("type") or "individual"
    if ptype not in PROFILE_TYPES:
        raise ValidationError("invalid_profile", f"type must be one of {PROFILE_TYPES}")
    data["type"] = ptype

    if ptype == "individual" and not (data.get("first_name") and data.get("last_name")):
        raise ValidationError("invalid_profile", "first_name and last_name are required for individuals")
    if ptype == "company" and not data.get("company_name"):
        raise ValidationError("invalid_profile", "company_name is required for companies")

    country = data.get("country")
    if country:
        country = country.strip().upper()
        if len(country) != 2:
            raise ValidationError("invalid_profile", "country must be a 2-letter code")
        data["country"] = country

    email = data.get("email")
    if email and not re.match(r"^[^\s]+@[^\s]+$", email):
        raise ValidationError("invalid_profile", "email must be a valid email address")

    vat = data.get("company_vat_number")
    if vat and country in EU_COUNTRIES:
        vat = vat.replace(" ", "").upper()
        if not _VAT_RE.match(vat):
            raise ValidationError("invalid_profile", f"must be a valid EU VAT number (e.g. {country}123456789)")
        data["company_vat_number"] = vat

    if not data.get("name"):
        if ptype == "company":
            data["name"] = data.get("company_name")
        else:
            data["name"] = f"{data.get('first_name', '')} {data.get('last_name', '')}".strip()
    return data


class BillingProfileService(BaseService):
    def __init__(self, db, config=None, autocommit=True, sequences=None, tax_lookup=None):
        super().__init__(db, config, autocommit, sequences)
        self.tax_lookup = tax_lookup or no_tax

    def get(self, profile_id: int) -> BillingProfile:
        return self._get(BillingProfile, profile_id, "billing profile")

    def list_profiles(self, owner_id: int) -> List[BillingProfile]:
        return (
            self.db.query(BillingProfile)
            .filter(BillingProfile.owner_id == owner_id)
            .order_by(BillingProfile.is_default.desc(), BillingProfile.id)
            .all()
        )

    def get_default(self, owner_id: int) -> Optional[BillingProfile]:
        return (
            self.db.query(BillingProfile)
            .filter(BillingProfile.owner_id == owner_id, BillingProfile.is_default.is_(True))
            .first()
        )

    def create(self, owner_id: int, is_default: bool = False, **fields) -> BillingProfile:
        data = validate_profile({k: v for k, v in fields.items() if k in _FIELDS})
        with self.atomic(f"create_billing_profile owner={owner_id}"):
            profile = BillingProfile(owner_id=owner_id, is_default=False, **data)
            self.db.add(profile)
            self.db.flush()
            if is_default or self.get_default(owner_id) is None:
                self._make_default(profile)
        log.info("Billing profile %s created for owner=%s", profile.id, owner_id)
        return profile

    def update(self, profile_id: int, **changes) -> BillingProfile:
        with self.atomic(f"update_billing_profile {profile_id}"):
            profile = self.get(profile_id)
            data = {f: getattr(profile, f) for f in _FIELDS}
            data.update({k: v for k, v in changes.items() if k in _FIELDS})
            if "name" not in changes and any(k in changes for k in ("first_name", "last_name", "company_name")):
                data["name"] = None
            for k, v in validate_profile(data).items():
                setattr(profile, k, v)
            if changes.get("is_default"):
                self._make_default(profile)
        return profile

    def set_default(self, profile_id: int) -> BillingProfile:
        with self.atomic(f"set_default_billing_profile {profile_id}"):
            profile = self.get(profile_id)
            self._make_default(profile)
        return profile

    def _make_default(self, profile: BillingProfile) -> None:
        others = (
            self.db.query(BillingProfile)
            .filter(
                BillingProfile.owner_id == profile.owner_id,
                BillingProfile.is_default.is_(True),
                BillingProfile.id != profile.id,
            )
            .with_for_update()
            .all()
        )
        for other in others:
            other.is_default = False
        profile.is_default = True
        self.db.flush()

    def delete(self, profile_id: int) -> None:
        with self.atomic(f"delete_billing_profile {profile_id}"):
            profile = self.get(profile_id)
            # invoices reference the profile through their order
            used_by_order = self.db.query(Order.id).filter(Order.billing_profile_id == profile.id).first()
            used_by_sub = self.db.query(Subscription.id).filter(Subscription.billing_profile_id == profile.id).first()
            if used_by_order is not None or used_by_sub is not None:
                raise StateError("profile_in_use", f"billing profile {profile.id} is still referenced")
            owner_id, was_default = profile.owner_id, profile.is_default
            self.db.delete(profile)
            self.db.flush()
            if was_default:
                successor = (
                    self.db.query(BillingProfile)
                    .filter(BillingProfile.owner_id == owner_id)
                    .order_by(BillingProfile.id)
                    .first()
                )
                if successor is not None:
                    successor.is_default = True
        log.info("Billing profile %s deleted", profile_id)

    def tax_rate_for(self, profile) -> Optional[Decimal]:
        """Standard VAT rate for the profile's country, None when unknown."""
        if profile is None:
            return None
        if not hasattr(profile, "country"):
            profile = self.get(_id(profile))
        return self.tax_lookup(profile.country) if profile.country else None
