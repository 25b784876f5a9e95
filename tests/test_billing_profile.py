# tests/test_billing_profile.py
import pytest

from ledger.errors import StateError, ValidationError
from ledger.services.billing_profile_service import BillingProfileService, formatted_address, to_snapshot
from ledger.services.order_service import OrderService


def test_first_profile_is_default_and_name_is_derived(db, config):
    svc = BillingProfileService(db, config)
    first = svc.create(1, first_name="Ada", last_name="Lovelace", email="ada@example.com")
    company = svc.create(1, type="company", company_name="Engines Ltd", country="gb")
    assert first.is_default and not company.is_default
    assert first.name == "Ada Lovelace"
    assert company.name == "Engines Ltd"
    assert company.country == "GB"


def test_set_default_switches(db, config):
    svc = BillingProfileService(db, config)
    a = svc.create(1, first_name="A", last_name="One")
    b = svc.create(1, first_name="B", last_name="Two")
    svc.set_default(b.id)
    assert svc.get_default(1).id == b.id
    assert not svc.get(a.id).is_default


@pytest.mark.parametrize("fields", [
    {"first_name": "Only"},
    {"type": "company"},
    {"type": "robot", "first_name": "A", "last_name": "B"},
    {"first_name": "A", "last_name": "B", "country": "EST"},
    {"first_name": "A", "last_name": "B", "email": "not an email"},
    {"type": "company", "company_name": "X", "country": "DE", "company_vat_number": "123"},
])
def test_invalid_profiles(db, config, fields):
    with pytest.raises(ValidationError) as exc:
        BillingProfileService(db, config).create(1, **fields)
    assert exc.value.code == "invalid_profile"


def test_eu_vat_number_normalized(db, config):
    profile = BillingProfileService(db, config).create(
        1, type="company", company_name="Acme GmbH", country="DE", company_vat_number="de 123456789"
    )
    assert profile.company_vat_number == "DE123456789"


def test_profile_in_use_cannot_be_deleted(db, config, eur):
    svc = BillingProfileService(db, config)
    profile = svc.create(1, first_name="A", last_name="B")
    OrderService(db, config).create(1, [{"name": "A", "unit_price": 1}], billing_profile_id=profile.id)
    with pytest.raises(StateError) as exc:
        svc.delete(profile.id)
    assert exc.value.code == "profile_in_use"


def test_deleting_default_promotes_next(db, config):
    svc = BillingProfileService(db, config)
    a = svc.create(1, first_name="A", last_name="One")
    b = svc.create(1, first_name="B", last_name="Two")
    svc.delete(a.id)
    assert svc.get_default(1).id == b.id


def test_snapshot_is_detached_from_later_edits(db, config):
    svc = BillingProfileService(db, config)
    profile = svc.create(1, first_name="A", last_name="B", city="Tallinn", postal_code="10111", country="EE")
    snap = to_snapshot(profile)
    svc.update(profile.id, city="Tartu")
    assert snap["city"] == "Tallinn"
    assert "10111 Tartu" in formatted_address(svc.get(profile.id))
