# tests/test_currency.py
from decimal import Decimal

import pytest

from ledger.errors import NotFound, StateError, ValidationError
from ledger.services.currency_service import CurrencyService
from ledger.services.order_service import OrderService


def test_first_currency_becomes_default(db, config):
    svc = CurrencyService(db, config)
    eur = svc.create("eur", "Euro")
    usd = svc.create("USD", "US Dollar", exchange_rate="1.10")
    assert eur.code == "EUR" and eur.is_default
    assert not usd.is_default


def test_set_default_keeps_exactly_one(db, config, eur):
    svc = CurrencyService(db, config)
    svc.create("USD", "US Dollar")
    svc.set_default("USD")
    defaults = [c.code for c in svc.list_currencies() if c.is_default]
    assert defaults == ["USD"]


def test_default_currency_cannot_be_disabled_or_deleted(db, config, eur):
    svc = CurrencyService(db, config)
    with pytest.raises(StateError) as exc:
        svc.disable("EUR")
    assert exc.value.code == "is_default"
    with pytest.raises(StateError):
        svc.delete("EUR")


def test_currency_in_use_cannot_be_deleted(db, config, eur):
    svc = CurrencyService(db, config)
    svc.create("USD", "US Dollar")
    OrderService(db, config).create(1, [{"name": "A", "unit_price": 1}], currency="USD")
    with pytest.raises(StateError) as exc:
        svc.delete("USD")
    assert exc.value.code == "currency_in_use"


def test_invalid_codes_and_precision(db, config):
    svc = CurrencyService(db, config)
    with pytest.raises(ValidationError):
        svc.create("EURO", "Euro")
    with pytest.raises(ValidationError):
        svc.create("JPY", "Yen", precision=6)
    with pytest.raises(NotFound):
        svc.get("GBP")


def test_convert_through_base_rate(db, config, eur):
    svc = CurrencyService(db, config)
    svc.create("USD", "US Dollar", exchange_rate="1.10")
    svc.create("JPY", "Yen", precision=0, exchange_rate="160")
    assert svc.convert("100", "EUR", "USD") == Decimal("110.00")
    assert svc.convert("11", "USD", "JPY") == Decimal("1600")


def test_import_upserts(db, config, eur):
    svc = CurrencyService(db, config)
    svc.import_currencies([
        {"code": "usd", "name": "US Dollar", "exchange_rate": "1.05"},
        {"code": "EUR", "name": "Euro (updated)"},
    ])
    assert svc.get("USD").exchange_rate == Decimal("1.05")
    assert svc.get("EUR").name == "Euro (updated)"
    assert len(svc.list_currencies()) == 2
