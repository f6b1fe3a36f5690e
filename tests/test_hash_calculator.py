# -*- coding: utf-8 -*-
import hashlib
from datetime import date, datetime

from verifactu_saas.models import VerifactuRecord
from verifactu_saas.verifactu.services.hash_calculator import (
    VerifactuHashCalculator,
    build_base_string,
    compute_hash,
    format_ddmmyyyy,
    iso_with_tz,
    safe_hash_str,
)

EXPECTED_BASE = (
    "IDEmisorFactura=B12345678&NumSerieFactura=A2025/000001&FechaExpedicionFactura=15-03-2025"
    "&NIFDestinatario=A87654321&ImporteTotal=1179.75&Huella="
)


def test_base_string_first_record(new_tenant, new_invoice):
    invoice = new_invoice(new_tenant())
    assert build_base_string(invoice, "") == EXPECTED_BASE


def test_hash_is_uppercase_sha256_of_base_string(new_tenant, new_invoice):
    invoice = new_invoice(new_tenant())
    expected = hashlib.sha256(EXPECTED_BASE.encode("utf-8")).hexdigest().upper()
    assert compute_hash(invoice, "") == expected
    assert compute_hash(invoice) == compute_hash(invoice, "")


def test_hash_is_deterministic(new_tenant, new_invoice):
    tenant = new_tenant()
    assert compute_hash(new_invoice(tenant), "") == compute_hash(new_invoice(tenant), "")


def test_previous_hash_changes_result(new_tenant, new_invoice):
    invoice = new_invoice(new_tenant())
    h1 = compute_hash(invoice, "")
    h2 = compute_hash(invoice, h1)
    assert h1 != h2
    assert build_base_string(invoice, h1.lower()).endswith("Huella=" + h1)


def test_nifs_are_normalised(new_tenant, new_invoice):
    invoice = new_invoice(new_tenant(nif="es-b12345678"), customer_nif="a-876.543 21")
    assert build_base_string(invoice, "") == EXPECTED_BASE


def test_total_change_changes_hash(new_tenant, new_invoice):
    tenant = new_tenant()
    a = new_invoice(tenant)
    b = new_invoice(tenant, lines=[("Servicio de mantenimiento", "1", "975.01", "21")])
    assert compute_hash(a, "") != compute_hash(b, "")


def test_safe_hash_str():
    assert safe_hash_str("a" * 64) == "A" * 64
    assert safe_hash_str("xyz") == ""
    assert safe_hash_str(None) == ""
    assert safe_hash_str(False) == ""


def test_format_helpers():
    assert format_ddmmyyyy(date(2025, 1, 2)) == "02-01-2025"
    assert format_ddmmyyyy("2025-01-02") == "02-01-2025"
    assert format_ddmmyyyy(None) == ""
    # UTC naive → hora de Madrid (verano, +02:00)
    assert iso_with_tz(datetime(2025, 7, 1, 10, 0, 0)) == "2025-07-01T12:00:00+02:00"
    assert iso_with_tz(date(2025, 1, 15)) == "2025-01-15T01:00:00+01:00"


def test_previous_record_ignores_unchained_states(session, tenant, make_invoice):
    first = make_invoice(1)
    second = make_invoice(2)
    third = make_invoice(3)
    session.add_all([
        VerifactuRecord(tenant_id=tenant.id, invoice_id=first.id, status="accepted", hash="A" * 64,
                        chained_at=datetime(2025, 3, 15, 10, 0)),
        VerifactuRecord(tenant_id=tenant.id, invoice_id=second.id, status="rejected", hash="B" * 64,
                        chained_at=datetime(2025, 3, 15, 11, 0)),
    ])
    session.commit()

    calculator = VerifactuHashCalculator(session, third)
    previous = calculator.find_previous_record()
    assert previous.invoice_id == first.id
    assert previous.hash == "A" * 64


def test_no_previous_record_for_first_invoice(session, make_invoice):
    invoice = make_invoice(1)
    assert VerifactuHashCalculator(session, invoice).find_previous_record() is None
