# -*- coding: utf-8 -*-
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from sqlalchemy.pool import StaticPool

from verifactu_saas.config import VerifactuSettings
from verifactu_saas.models import Invoice, InvoiceLine, Tenant, build_engine, build_session_factory, init_db
from verifactu_saas.verifactu.services.certificate_store import CertificateStore
from verifactu_saas.verifactu.services.submission import VerifactuSubmissionService
from verifactu_saas.verifactu.services.xml_sender import AeatClientBase

CERT_PASSWORD = "secreto-pfx"


# ──────────────────────────────
# Certificado autofirmado
# ──────────────────────────────
def _make_pfx(password=CERT_PASSWORD, not_before=None, not_after=None):
    now = datetime.now(timezone.utc)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "ES"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, "IDCES-B12345678"),
        x509.NameAttribute(NameOID.COMMON_NAME, "TALLERES EJEMPLO SL - B12345678"),
    ])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    pfx = pkcs12.serialize_key_and_certificates(
        b"verifactu", key, cert, None,
        serialization.BestAvailableEncryption(password.encode("utf-8")),
    )
    return pfx, cert


@pytest.fixture(scope="session")
def pfx_and_cert():
    return _make_pfx()


@pytest.fixture(scope="session")
def pfx_bytes(pfx_and_cert):
    return pfx_and_cert[0]


@pytest.fixture(scope="session")
def cert_pem(pfx_and_cert):
    return pfx_and_cert[1].public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture
def make_pfx():
    return _make_pfx


# ──────────────────────────────
# Ajustes y BD
# ──────────────────────────────
@pytest.fixture
def settings():
    return VerifactuSettings(
        environment="test",
        database_url="sqlite://",
        encryption_key="clave-de-pruebas",
        simulate=False,
        timeout=5,
        max_attempts=3,
        backoff_base=0,
        backoff_cap=0,
        backoff_jitter=0,
        system_vendor_name="Software Ejemplo SL",
        system_vendor_nif="B87654321",
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_database_url(tmp_path):
    return "sqlite:///%s" % tmp_path.joinpath("verifactu.db")


@pytest.fixture
def file_session_factory(file_database_url):
    """BD en fichero: varias conexiones reales, para hilos y procesos aparte."""
    engine = build_engine(file_database_url, connect_args={"check_same_thread": False, "timeout": 30})
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


# ──────────────────────────────
# Emisor y facturas
# ──────────────────────────────
def build_invoice(tenant, number=1, lines=None, customer_nif="A87654321", customer_name="Cliente Ejemplo SA",
                  invoice_date=date(2025, 3, 15)):
    """Factura sin persistir; por defecto 975,00 € al 21 % → 1179,75 €."""
    invoice = Invoice(
        tenant=tenant,
        series="A2025",
        number=number,
        full_number="A2025/%06d" % number,
        date=invoice_date,
        status="issued",
        customer_name=customer_name,
        customer_nif=customer_nif,
    )
    for position, (description, quantity, unit_price, iva_rate) in enumerate(
            lines if lines is not None else [("Servicio de mantenimiento", "1", "975.00", "21")]):
        invoice.lines.append(InvoiceLine(
            position=position,
            description=description,
            quantity=Decimal(quantity),
            unit_price=Decimal(unit_price),
            iva_rate=Decimal(iva_rate),
        ))
    invoice.recompute_totals()
    return invoice


@pytest.fixture
def new_tenant():
    def _new_tenant(name="Talleres Ejemplo SL", nif="B12345678"):
        return Tenant(name=name, nif=nif, address="Calle Mayor 1, Madrid")
    return _new_tenant


@pytest.fixture
def new_invoice():
    return build_invoice


@pytest.fixture
def tenant(session, settings, pfx_bytes, new_tenant):
    tenant = new_tenant()
    session.add(tenant)
    session.commit()
    CertificateStore(session, settings).store_certificate(tenant.id, pfx_bytes, CERT_PASSWORD)
    return tenant


@pytest.fixture
def file_tenant(file_session_factory, settings, pfx_bytes, new_tenant):
    session = file_session_factory()
    try:
        tenant = new_tenant()
        session.add(tenant)
        session.commit()
        CertificateStore(session, settings).store_certificate(tenant.id, pfx_bytes, CERT_PASSWORD)
        return tenant
    finally:
        session.close()


@pytest.fixture
def make_invoice(session, tenant):
    def _make_invoice(number=1, **kwargs):
        invoice = build_invoice(tenant, number=number, **kwargs)
        session.add(invoice)
        session.commit()
        return invoice
    return _make_invoice


# ──────────────────────────────
# AEAT
# ──────────────────────────────
def aeat_result(status, csv=None, error_message="", code=None):
    return {
        "accepted": status == "accepted",
        "status": status,
        "csv": csv,
        "raw_response": "<respuesta/>",
        "error_message": error_message,
        "code": code,
        "attempts": 1,
    }


class FakeAeatClient(AeatClientBase):
    """Devuelve las respuestas encoladas (o aceptada con CSV123)."""

    def __init__(self, responses=None, delay=0):
        self.responses = list(responses or [])
        self.calls = []
        self.delay = delay

    def submit(self, xml_signed, certificate=None):
        self.calls.append({"xml": xml_signed, "certificate": certificate})
        if self.delay:
            time.sleep(self.delay)
        response = self.responses.pop(0) if self.responses else aeat_result("accepted", csv="CSV123")
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_client():
    return FakeAeatClient()


@pytest.fixture
def make_result():
    return aeat_result


@pytest.fixture
def service(session_factory, settings, fake_client):
    return VerifactuSubmissionService(session_factory, settings=settings, client=fake_client, lock_timeout=1)


class StubResponse(object):

    def __init__(self, content, status_code=200, content_type="text/xml; charset=utf-8"):
        self.content = content.encode("utf-8") if isinstance(content, str) else content
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}


class StubSession(object):
    """Sustituye a ``requests.Session``: cada post consume una respuesta (o excepción)."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, headers=None, cert=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "cert": cert, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def stub_session():
    return StubSession


@pytest.fixture
def stub_response():
    return StubResponse
