# -*- coding: utf-8 -*-
import pytest
import requests

from verifactu_saas.config import VerifactuSettings
from verifactu_saas.exceptions import AeatRejectedError, AeatTransientError
from verifactu_saas.verifactu.services.xml_sender import (
    AeatClient,
    SimulatedAeatClient,
    build_aeat_client,
    parse_response,
)

NS_RESP = ("https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/"
           "tike/cont/ws/RespuestaSuministro.xsd")


def soap_response(estado, csv="", code="", descripcion=""):
    return (
        '<env:Envelope xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"><env:Body>'
        '<tikR:RespuestaRegFactuSistemaFacturacion xmlns:tikR="%(ns)s">'
        '<tikR:CSV>%(csv)s</tikR:CSV><tikR:EstadoEnvio>%(estado)s</tikR:EstadoEnvio>'
        '<tikR:RespuestaLinea><tikR:EstadoRegistro>%(estado)s</tikR:EstadoRegistro>'
        '<tikR:CodigoErrorRegistro>%(code)s</tikR:CodigoErrorRegistro>'
        '<tikR:DescripcionErrorRegistro>%(desc)s</tikR:DescripcionErrorRegistro></tikR:RespuestaLinea>'
        '</tikR:RespuestaRegFactuSistemaFacturacion></env:Body></env:Envelope>'
    ) % {"ns": NS_RESP, "csv": csv, "estado": estado, "code": code, "desc": descripcion}


def soap_fault(text):
    return (
        '<env:Envelope xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"><env:Body><env:Fault>'
        '<faultcode>env:Server</faultcode><faultstring>%s</faultstring></env:Fault></env:Body></env:Envelope>'
    ) % text


ACCEPTED = soap_response("Correcto", csv="CSV123")
REJECTED = soap_response("Incorrecto", code="1100", descripcion="Valor o tipo incorrecto del campo: NIF")
FAULT_TRANSIENT = soap_fault("Codigo[20009].Error interno en el servidor")


@pytest.fixture
def make_client(settings, stub_session):
    def _make_client(responses, **overrides):
        client_settings = VerifactuSettings(**dict(
            environment="test", timeout=5, max_attempts=3, backoff_base=1, backoff_cap=30, backoff_jitter=0,
            **overrides))
        sleeps = []
        client = AeatClient(client_settings, session=stub_session(responses), sleep=sleeps.append)
        return client, sleeps
    return _make_client


# ---------- parse_response ----------

def test_parse_accepted():
    parsed = parse_response(ACCEPTED)
    assert parsed["csv"] == "CSV123"
    assert parsed["message"] == ""


def test_parse_accepted_with_errors():
    parsed = parse_response(soap_response("AceptadoConErrores", csv="CSV9", code="2004", descripcion="Aviso"))
    assert parsed["csv"] == "CSV9"
    assert parsed["code"] == 2004
    assert parsed["message"] == "Aviso"


def test_parse_rejected():
    with pytest.raises(AeatRejectedError) as exc:
        parse_response(REJECTED)
    assert exc.value.code == 1100
    assert "NIF" in exc.value.message


def test_parse_transient_fault():
    with pytest.raises(AeatTransientError) as exc:
        parse_response(FAULT_TRANSIENT)
    assert exc.value.code == 20009


def test_parse_business_fault():
    with pytest.raises(AeatRejectedError):
        parse_response(soap_fault("Codigo[4102].El XML no cumple el esquema"))


def test_parse_not_xml():
    with pytest.raises(AeatTransientError):
        parse_response("esto no es xml")


# ---------- AeatClient ----------

def test_submit_accepted(make_client, stub_response):
    client, sleeps = make_client([stub_response(ACCEPTED)])
    result = client.submit("<xml/>")

    assert result["accepted"] is True
    assert result["status"] == "accepted"
    assert result["csv"] == "CSV123"
    assert result["attempts"] == 1
    assert sleeps == []

    call = client.session.calls[0]
    assert call["timeout"] == 5
    assert call["data"] == b"<xml/>"
    assert call["headers"]["Content-Type"].startswith("text/xml")


def test_rejection_is_not_retried(make_client, stub_response):
    client, sleeps = make_client([stub_response(REJECTED)])
    result = client.submit("<xml/>")

    assert result["status"] == "rejected"
    assert result["code"] == 1100
    assert result["csv"] is None
    assert len(client.session.calls) == 1
    assert sleeps == []


def test_timeout_then_success(make_client, stub_response):
    client, sleeps = make_client([requests.exceptions.Timeout(), stub_response(ACCEPTED)])
    result = client.submit("<xml/>")

    assert result["status"] == "accepted"
    assert result["attempts"] == 2
    assert sleeps == [1]


def test_retries_exhausted(make_client, stub_response):
    client, sleeps = make_client([
        requests.exceptions.ConnectionError(),
        stub_response("<html><body>Mantenimiento</body></html>", status_code=503, content_type="text/html"),
        stub_response(FAULT_TRANSIENT, status_code=500),
    ])
    result = client.submit("<xml/>")

    assert result["status"] == "error"
    assert result["accepted"] is False
    assert result["attempts"] == 3
    assert "3 intentos" in result["error_message"]
    assert sleeps == [1, 2]


def test_http_4xx_without_fault_is_rejected(make_client, stub_response):
    client, sleeps = make_client([stub_response("Bad Request", status_code=400, content_type="text/plain")])
    result = client.submit("<xml/>")
    assert result["status"] == "rejected"
    assert len(client.session.calls) == 1


def test_http_4xx_html_page_is_rejected(make_client, stub_response):
    client, sleeps = make_client([
        stub_response("<html><body>403 Forbidden</body></html>", status_code=403, content_type="text/html"),
        stub_response(ACCEPTED),
    ])
    result = client.submit("<xml/>")
    assert result["status"] == "rejected"
    assert "HTTP 403" in result["error_message"]
    assert len(client.session.calls) == 1
    assert sleeps == []


def test_http_200_html_page_is_retried(make_client, stub_response):
    client, sleeps = make_client([
        stub_response("<!DOCTYPE html><html><body>Sede</body></html>", status_code=200, content_type="text/html"),
        stub_response(ACCEPTED),
    ])
    assert client.submit("<xml/>")["status"] == "accepted"
    assert len(client.session.calls) == 2


def test_http_5xx_is_retried(make_client, stub_response):
    client, sleeps = make_client([
        stub_response("Internal error", status_code=502, content_type="text/plain"),
        stub_response(ACCEPTED),
    ])
    assert client.submit("<xml/>")["status"] == "accepted"
    assert len(client.session.calls) == 2


def test_backoff_is_capped(settings):
    client = AeatClient(VerifactuSettings(environment="test", backoff_base=1, backoff_cap=5, backoff_jitter=0.5),
                        session=object(), rand=lambda a, b: b)
    assert client.backoff_delay(1) == 1.5
    assert client.backoff_delay(3) == 4.5
    assert client.backoff_delay(10) == 5.5


def test_certificate_is_used_for_mutual_tls(make_client, stub_response, pfx_bytes):
    client, _ = make_client([stub_response(ACCEPTED)])
    client.submit("<xml/>", certificate=(pfx_bytes, "secreto-pfx"))
    cert_path, key_path = client.session.calls[0]["cert"]
    assert cert_path.endswith(".crt")
    assert key_path.endswith(".key")


def test_simulated_client():
    result = SimulatedAeatClient().submit("<xml/>")
    assert result["status"] == "accepted"
    assert result["csv"].startswith("TEST")
    assert isinstance(build_aeat_client(VerifactuSettings(environment="test", simulate=True)), SimulatedAeatClient)
    assert isinstance(build_aeat_client(VerifactuSettings(environment="test", simulate=False)), AeatClient)
