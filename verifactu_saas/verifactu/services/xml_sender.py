# -*- coding: utf-8 -*-
import abc
import hashlib
import logging
import random
import re
import time
import xml.etree.ElementTree as ET

import requests

from ...config import get_settings
from ...exceptions import AeatRejectedError, AeatTransientError
from ..utils.cert_handler import VerifactuCertHandler

_logger = logging.getLogger(__name__)

# Referencia oficial:
# https://prewww2.aeat.es/static_files/common/internet/dep/aplicaciones/es/aeat/tikeV1.0/cont/ws/errores.properties

# Errores internos AEAT (SOAP Fault): reintentables
TRANSIENT_ERROR_CODES = set(range(20000, 21000))
ACCEPTED_WITH_ERRORS_CODES = set(list(range(2000, 2009)) + [3000])

STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"

NS = {
    'env':  'http://schemas.xmlsoap.org/soap/envelope/',
    'tikR': 'https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/RespuestaSuministro.xsd',
    'tik':  'https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroInformacion.xsd',
}


def _u(x):
    if x is None:
        return ''
    if isinstance(x, bytes):
        try:
            return x.decode('utf-8')
        except UnicodeDecodeError:
            return x.decode('latin-1')
    return str(x)


def _looks_like_html_error(resp, text_low_first200):
    """
    True si la respuesta parece una página HTML (front de Sede/Proxy): incidencia
    AEAT, no error funcional.
    """
    ctype = (resp.headers.get('Content-Type', '') if getattr(resp, 'headers', None) else '').lower()
    return ('text/html' in ctype) or ('<!doctype html' in text_low_first200) or ('<html' in text_low_first200)


def _result(status, csv=None, raw_response="", error_message="", code=None, attempts=0):
    return {
        "accepted": status == STATUS_ACCEPTED,
        "status": status,
        "csv": csv,
        "raw_response": raw_response,
        "error_message": error_message or "",
        "code": code,
        "attempts": attempts,
    }


def parse_response(response_text):
    """
    Interpreta la respuesta SOAP de AEAT.

    Devuelve ``{"csv", "code", "estado", "message", "raw"}`` si el registro fue aceptado
    (también "AceptadoConErrores"); lanza AeatRejectedError o AeatTransientError
    en otro caso.
    """
    txt = _u(response_text)
    try:
        root = ET.fromstring(txt.encode('utf-8'))
    except ET.ParseError:
        raise AeatTransientError("Respuesta de AEAT no interpretable (no es XML).", raw_response=txt)

    # 1) Fault SOAP
    fault = root.find('.//env:Fault', NS)
    if fault is not None:
        # faultstring va sin namespace en SOAP 1.1
        fault_text = (fault.findtext('faultstring') or fault.findtext('env:faultstring', namespaces=NS) or '').strip()
        m = re.search(r"\b(\d{4,5})\b", fault_text)
        code = int(m.group(1)) if m else None
        msg = "Error SOAP%s: %s" % ((" (%s)" % code) if code else "", fault_text or "sin descripción")
        if code in TRANSIENT_ERROR_CODES:
            raise AeatTransientError(msg, code=code, raw_response=txt)
        raise AeatRejectedError(msg, code=code, raw_response=txt)

    nodo_resp = root.find('.//tikR:RespuestaRegFactuSistemaFacturacion', NS)
    if nodo_resp is None:
        raise AeatTransientError("Respuesta de AEAT sin nodo RespuestaRegFactuSistemaFacturacion.", raw_response=txt)

    csv = (nodo_resp.findtext('tikR:CSV', default='', namespaces=NS) or '').strip() or None
    estado_envio = (nodo_resp.findtext('.//tikR:EstadoEnvio', default='', namespaces=NS) or '').strip()

    linea = nodo_resp.find('.//tikR:RespuestaLinea', NS)
    estado_registro = code_text = desc_error = ''
    if linea is not None:
        estado_registro = (linea.findtext('.//tikR:EstadoRegistro', default='', namespaces=NS) or '').strip()
        code_text = (linea.findtext('.//tikR:CodigoErrorRegistro', default='', namespaces=NS) or '').strip()
        desc_error = (linea.findtext('.//tikR:DescripcionErrorRegistro', default='', namespaces=NS) or '').strip()
    code = int(code_text) if code_text.isdigit() else None

    estado = (estado_registro or estado_envio).lower()
    if estado in ('correcto', 'aceptadoconerrores', 'parcialmentecorrecto') \
            or (code in ACCEPTED_WITH_ERRORS_CODES):
        message = "" if estado == 'correcto' else (desc_error or "Aceptada con errores")
        return {"csv": csv, "code": code, "estado": estado_registro or estado_envio, "message": message, "raw": txt}

    desc_short = (desc_error[:180] + "…") if len(desc_error) > 200 else desc_error
    raise AeatRejectedError(
        "Error VeriFactu%s: %s" % ((" (%s)" % code) if code else "", desc_short or "registro incorrecto"),
        code=code,
        raw_response=txt,
    )


class AeatClientBase(abc.ABC):
    """Único punto de E/S con la AEAT: ``submit(xml) → dict``."""

    @abc.abstractmethod
    def submit(self, xml_signed, certificate=None):
        """
        Envía el XML firmado. Devuelve
        ``{accepted, status, csv, raw_response, error_message, code, attempts}``
        con ``status`` ∈ {accepted, rejected, error}.
        """


class AeatClient(AeatClientBase):
    """
    Cliente SOAP de VeriFactu con reintentos acotados.

    Se reintentan timeouts, errores de conexión, 5xx/HTML y SOAP Fault
    20000–20999. Los rechazos de negocio y los 4xx no se reintentan.
    """

    def __init__(self, settings=None, session=None, sleep=time.sleep, rand=random.uniform):
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._rand = rand

    def backoff_delay(self, attempt):
        s = self.settings
        delay = min(s.backoff_cap, s.backoff_base * (2 ** (attempt - 1)))
        if s.backoff_jitter:
            delay += self._rand(0, s.backoff_jitter)
        return delay

    def _post(self, payload, cert):
        try:
            return self.session.post(
                self.settings.endpoint_url,
                data=payload,
                headers={"Content-Type": "text/xml; charset=utf-8"},
                cert=cert,
                timeout=self.settings.timeout,
            )
        except requests.exceptions.Timeout:
            raise AeatTransientError("Tiempo de espera agotado al contactar con AEAT (%ss)." % self.settings.timeout)
        except requests.exceptions.ConnectionError as e:
            raise AeatTransientError("No se pudo conectar con AEAT: %s" % e.__class__.__name__)

    def _attempt(self, payload, cert):
        response = self._post(payload, cert)

        response_text = _u(getattr(response, 'content', b'') or b'')
        status_code = getattr(response, 'status_code', 200)

        is_html = _looks_like_html_error(response, response_text[:200].lower())
        if is_html and 400 <= status_code < 500:
            # 4xx del front (403, 404...): reintentar no cambia nada
            _logger.warning("[VeriFactu] AEAT rechazó la petición: HTTP %s con respuesta HTML.", status_code)
            raise AeatRejectedError(
                "AEAT respondió HTTP %s: petición no admitida." % status_code,
                raw_response=response_text,
            )
        if is_html:
            _logger.warning(
                "[VeriFactu] Incidencia AEAT: HTTP %s con respuesta HTML. Inicio cuerpo: %s",
                status_code, response_text[:120].replace('\n', ' ')
            )
            raise AeatTransientError(
                "Incidencia en AEAT (HTTP %s). Servicio temporalmente no disponible." % status_code,
                raw_response=response_text,
            )

        try:
            return parse_response(response_text)
        except AeatTransientError as e:
            if 400 <= status_code < 500 and e.code is None:
                raise AeatRejectedError("AEAT respondió HTTP %s: %s" % (status_code, e.message),
                                        raw_response=response_text)
            if status_code >= 500 and e.code is None:
                raise AeatTransientError("Incidencia en AEAT (HTTP %s). %s" % (status_code, e.message),
                                         raw_response=response_text)
            raise

    def submit(self, xml_signed, certificate=None):
        payload = xml_signed if isinstance(xml_signed, (bytes, bytearray)) else xml_signed.encode("utf-8")
        if certificate is not None:
            with VerifactuCertHandler(*certificate) as cert_handler:
                return self._submit_with_retry(payload, cert_handler.cert_tuple)
        return self._submit_with_retry(payload, None)

    def _submit_with_retry(self, payload, cert):
        max_attempts = self.settings.max_attempts
        last_error = None
        for attempt in range(1, max_attempts + 1):
            try:
                parsed = self._attempt(payload, cert)
            except AeatRejectedError as e:
                _logger.info("[VeriFactu] Registro rechazado por AEAT (código %s): %s", e.code, e.message)
                return _result(STATUS_REJECTED, raw_response=e.raw_response or "",
                               error_message=e.message, code=e.code, attempts=attempt)
            except AeatTransientError as e:
                last_error = e
                if attempt >= max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                _logger.warning(
                    "[VeriFactu] Intento %s/%s fallido (%s). Reintento en %.1fs",
                    attempt, max_attempts, e.message, delay
                )
                self._sleep(delay)
                continue

            _logger.info("[VeriFactu] Registro aceptado por AEAT (CSV %s).", parsed.get("csv"))
            return _result(STATUS_ACCEPTED, csv=parsed.get("csv"), raw_response=parsed.get("raw", ""),
                           error_message=parsed.get("message"), code=parsed.get("code"), attempts=attempt)

        _logger.warning("[VeriFactu] Reintentos agotados (%s): %s", max_attempts, last_error.message)
        return _result(
            STATUS_ERROR,
            raw_response=last_error.raw_response or "",
            error_message="%s (tras %s intentos)" % (last_error.message, max_attempts),
            code=last_error.code,
            attempts=max_attempts,
        )


class SimulatedAeatClient(AeatClientBase):
    """Modo test: acepta siempre sin contactar con AEAT."""

    def submit(self, xml_signed, certificate=None):
        payload = xml_signed if isinstance(xml_signed, (bytes, bytearray)) else xml_signed.encode("utf-8")
        csv = "TEST" + hashlib.sha256(payload).hexdigest()[:12].upper()
        _logger.info("[VeriFactu] Envío simulado: aceptado con CSV %s", csv)
        return _result(STATUS_ACCEPTED, csv=csv, raw_response="Factura aceptada (modo test)", attempts=1)


def build_aeat_client(settings=None, **kwargs):
    settings = settings or get_settings()
    if settings.simulate:
        return SimulatedAeatClient()
    return AeatClient(settings, **kwargs)
