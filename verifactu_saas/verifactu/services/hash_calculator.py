# -*- coding: utf-8 -*-
import hashlib
import logging
import re
from datetime import date as _date, datetime as _dt, time as _time, timedelta

import pytz
from sqlalchemy import select

from ...models.account_invoice import round_amount
from ...models.database import utcnow
from ...models.verifactu_record import CHAINED_STATUSES, VerifactuRecord
from ..utils.verifactu_xml_validator import VerifactuXMLValidator  # NIF del emisor/destinatario

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9A-Fa-f]{64}$")

TZ_MADRID = "Europe/Madrid"

NO_FINGERPRINT = ""  # Sin token cuando no hay encadenamiento previo


def _to_date(v):
    """Acepta date/datetime/str ISO y devuelve date o None."""
    if not v:
        return None
    if isinstance(v, _dt):
        return v.date()
    if isinstance(v, _date):
        return v
    if isinstance(v, str):
        try:
            return _dt.strptime(v[:10], "%Y-%m-%d").date()
        except ValueError:
            return None
    return None


def format_ddmmyyyy(v):
    d = _to_date(v)
    return d.strftime("%d-%m-%Y") if d else ""


def _safe_str(v):
    return (str(v).strip() if v is not None else "")


def safe_hash_str(v):
    """
    Devuelve la huella HEX64 si lo parece; en cualquier otro caso, ''.
    """
    if not v or isinstance(v, bool):
        return ""
    s = _safe_str(v)
    return s.upper() if _HEX64.match(s) else ""


def fmt_amount(amount):
    return "%.2f" % round_amount(amount)


def iso_with_tz(dt_utc, tzname=TZ_MADRID):
    """
    ISO8601 con huso: YYYY-MM-DDTHH:MM:SS+HH:MM
    ``dt_utc`` naive se interpreta como UTC (así se guarda en BD).
    """
    if isinstance(dt_utc, _date) and not isinstance(dt_utc, _dt):
        dt_utc = _dt.combine(dt_utc, _time.min)
    dt = dt_utc or utcnow()
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    local = dt.astimezone(pytz.timezone(tzname))

    offset = local.utcoffset() or timedelta(0)
    total_seconds = int(offset.total_seconds())
    sign = "+" if total_seconds >= 0 else "-"
    total_seconds = abs(total_seconds)
    hh = total_seconds // 3600
    mm = (total_seconds % 3600) // 60
    return local.strftime("%Y-%m-%dT%H:%M:%S") + ("%s%02d:%02d" % (sign, hh, mm))


def build_base_string(invoice, previous_hash):
    """Cadena canónica (orden fijo) sobre la que se calcula la huella."""
    tenant = invoice.tenant
    nif = VerifactuXMLValidator.clean_nif_es(_safe_str(getattr(tenant, 'nif', None)))
    customer_nif = VerifactuXMLValidator.clean_vat_like(_safe_str(invoice.customer_nif))

    parts = [
        "IDEmisorFactura=" + nif,
        "NumSerieFactura=" + _safe_str(invoice.full_number),
        "FechaExpedicionFactura=" + format_ddmmyyyy(invoice.date),
        "NIFDestinatario=" + customer_nif,
        "ImporteTotal=" + fmt_amount(invoice.total),
        "Huella=" + (safe_hash_str(previous_hash) or NO_FINGERPRINT),
    ]
    return "&".join(parts)


def compute_hash(invoice, previous_hash=""):
    """SHA-256 en hexadecimal mayúsculas. Función pura."""
    base_string = build_base_string(invoice, previous_hash)
    logger.debug("[VeriFactu] Base para hash (alta): %s", base_string)
    return hashlib.sha256(base_string.encode("utf-8")).hexdigest().upper()


class VerifactuHashCalculator:
    """
    Huella + encadenamiento de un registro.

    La huella anterior se obtiene siempre de BD (último registro enviado o
    aceptado del mismo emisor); el llamante debe tener el lock del tenant.
    """

    def __init__(self, session, invoice):
        self.session = session
        self.invoice = invoice

    def find_previous_record(self):
        invoice = self.invoice
        stmt = (
            select(VerifactuRecord)
            .where(
                VerifactuRecord.tenant_id == invoice.tenant_id,
                VerifactuRecord.invoice_id != invoice.id,
                VerifactuRecord.status.in_(CHAINED_STATUSES),
                VerifactuRecord.hash != "",
            )
            .order_by(VerifactuRecord.chained_at.desc(), VerifactuRecord.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def compute_hash(self, previous_hash):
        return compute_hash(self.invoice, previous_hash)

