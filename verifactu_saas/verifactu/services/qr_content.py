# -*- coding: utf-8 -*-
import base64
import logging
from decimal import InvalidOperation
from io import BytesIO
from urllib.parse import urlencode, urlparse

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from ...config import get_settings
from ...exceptions import QrEncodingError
from ...models.account_invoice import round_amount
from ..utils.verifactu_xml_validator import VerifactuXMLValidator  # limpiar NIF

_logger = logging.getLogger(__name__)

QR_URL_TEST = "https://prewww2.aeat.es/wlpl/TIKE-CONT/ValidarQR"
QR_URL_PROD = "https://www2.agenciatributaria.gob.es/wlpl/TIKE-CONT/ValidarQR"


class VerifactuQRContentGenerator:
    def __init__(self, invoice, csv=None, settings=None):
        self.invoice = invoice
        self.csv = csv
        self.settings = settings or get_settings()

    def _is_test_environment(self):
        """TEST si el host del endpoint contiene 'prewww' (p.ej. prewww1)."""
        url = (self.settings.endpoint_url or "").strip()
        host = urlparse(url).netloc or ""
        return 'prewww' in host

    # ---------- API pública ----------
    def generate_content(self):
        invoice = self.invoice
        tenant = getattr(invoice, "tenant", None)

        emisor_nif = VerifactuXMLValidator.clean_nif_es(getattr(tenant, "nif", None))
        if not emisor_nif:
            raise QrEncodingError("El emisor no tiene un NIF configurado. Es obligatorio para generar el QR.")

        num_serie = (getattr(invoice, "full_number", None) or "").strip()
        if not num_serie:
            raise QrEncodingError("La factura no tiene número asignado.")

        fecha_obj = getattr(invoice, "date", None)
        if not fecha_obj or not hasattr(fecha_obj, "strftime"):
            raise QrEncodingError("La factura %s no tiene fecha de expedición válida." % num_serie)

        try:
            importe = "%s" % round_amount(invoice.total)
        except (InvalidOperation, TypeError, ValueError):
            raise QrEncodingError("Importe total no válido para el QR: %r" % (invoice.total,))

        params = [
            ("nif", emisor_nif),
            ("numserie", num_serie),
            ("fecha", fecha_obj.strftime("%d-%m-%Y")),
            ("importe", importe),
        ]
        if self.csv:
            if not isinstance(self.csv, str):
                raise QrEncodingError("CSV no válido para el QR.")
            params.append(("csv", self.csv.strip()))

        qr_url_base = QR_URL_TEST if self._is_test_environment() else QR_URL_PROD
        return "%s?%s" % (qr_url_base, urlencode(params, encoding='utf-8'))

    def generate_qr_binary(self):
        content = self.generate_content()
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_M,
            box_size=4,
            border=1
        )
        qr.add_data(content)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def generate_data_uri(self):
        png = self.generate_qr_binary()
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def generate_qr(invoice, csv=None, settings=None):
    """Data URI (PNG) con la URL de cotejo de la AEAT."""
    return VerifactuQRContentGenerator(invoice, csv, settings=settings).generate_data_uri()
