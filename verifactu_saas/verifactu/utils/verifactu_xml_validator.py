# -*- coding: utf-8 -*-
import re
from decimal import Decimal

from ...exceptions import InvalidInvoiceDataError
from ...models.account_invoice import round_amount
from .invoice_type_resolve import VerifactuTipoFacturaResolver

EU_COUNTRIES = {
    'AT', 'BE', 'BG', 'HR', 'CY', 'CZ', 'DK', 'EE', 'FI', 'FR', 'DE', 'GR', 'HU', 'IE',
    'IT', 'LV', 'LT', 'LU', 'MT', 'NL', 'PL', 'PT', 'RO', 'SK', 'SI', 'ES', 'SE'
}

# Patrones básicos ES (NIF/NIE/CIF). No calculo letra; solo formato.
_SP_NIF_RE = re.compile(
    r"""(?xi)
    (?:            # NIF persona física
        [0-9]{8}[A-Z]
    )
    |
    (?:            # NIE
        [XYZ][0-9]{7}[A-Z]
    )
    |
    (?:            # CIF
        [ABCDEFGHJNPQRSUVW][0-9]{7}[0-9A-J]
    )
    """
)

_HEX64 = re.compile(r"^[0-9A-Fa-f]{64}$")

# Diferencia máxima tolerada entre totales declarados y recalculados
_TOLERANCE = Decimal("0.01")


class VerifactuXMLValidator(object):
    """
    Comprobaciones previas a la generación del registro de alta.
    Cualquier fallo → InvalidInvoiceDataError (sin tocar el registro).
    """

    def __init__(self, invoice):
        self.invoice = invoice
        self.tenant = getattr(invoice, "tenant", None)

    def validate(self):
        self._validate_emisor()
        self._validate_cliente()
        self._validate_fechas()
        self._validate_lineas()
        self._validate_totales()
        return True

    def _validate_emisor(self):
        # Emisor = tenant (empresa o autónomo)
        if self.tenant is None:
            raise InvalidInvoiceDataError("La factura no tiene emisor asociado.")

        emisor_nif = self.clean_nif_es(self.tenant.nif)
        if not emisor_nif:
            raise InvalidInvoiceDataError("El NIF/CIF del emisor no puede estar vacío.")
        if not self.is_es_nif_format(emisor_nif):
            raise InvalidInvoiceDataError("El NIF/CIF del emisor tiene un formato no válido: %s" % emisor_nif)
        if not (self.tenant.name or "").strip():
            raise InvalidInvoiceDataError("El nombre/razón social del emisor es obligatorio.")

    def _validate_cliente(self):
        inv = self.invoice
        if VerifactuTipoFacturaResolver.is_simplificada(inv):
            return
        if not (inv.customer_name or "").strip():
            raise InvalidInvoiceDataError("El destinatario con NIF debe tener nombre o razón social.")
        # Lanza si el NIF no es utilizable
        self.build_id_for_xml(inv.customer_nif)

    def _validate_fechas(self):
        inv = self.invoice
        if not (inv.full_number or "").strip():
            raise InvalidInvoiceDataError("La factura no tiene número asignado.")
        if len(inv.full_number.strip()) > 60:
            raise InvalidInvoiceDataError("El número de factura supera los 60 caracteres.")
        if not inv.date:
            raise InvalidInvoiceDataError("La factura no tiene fecha de expedición.")

    def _validate_lineas(self):
        lines = list(self.invoice.lines or [])
        if not lines:
            raise InvalidInvoiceDataError("La factura debe tener al menos una línea.")
        for idx, line in enumerate(lines, start=1):
            if line.quantity is None or line.unit_price is None or line.iva_rate is None:
                raise InvalidInvoiceDataError("La línea %s tiene cantidad, precio o IVA vacío." % idx)
            if Decimal(str(line.iva_rate)) < 0:
                raise InvalidInvoiceDataError("La línea %s tiene un tipo de IVA negativo." % idx)

    def _validate_totales(self):
        inv = self.invoice
        if inv.total is None:
            raise InvalidInvoiceDataError("La factura no tiene importe total.")

        lines = list(inv.lines)
        expected_base = round_amount(sum((l.base for l in lines), Decimal("0")))
        expected_cuota = round_amount(sum((l.iva_amount for l in lines), Decimal("0")))

        subtotal = round_amount(inv.subtotal)
        total_iva = round_amount(inv.total_iva)
        total = round_amount(inv.total)

        if abs(subtotal - expected_base) > _TOLERANCE:
            raise InvalidInvoiceDataError(
                "La base imponible (%s) no coincide con la suma de las líneas (%s)." % (subtotal, expected_base)
            )
        if abs(total_iva - expected_cuota) > _TOLERANCE:
            raise InvalidInvoiceDataError(
                "La cuota de IVA (%s) no coincide con la suma de las líneas (%s)." % (total_iva, expected_cuota)
            )
        if abs(total - (subtotal + total_iva)) > _TOLERANCE:
            raise InvalidInvoiceDataError(
                "El importe total (%s) no es igual a base + IVA (%s)." % (total, subtotal + total_iva)
            )

    # ---------------- Helpers estáticos ----------------

    @staticmethod
    def clean_vat_like(text):
        """Quita espacios, puntos y guiones, y pasa a mayúsculas."""
        if not text:
            return ''
        return re.sub(r'[^A-Z0-9]', '', (text or '').upper())

    @staticmethod
    def clean_nif_es(vat):
        """
        Normaliza el VAT/NIF: mayúsculas, sin separadores y sin prefijo
        de país UE (ES, FR, DE...).
        """
        if not vat:
            return ""
        v = VerifactuXMLValidator.clean_vat_like(vat)
        if len(v) >= 2 and v[:2] in EU_COUNTRIES:
            v = v[2:]
        return v.strip()

    @staticmethod
    def is_es_nif_format(v):
        """Valida formato básico (sin calcular letra) de NIF/NIE/CIF."""
        if not v:
            return False
        return bool(_SP_NIF_RE.fullmatch(v))

    @staticmethod
    def build_id_for_xml(raw_vat):
        """
        Identificación del destinatario según esquema AEAT:
        - {'tag': 'NIF', 'value': 'B12345678'}
        - {'tag': 'IDOtro', 'IDType': '02', 'CodigoPais': 'FR', 'ID': 'FR12345678901'}
        """
        vat_clean = VerifactuXMLValidator.clean_vat_like(raw_vat)
        if not vat_clean:
            raise InvalidInvoiceDataError("VeriFactu: NIF del destinatario vacío.")

        country = vat_clean[:2] if vat_clean[:2].isalpha() and vat_clean[:2] in EU_COUNTRIES else "ES"
        if country == "ES":
            v = VerifactuXMLValidator.clean_nif_es(vat_clean)
            if not VerifactuXMLValidator.is_es_nif_format(v):
                raise InvalidInvoiceDataError("El NIF del destinatario tiene un formato no válido: %s" % raw_vat)
            return {"tag": "NIF", "value": v}

        # VAT-UE distinto de ES → IDOtro 02
        return {"tag": "IDOtro", "IDType": "02", "CodigoPais": country, "ID": vat_clean}

    @staticmethod
    def validate_huella(huella, huella_anterior):
        # 1262 – SHA256 en hexadecimal: 64 caracteres
        if not huella or not _HEX64.match(huella):
            raise InvalidInvoiceDataError("La huella no cumple con las especificaciones (SHA-256 hex de 64 caracteres).")
        if huella_anterior and not _HEX64.match(huella_anterior):
            raise InvalidInvoiceDataError("La huella anterior no cumple con las especificaciones.")
        # 1278 – La huella no puede coincidir con la anterior
        if huella_anterior and huella == huella_anterior:
            raise InvalidInvoiceDataError("La huella del registro anterior debe ser diferente a la del registro actual.")

    @staticmethod
    def build_descripcion_operacion(invoice):
        """Descripción para <DescripcionOperacion> a partir de las líneas (en orden)."""
        conceptos = []
        for line in invoice.lines:
            name = (line.description or "").strip()
            if name and name not in conceptos:
                conceptos.append(name)

        if not conceptos:
            return "Operación comercial sin descripción detallada"

        resumen = "Venta de bienes y/o servicios: %s" % ", ".join(conceptos[:3])
        if len(invoice.lines) > 3:
            resumen += " (total %s conceptos)" % len(invoice.lines)
        return resumen.strip()[:500]
