# -*- coding: utf-8 -*-
import xml.etree.ElementTree as ET
from decimal import Decimal
import logging

from ....config import get_settings
from ....exceptions import InvalidInvoiceDataError
from ....models.account_invoice import round_amount
from ...utils.calificacion_operacion import VerifactuOperacionClassifier
from ...utils.invoice_type_resolve import VerifactuTipoFacturaResolver
from ...utils.system_info_builder import VerifactuSystemInfoBuilder
from ...utils.verifactu_xml_validator import VerifactuXMLValidator
# Mismos helpers que el cálculo de huella (formatos alineados 1:1)
from ..hash_calculator import fmt_amount, format_ddmmyyyy, iso_with_tz, safe_hash_str

logger = logging.getLogger(__name__)

NS_SUM  = "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroLR.xsd"
NS_SUM1 = "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroInformacion.xsd"

ET.register_namespace("sum", NS_SUM)
ET.register_namespace("sum1", NS_SUM1)

CLAVE_REGIMEN_GENERAL = "01"


def _q(tag):
    return ET.QName(NS_SUM1, tag)


def _sub(parent, tag, text=None):
    el = ET.SubElement(parent, _q(tag))
    if text is not None:
        el.text = text
    return el


class VerifactuXMLBuilder(object):
    """
    Genera el <RegistroAlta> sin firmar de una factura.

    Determinista: mismas entradas → mismo XML (no consulta el reloj salvo
    que no se indique ``chained_at`` ni fecha de factura).
    """

    def __init__(self, invoice, hash, previous_hash="", previous_invoice=None,
                 chained_at=None, settings=None):
        self.invoice = invoice
        self.hash = hash
        self.previous_hash = previous_hash or ""
        self.previous_invoice = previous_invoice
        self.chained_at = chained_at
        self.settings = settings or get_settings()

    # ---------------- Desglose ----------------

    def _desglose_items(self):
        """[(calificacion, tipo, base, cuota)] agrupado y ordenado por tipo."""
        groups = {}
        order = []
        for line in self.invoice.lines:
            calificacion = VerifactuOperacionClassifier.compute_from_line(line, self.invoice)
            rate = round_amount(line.iva_rate)
            key = (calificacion, rate)
            if key not in groups:
                groups[key] = [Decimal("0"), Decimal("0")]
                order.append(key)
            groups[key][0] += line.base
            groups[key][1] += line.iva_amount

        items = []
        for key in sorted(order, key=lambda k: (k[1], k[0])):
            base, cuota = groups[key]
            items.append((key[0], key[1], round_amount(base), round_amount(cuota)))
        return items

    def _append_desglose(self, registro_alta):
        desglose = _sub(registro_alta, "Desglose")
        for calificacion, rate, base, cuota in self._desglose_items():
            detalle = _sub(desglose, "DetalleDesglose")
            _sub(detalle, "ClaveRegimen", CLAVE_REGIMEN_GENERAL)
            if calificacion == "S2":
                _sub(detalle, "OperacionExenta", "E1")
            else:
                _sub(detalle, "CalificacionOperacion", calificacion)
            if calificacion == "S1":
                _sub(detalle, "TipoImpositivo", "%s" % rate)
            _sub(detalle, "BaseImponibleOimporteNoSujeto", "%s" % base)
            if calificacion == "S1":
                _sub(detalle, "CuotaRepercutida", "%s" % cuota)
        return desglose

    # ---------------- Destinatario ----------------

    def _append_destinatario(self, registro_alta, tipo_factura):
        inv = self.invoice
        if tipo_factura == "F2":
            # Simplificada SIN identificar → 61.d
            _sub(registro_alta, "FacturaSinIdentifDestinatarioArt61d", "S")
            return

        destinatarios = _sub(registro_alta, "Destinatarios")
        id_dest = _sub(destinatarios, "IDDestinatario")
        _sub(id_dest, "NombreRazon", (inv.customer_name or "").strip()[:120])

        idinfo = VerifactuXMLValidator.build_id_for_xml(inv.customer_nif)
        if idinfo.get("tag") == "NIF":
            _sub(id_dest, "NIF", idinfo["value"])
        else:
            idotro = _sub(id_dest, "IDOtro")
            _sub(idotro, "CodigoPais", idinfo["CodigoPais"])
            _sub(idotro, "IDType", idinfo["IDType"])
            _sub(idotro, "ID", idinfo["ID"])

    # ---------------- Encadenamiento ----------------

    def _append_encadenamiento(self, registro_alta, emisor_nif):
        encadenamiento = _sub(registro_alta, "Encadenamiento")
        previous_hash = safe_hash_str(self.previous_hash)
        if not previous_hash:
            _sub(encadenamiento, "PrimerRegistro", "S")
            return

        anterior = _sub(encadenamiento, "RegistroAnterior")
        prev = self.previous_invoice
        _sub(anterior, "IDEmisorFactura", emisor_nif)
        if prev is not None:
            _sub(anterior, "NumSerieFactura", (prev.full_number or "").strip())
            _sub(anterior, "FechaExpedicionFactura", format_ddmmyyyy(prev.date))
        _sub(anterior, "Huella", previous_hash)

    # ---------------- Build ----------------

    def build_element(self):
        inv = self.invoice
        VerifactuXMLValidator(inv).validate()
        VerifactuXMLValidator.validate_huella(self.hash, self.previous_hash)

        tenant = inv.tenant
        emisor_nif = VerifactuXMLValidator.clean_nif_es(tenant.nif)
        tipo_factura = VerifactuTipoFacturaResolver.resolve(inv)

        registro_alta = ET.Element(ET.QName(NS_SUM1, "RegistroAlta"))
        _sub(registro_alta, "IDVersion", "1.0")

        id_factura = _sub(registro_alta, "IDFactura")
        _sub(id_factura, "IDEmisorFactura", emisor_nif)
        _sub(id_factura, "NumSerieFactura", inv.full_number.strip())
        _sub(id_factura, "FechaExpedicionFactura", format_ddmmyyyy(inv.date))

        _sub(registro_alta, "NombreRazonEmisor", tenant.name.strip()[:120])
        _sub(registro_alta, "TipoFactura", tipo_factura)
        _sub(registro_alta, "DescripcionOperacion", VerifactuXMLValidator.build_descripcion_operacion(inv))

        self._append_destinatario(registro_alta, tipo_factura)
        self._append_desglose(registro_alta)

        _sub(registro_alta, "CuotaTotal", fmt_amount(inv.total_iva))
        _sub(registro_alta, "ImporteTotal", fmt_amount(inv.total))

        self._append_encadenamiento(registro_alta, emisor_nif)

        VerifactuSystemInfoBuilder(tenant, self.settings).append_to(registro_alta)

        # Sello de tiempo: momento del encadenamiento; sin él, fecha de factura a las 00:00
        _sub(registro_alta, "FechaHoraHusoGenRegistro", iso_with_tz(self.chained_at or inv.date))
        _sub(registro_alta, "TipoHuella", "01")
        _sub(registro_alta, "Huella", safe_hash_str(self.hash))
        return registro_alta

    def build(self):
        xml_bytes = ET.tostring(self.build_element(), encoding="utf-8", xml_declaration=True)
        logger.debug("[VeriFactu] XML sin firmar generado para %s", self.invoice.full_number)
        return xml_bytes.decode("utf-8")


def build_unsigned_xml(invoice, hash, previous_hash="", previous_invoice=None, chained_at=None, settings=None):
    return VerifactuXMLBuilder(
        invoice, hash, previous_hash,
        previous_invoice=previous_invoice, chained_at=chained_at, settings=settings,
    ).build()
