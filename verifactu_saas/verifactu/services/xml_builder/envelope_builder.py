# -*- coding: utf-8 -*-
from lxml import etree as LET

from ....exceptions import InvalidInvoiceDataError
from ...utils.verifactu_xml_validator import VerifactuXMLValidator  # limpia NIF

# Namespaces AEAT
NS_SOAP = "http://schemas.xmlsoap.org/soap/envelope/"
NS_SUM  = "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroLR.xsd"
NS_SUM1 = "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroInformacion.xsd"

NSMAP = {"soapenv": NS_SOAP, "sum": NS_SUM, "sum1": NS_SUM1}


class VerifactuEnvelopeBuilder(object):
    """
    Construye el sobre SOAP para AEAT.

    El registro firmado se inserta tal cual (lxml, sin re-serializar ni
    indentar) para no invalidar la firma.
    """

    def __init__(self, tenant):
        self.tenant = tenant

    @staticmethod
    def _localname(tag):
        if not tag:
            return ""
        return tag.split("}", 1)[1] if "}" in tag else tag

    def _fromstring(self, xml_str):
        if isinstance(xml_str, str):
            xml_str = xml_str.encode("utf-8")
        return LET.fromstring(xml_str)

    def build(self, signed_xml_str):
        tenant_name = (self.tenant.name or "").strip()
        tenant_nif = VerifactuXMLValidator.clean_nif_es(self.tenant.nif)
        if not tenant_name or not tenant_nif:
            raise InvalidInvoiceDataError("VeriFactu: faltan datos del emisor (Nombre y/o NIF/CIF).")

        root = LET.Element("{%s}Envelope" % NS_SOAP, nsmap=NSMAP)
        LET.SubElement(root, "{%s}Header" % NS_SOAP)
        body = LET.SubElement(root, "{%s}Body" % NS_SOAP)

        reg_fact = LET.SubElement(body, "{%s}RegFactuSistemaFacturacion" % NS_SUM)

        # Cabecera con obligado a la emisión
        cabecera = LET.SubElement(reg_fact, "{%s}Cabecera" % NS_SUM)
        obligado = LET.SubElement(cabecera, "{%s}ObligadoEmision" % NS_SUM1)
        LET.SubElement(obligado, "{%s}NombreRazon" % NS_SUM1).text = tenant_name
        LET.SubElement(obligado, "{%s}NIF" % NS_SUM1).text = tenant_nif

        signed_root = self._fromstring(signed_xml_str)
        lname = self._localname(signed_root.tag)
        if lname == "RegistroAlta":
            registro_factura = LET.SubElement(reg_fact, "{%s}RegistroFactura" % NS_SUM)
            registro_factura.append(signed_root)
        elif lname == "RegistroFactura":
            reg_fact.append(signed_root)
        else:
            raise InvalidInvoiceDataError(
                "Estructura XML no reconocida: se esperaba RegistroFactura/RegistroAlta (recibido: %s)" % lname
            )

        return LET.tostring(root, encoding="utf-8", xml_declaration=True).decode("utf-8")
