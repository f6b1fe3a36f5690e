# -*- coding: utf-8 -*-
import re
import xml.etree.ElementTree as ET

from ...exceptions import ConfigurationError, InvalidInvoiceDataError
from .verifactu_xml_validator import VerifactuXMLValidator  # limpiar NIF

NS_SUM1 = "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/aplicaciones/es/aeat/tike/cont/ws/SuministroInformacion.xsd"


def _normalize(v):
    """
    Normaliza un valor de la config para XML:
    - None/False → ""
    - strings solo espacios → ""
    - cualquier otro → texto
    """
    if v is None or v is False:
        return ""
    if isinstance(v, bytes):
        v = v.decode("utf-8")
    return str(v).strip()


_ID_RE = re.compile(r'^[A-Z0-9\-]{1,50}$')


def _sanitize_system_id(raw):
    """Mayúsculas, solo A–Z 0–9 y guion; <=50 chars."""
    s = _normalize(raw).upper()
    s = re.sub(r'[^A-Z0-9\-]', '', s)
    return s[:50]


class VerifactuSystemInfoBuilder(object):
    """Bloque <SistemaInformatico> a partir de los ajustes del proceso."""

    def __init__(self, tenant, settings):
        self.tenant = tenant
        self.settings = settings

    def get_system_info(self):
        name = _normalize(getattr(self.settings, 'system_name', None)) or "VF-SAAS"
        sys_id = _sanitize_system_id(getattr(self.settings, 'system_id', None)) or "01"
        version = _normalize(getattr(self.settings, 'system_version', None)) or "1.0.0"
        install = _normalize(getattr(self.settings, 'system_installation', None)) or "1"

        if not _ID_RE.match(sys_id):
            raise ConfigurationError(
                "Identificador del sistema inválido. Use solo letras mayúsculas, dígitos y guiones (A-Z, 0-9, -), 1–50 caracteres."
            )

        return {
            "NombreSistemaInformatico": name,
            "IdSistemaInformatico": sys_id,
            "Version": version,
            "NumeroInstalacion": install,
            # Plataforma multi-tenant: varios obligados tributarios por instalación
            "TipoUsoPosibleSoloVerifactu": "S",
            "TipoUsoPosibleMultiOT": "S",
            "IndicadorMultiplesOT": "S",
        }

    def _productor(self):
        """Titular del sistema: el proveedor si está configurado, si no el propio emisor."""
        vendor_name = _normalize(getattr(self.settings, 'system_vendor_name', None))
        vendor_nif = VerifactuXMLValidator.clean_nif_es(getattr(self.settings, 'system_vendor_nif', None))
        if vendor_name and vendor_nif:
            return vendor_name, vendor_nif

        name = _normalize(getattr(self.tenant, 'name', ""))
        nif = VerifactuXMLValidator.clean_nif_es(getattr(self.tenant, 'nif', ""))
        if not name or not nif:
            raise InvalidInvoiceDataError("VeriFactu: faltan datos del emisor (Nombre y/o NIF/CIF) para 'SistemaInformatico'.")
        return name, nif

    def append_to(self, parent_element):
        info = self.get_system_info()
        nombre, nif = self._productor()

        sistema = ET.SubElement(parent_element, ET.QName(NS_SUM1, "SistemaInformatico"))
        ET.SubElement(sistema, ET.QName(NS_SUM1, "NombreRazon")).text = nombre
        ET.SubElement(sistema, ET.QName(NS_SUM1, "NIF")).text = nif
        for key in ("NombreSistemaInformatico", "IdSistemaInformatico", "Version", "NumeroInstalacion",
                    "TipoUsoPosibleSoloVerifactu", "TipoUsoPosibleMultiOT", "IndicadorMultiplesOT"):
            ET.SubElement(sistema, ET.QName(NS_SUM1, key)).text = info[key]
        return sistema
