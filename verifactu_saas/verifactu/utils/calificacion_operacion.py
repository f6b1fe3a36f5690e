# -*- coding: utf-8 -*-
from decimal import Decimal

from .verifactu_xml_validator import EU_COUNTRIES, VerifactuXMLValidator


class VerifactuOperacionClassifier:
    """
    CalificacionOperacion de cada tramo del desglose:

    - S1: Sujeta no exenta
    - S2: Sujeta exenta (se declara con OperacionExenta E1)
    - N1: No sujeta (regla interna)
    - N2: No sujeta (regla internacional)
    """

    @staticmethod
    def _customer_country(invoice):
        vat = VerifactuXMLValidator.clean_vat_like(invoice.customer_nif)
        if len(vat) >= 2 and vat[:2].isalpha() and vat[:2] in EU_COUNTRIES:
            return vat[:2]
        return "ES"

    @staticmethod
    def compute_from_line(line, invoice=None):
        invoice = invoice or line.invoice
        rate = Decimal(str(line.iva_rate or 0))

        # Sujeta: tipo > 0
        if rate > 0:
            return "S1"

        # Al 0%: internacional, exenta explícita o no sujeta
        if VerifactuOperacionClassifier._customer_country(invoice) != "ES":
            return "N2"
        description = (line.description or "").lower()
        if "exento" in description or "exenta" in description or "exención" in description:
            return "S2"
        return "N1"
