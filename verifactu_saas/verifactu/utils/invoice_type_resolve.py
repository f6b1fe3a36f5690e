# -*- coding: utf-8 -*-

SIN_NIF = ('', 'SINNIF', '-', 'NA', 'N/A')


class VerifactuTipoFacturaResolver(object):

    @staticmethod
    def _customer_vat(invoice):
        vat = getattr(invoice, 'customer_nif', None) or u""
        return vat.strip().upper()

    @staticmethod
    def resolve(invoice):
        """
        Tipo de factura VeriFactu:
          - F2: simplificada sin identificación (cliente sin NIF)
          - F1: completa (cliente con NIF)
        """
        if VerifactuTipoFacturaResolver._customer_vat(invoice) in SIN_NIF:
            return "F2"
        return "F1"

    @staticmethod
    def is_simplificada(invoice):
        return VerifactuTipoFacturaResolver.resolve(invoice) == "F2"
