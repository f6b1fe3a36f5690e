# -*- coding: utf-8 -*-
"""
Errores de dominio VeriFactu.

Todos llevan un mensaje legible (se guarda tal cual en ``error_message`` del
registro) y el código HTTP con el que los expone la capa web.
"""


class VerifactuError(Exception):
    http_status = 400

    def __init__(self, message=None):
        self.message = message or self.__class__.__doc__ or "Error VeriFactu"
        super(VerifactuError, self).__init__(self.message)


class ConfigurationError(VerifactuError):
    """Configuración de VeriFactu inválida."""
    http_status = 500


# ---------- Entrada ----------

class InvoiceNotFoundError(VerifactuError):
    """Factura no encontrada."""
    http_status = 404


class InvalidInvoiceDataError(VerifactuError):
    """Datos de la factura incompletos o mal formados."""
    http_status = 422


# ---------- Certificado ----------

class CertificateError(VerifactuError):
    """Error con el certificado digital."""
    http_status = 400


class CertificateNotFoundError(CertificateError):
    """No hay certificado digital configurado."""


class CertificateExpiredError(CertificateError):
    """El certificado digital ha caducado."""


class DecryptionError(CertificateError):
    """No se pudo descifrar el certificado almacenado."""


class InvalidCertificateError(CertificateError):
    """El certificado PKCS#12 no es válido."""


class SigningError(CertificateError):
    """Error al firmar el XML."""


# ---------- AEAT ----------

class AeatError(VerifactuError):
    """Error en la comunicación con la AEAT."""
    http_status = 502

    def __init__(self, message=None, code=None, raw_response=None):
        super(AeatError, self).__init__(message)
        self.code = code
        self.raw_response = raw_response


class AeatTransientError(AeatError):
    """Incidencia temporal de la AEAT o de red."""
    http_status = 503


class AeatRejectedError(AeatError):
    """La AEAT ha rechazado el registro."""
    http_status = 422


# ---------- Concurrencia / integridad ----------

class SubmissionInProgressError(VerifactuError):
    """Ya hay un envío en curso para esta factura."""
    http_status = 409


class ChainIntegrityError(VerifactuError):
    """El encadenamiento de huellas está roto."""
    http_status = 409


class QrEncodingError(VerifactuError):
    """No se pudo generar el código QR."""
    http_status = 422
