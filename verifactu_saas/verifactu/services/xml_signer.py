# -*- coding: utf-8 -*-
import lxml.etree as LET
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from signxml import CanonicalizationMethod, DigestAlgorithm, SignatureConstructionMethod, SignatureMethod, XMLSigner
import logging

from ...exceptions import InvalidCertificateError, SigningError
from ..utils.cert_handler import load_pkcs12

_logger = logging.getLogger(__name__)

# Canonicalización exclusiva: la firma sigue siendo válida al meter el
# RegistroAlta dentro del sobre SOAP
C14N_EXCLUSIVE = CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0

SUPPORTED_KEYS = (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)


class VerifactuXMLSigner:
    def __init__(self, certificate):
        """
        Recibe el certificado descifrado: ``(pkcs12_bytes, password)``.
        """
        self.certificate = certificate

    def _load(self):
        try:
            pkcs12_bytes, password = self.certificate
        except (TypeError, ValueError):
            raise SigningError("No se ha proporcionado el certificado digital (.pfx) y su contraseña.")
        if not pkcs12_bytes or not password:
            raise SigningError("No se ha proporcionado el certificado digital (.pfx) o la contraseña.")

        try:
            private_key, certificate = load_pkcs12(pkcs12_bytes, password)
        except InvalidCertificateError as e:
            raise SigningError("No se pudo cargar el certificado PFX: %s" % e.message)

        if not isinstance(private_key, SUPPORTED_KEYS):
            raise SigningError("Tipo de clave no soportado para la firma: %s" % type(private_key).__name__)
        return private_key, certificate

    @staticmethod
    def _signature_method(private_key):
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return SignatureMethod.ECDSA_SHA256
        return SignatureMethod.RSA_SHA256

    def sign(self, xml_string):
        """
        Firma (enveloped, SHA-256) el XML dado y devuelve el XML firmado.
        """
        private_key, certificate = self._load()

        try:
            if isinstance(xml_string, str):
                xml_doc = LET.fromstring(xml_string.encode("utf-8"))
            else:
                xml_doc = LET.fromstring(xml_string)
        except LET.XMLSyntaxError as e:
            raise SigningError("El XML a firmar no es válido: %s" % e)

        pem_cert = certificate.public_bytes(Encoding.PEM).decode("utf-8")
        try:
            signer = XMLSigner(
                method=SignatureConstructionMethod.enveloped,
                signature_algorithm=self._signature_method(private_key),
                digest_algorithm=DigestAlgorithm.SHA256,
                c14n_algorithm=C14N_EXCLUSIVE,
            )
            signed_doc = signer.sign(xml_doc, key=private_key, cert=pem_cert)
        except Exception as e:
            _logger.exception("[VeriFactu] Error al firmar el XML")
            raise SigningError("Error al firmar el XML: %s" % e.__class__.__name__)

        _logger.info("[VeriFactu] XML firmado correctamente.")
        return LET.tostring(signed_doc, encoding="utf-8", xml_declaration=True).decode("utf-8")


def sign(xml_unsigned, certificate):
    return VerifactuXMLSigner(certificate).sign(xml_unsigned)
