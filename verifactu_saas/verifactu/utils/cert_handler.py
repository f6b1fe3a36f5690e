# -*- coding: utf-8 -*-
import logging
import os
import tempfile

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ...exceptions import InvalidCertificateError

_logger = logging.getLogger(__name__)


def load_pkcs12(pfx_data, pfx_password):
    """(private_key, certificate) del PKCS#12, o InvalidCertificateError."""
    if not pfx_data:
        raise InvalidCertificateError("No se ha proporcionado ningún certificado .pfx.")
    if not isinstance(pfx_data, (bytes, bytearray)):
        raise InvalidCertificateError("El certificado debe ser bytes, pero se recibió: %s" % type(pfx_data).__name__)

    password = pfx_password.encode("utf-8") if isinstance(pfx_password, str) else pfx_password
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(bytes(pfx_data), password or None)
    except (ValueError, TypeError):
        # Sin detalles: el mensaje de cryptography puede hablar de la contraseña
        raise InvalidCertificateError("No se pudo abrir el certificado. Verifica el archivo y la contraseña.")

    if private_key is None or certificate is None:
        raise InvalidCertificateError("El archivo .p12/.pfx no contiene clave privada y certificado.")
    return private_key, certificate


class VerifactuCertHandler:
    """
    Materializa el PKCS#12 como PEM temporales (cert + clave) para mTLS.
    Los ficheros se borran al salir del bloque ``with``.
    """

    def __init__(self, pfx_data, pfx_password):
        self.pfx_data = pfx_data
        self.pfx_password = pfx_password
        self.cert_path = None
        self.key_path = None

    def __enter__(self):
        private_key, certificate = load_pkcs12(self.pfx_data, self.pfx_password)

        cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        )

        self.cert_path = self._write_temp(cert_pem, ".crt")
        self.key_path = self._write_temp(key_pem, ".key")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for path in (self.cert_path, self.key_path):
            if path and os.path.exists(path):
                os.unlink(path)
        self.cert_path = self.key_path = None

    @staticmethod
    def _write_temp(data, suffix):
        fd, path = tempfile.mkstemp(suffix=suffix)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(path, 0o600)
        return path

    @property
    def cert_tuple(self):
        """Formato ``cert=`` de requests."""
        return (self.cert_path, self.key_path)
