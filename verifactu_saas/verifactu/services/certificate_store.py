# -*- coding: utf-8 -*-
"""
Almacén de certificados PKCS#12 por tenant.

El .pfx y su contraseña se guardan cifrados por separado con AES-256-GCM
(nonce aleatorio de 96 bits, ``base64(nonce || ciphertext+tag)``). La clave
sale de ``VERIFACTU_ENCRYPTION_KEY`` y nunca se persiste.
"""
import abc
import base64
import binascii
import logging
import os
from collections import namedtuple
from datetime import timedelta

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ...config import get_settings
from ...exceptions import (
    CertificateExpiredError,
    CertificateNotFoundError,
    DecryptionError,
    InvalidCertificateError,
)
from ...models.database import utcnow
from ...models.tenant import Tenant
from ..utils.cert_handler import load_pkcs12

_logger = logging.getLogger(__name__)

NONCE_SIZE = 12

DecryptedCertificate = namedtuple("DecryptedCertificate", ["pkcs12_bytes", "password"])


class CredentialProvider(abc.ABC):
    """Origen del certificado de firma de un tenant."""

    @abc.abstractmethod
    def get_decrypted_certificate(self, tenant_id):
        """Devuelve ``DecryptedCertificate`` o lanza un CertificateError."""


def _naive_utc(dt):
    return dt.replace(tzinfo=None) if dt.tzinfo is not None else dt


class CertificateStore(CredentialProvider):

    def __init__(self, session, settings=None):
        self.session = session
        self.settings = settings or get_settings()

    # ---------- Cifrado ----------

    def _aesgcm(self):
        return AESGCM(self.settings.encryption_key_bytes())

    @staticmethod
    def _aad(tenant_id, field):
        # Liga el cifrado al tenant y al campo: no se puede mover a otra fila
        return ("verifactu:%s:%s" % (tenant_id, field)).encode("utf-8")

    def _encrypt(self, tenant_id, field, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        ct = self._aesgcm().encrypt(nonce, data, self._aad(tenant_id, field))
        return base64.b64encode(nonce + ct).decode("ascii")

    def _decrypt(self, tenant_id, field, token):
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise DecryptionError("No se pudo descifrar el certificado almacenado (formato no válido).")
        if len(raw) <= NONCE_SIZE:
            raise DecryptionError("No se pudo descifrar el certificado almacenado (datos truncados).")

        try:
            return self._aesgcm().decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], self._aad(tenant_id, field))
        except InvalidTag:
            # Clave distinta o datos alterados; sin más detalle
            raise DecryptionError("No se pudo descifrar el certificado almacenado. Revisa la clave de cifrado.")

    # ---------- Lectura ----------

    def _get_tenant(self, tenant_id):
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise CertificateNotFoundError("No existe el emisor %s." % tenant_id)
        return tenant

    def get_decrypted_certificate(self, tenant_id):
        tenant = self._get_tenant(tenant_id)
        if not tenant.has_certificate:
            raise CertificateNotFoundError(
                "No hay certificado digital configurado. Súbelo en Ajustes antes de enviar a VeriFactu."
            )

        if tenant.certificate_expires_at and tenant.certificate_expires_at <= utcnow():
            raise CertificateExpiredError(
                "El certificado digital caducó el %s. Renueva el certificado." %
                tenant.certificate_expires_at.strftime("%d/%m/%Y")
            )

        pkcs12_bytes = self._decrypt(tenant.id, "pfx", tenant.certificate_encrypted)
        password = self._decrypt(tenant.id, "password", tenant.certificate_password).decode("utf-8")
        return DecryptedCertificate(pkcs12_bytes, password)

    # ---------- Alta / baja ----------

    def store_certificate(self, tenant_id, pfx_bytes, password):
        """Valida el .pfx, lo cifra y guarda su fecha de caducidad. Hace commit."""
        tenant = self._get_tenant(tenant_id)
        if not password:
            raise InvalidCertificateError("El certificado .pfx requiere una contraseña.")

        _key, certificate = load_pkcs12(pfx_bytes, password)
        not_before = _naive_utc(certificate.not_valid_before_utc)
        expires_at = _naive_utc(certificate.not_valid_after_utc)
        now = utcnow()
        if expires_at <= now:
            raise InvalidCertificateError("El certificado caducó el %s." % expires_at.strftime("%d/%m/%Y"))
        if not_before > now:
            raise InvalidCertificateError("El certificado aún no es válido (desde %s)." % not_before.strftime("%d/%m/%Y"))

        tenant.certificate_encrypted = self._encrypt(tenant.id, "pfx", bytes(pfx_bytes))
        tenant.certificate_password = self._encrypt(tenant.id, "password", password)
        tenant.certificate_expires_at = expires_at
        self.session.commit()

        _logger.info("[VeriFactu] Certificado guardado para tenant %s (caduca %s).", tenant.id, expires_at.date())
        return self.certificate_status(tenant.id)

    def delete_certificate(self, tenant_id):
        tenant = self._get_tenant(tenant_id)
        tenant.certificate_encrypted = None
        tenant.certificate_password = None
        tenant.certificate_expires_at = None
        self.session.commit()
        _logger.info("[VeriFactu] Certificado eliminado para tenant %s.", tenant.id)

    # ---------- Estado ----------

    def is_expiring_soon(self, expires_at, now=None):
        if not expires_at:
            return False
        now = now or utcnow()
        return now < expires_at <= now + timedelta(days=self.settings.cert_expiry_warning_days)

    def certificate_status(self, tenant_id):
        tenant = self._get_tenant(tenant_id)
        expires_at = tenant.certificate_expires_at
        now = utcnow()
        status = {
            "hasCertificate": tenant.has_certificate,
            "expiresAt": expires_at.isoformat() if expires_at else None,
            "isExpired": bool(expires_at and expires_at <= now),
            "isExpiringSoon": self.is_expiring_soon(expires_at, now),
            "daysUntilExpiration": None,
        }
        if expires_at:
            status["daysUntilExpiration"] = (expires_at - now).days
        return status
