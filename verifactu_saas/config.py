# -*- coding: utf-8 -*-
"""
Configuración del pipeline VeriFactu (por proceso, desde variables de entorno / .env)
"""
import hashlib
import os

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()

ENV_TEST = "test"
ENV_PRODUCTION = "production"

ENDPOINTS = {
    ENV_TEST: "https://prewww1.aeat.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP",
    ENV_PRODUCTION: "https://www1.agenciatributaria.gob.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP",
}

_TRUE = ("1", "true", "yes", "s", "si", "on")


def _env(name, default=None):
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    return val.strip()


def _as_int(name, value, minimum=0):
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError("%s debe ser un entero (recibido: %r)" % (name, value))
    if value < minimum:
        raise ConfigurationError("%s debe ser >= %s" % (name, minimum))
    return value


def _as_float(name, value, minimum=0.0):
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError("%s debe ser numérico (recibido: %r)" % (name, value))
    if value < minimum:
        raise ConfigurationError("%s debe ser >= %s" % (name, minimum))
    return value


def _as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE


class VerifactuSettings(object):
    """
    Ajustes de VeriFactu.

    Sin argumentos lee el entorno; cualquier clave puede sobreescribirse por
    keyword (p.ej. en tests): ``VerifactuSettings(timeout=1, simulate=True)``.
    """

    def __init__(self, **overrides):
        def get(key, env_name, default=None):
            if key in overrides:
                return overrides[key]
            return _env(env_name, default)

        self.environment = (get("environment", "VERIFACTU_ENVIRONMENT", ENV_TEST) or "").lower()
        if self.environment not in ENDPOINTS:
            raise ConfigurationError(
                "Entorno VeriFactu inválido: %s. Debe ser '%s' o '%s'" % (self.environment, ENV_TEST, ENV_PRODUCTION)
            )

        self.database_url = get("database_url", "DATABASE_URL", "sqlite:///verifactu.db")
        self.endpoint_url = get("endpoint_url", "VERIFACTU_ENDPOINT", ENDPOINTS[self.environment])

        # Envío AEAT
        self.timeout = _as_float("VERIFACTU_TIMEOUT", get("timeout", "VERIFACTU_TIMEOUT", 30), minimum=0.1)
        self.max_attempts = _as_int("VERIFACTU_MAX_ATTEMPTS", get("max_attempts", "VERIFACTU_MAX_ATTEMPTS", 3), minimum=1)
        self.backoff_base = _as_float("VERIFACTU_BACKOFF_BASE", get("backoff_base", "VERIFACTU_BACKOFF_BASE", 1.0))
        self.backoff_cap = _as_float("VERIFACTU_BACKOFF_CAP", get("backoff_cap", "VERIFACTU_BACKOFF_CAP", 30.0))
        self.backoff_jitter = _as_float("VERIFACTU_BACKOFF_JITTER", get("backoff_jitter", "VERIFACTU_BACKOFF_JITTER", 0.5))
        self.simulate = _as_bool(get("simulate", "VERIFACTU_SIMULATE", False))

        # Cifrado de certificados (la clave nunca se persiste)
        self.encryption_key = get("encryption_key", "VERIFACTU_ENCRYPTION_KEY")
        self.cert_expiry_warning_days = _as_int(
            "VERIFACTU_CERT_EXPIRY_WARNING_DAYS",
            get("cert_expiry_warning_days", "VERIFACTU_CERT_EXPIRY_WARNING_DAYS", 30),
        )

        # Sistema informático
        self.system_name = get("system_name", "VERIFACTU_SYSTEM_NAME", "VF-SAAS")
        self.system_id = get("system_id", "VERIFACTU_SYSTEM_ID", "01")
        self.system_version = get("system_version", "VERIFACTU_SYSTEM_VERSION", "1.0.0")
        self.system_installation = get("system_installation", "VERIFACTU_SYSTEM_INSTALLATION", "1")
        self.system_vendor_name = get("system_vendor_name", "VERIFACTU_SYSTEM_VENDOR_NAME")
        self.system_vendor_nif = get("system_vendor_nif", "VERIFACTU_SYSTEM_VENDOR_NIF")

        # Reintentos periódicos (cron)
        self.cron_batch_size = _as_int("VERIFACTU_CRON_BATCH_SIZE", get("cron_batch_size", "VERIFACTU_CRON_BATCH_SIZE", 5), minimum=1)
        self.retry_backoff_min = _as_int("VERIFACTU_RETRY_BACKOFF_MIN", get("retry_backoff_min", "VERIFACTU_RETRY_BACKOFF_MIN", 10), minimum=1)
        self.retry_backoff_cap_min = max(
            self.retry_backoff_min,
            _as_int("VERIFACTU_RETRY_BACKOFF_CAP_MIN", get("retry_backoff_cap_min", "VERIFACTU_RETRY_BACKOFF_CAP_MIN", 60)),
        )
        self.retry_max = _as_int("VERIFACTU_RETRY_MAX", get("retry_max", "VERIFACTU_RETRY_MAX", 10))
        self.watchdog_ttl_min = _as_int("VERIFACTU_WATCHDOG_TTL_MIN", get("watchdog_ttl_min", "VERIFACTU_WATCHDOG_TTL_MIN", 30), minimum=1)

    @property
    def is_production(self):
        return self.environment == ENV_PRODUCTION

    def encryption_key_bytes(self):
        """Clave AES-256 derivada del secreto configurado."""
        if not self.encryption_key:
            raise ConfigurationError("VERIFACTU_ENCRYPTION_KEY no está configurada.")
        return hashlib.sha256(self.encryption_key.encode("utf-8")).digest()


_settings = None


def get_settings():
    global _settings
    if _settings is None:
        _settings = VerifactuSettings()
    return _settings
