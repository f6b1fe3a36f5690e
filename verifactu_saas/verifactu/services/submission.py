# -*- coding: utf-8 -*-
"""
Orquestador del envío VeriFactu de una factura.

    pending → sent → {accepted | rejected | error}

Cada transición es una transacción (registro + fila de histórico). El paso a
``sent`` es un UPDATE condicional sobre el estado esperado: si no afecta a
ninguna fila, otro proceso ya está enviando la factura.
"""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ...config import get_settings
from ...exceptions import (
    AeatRejectedError,
    AeatTransientError,
    CertificateError,
    InvoiceNotFoundError,
    QrEncodingError,
    SubmissionInProgressError,
    VerifactuError,
)
from ...models.account_invoice import Invoice
from ...models.database import utcnow
from ...models.status_log import log_verifactu_status
from ...models.verifactu_record import (
    DISPATCHABLE_STATUSES,
    STATUS_ACCEPTED,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SENT,
    STATUSES,
    VerifactuRecord,
)
from ..utils.tenant_lock import TenantLock
from ..utils.verifactu_xml_validator import VerifactuXMLValidator
from .certificate_store import CertificateStore
from .hash_calculator import VerifactuHashCalculator
from .qr_content import VerifactuQRContentGenerator, generate_qr
from .xml_builder import VerifactuEnvelopeBuilder, build_unsigned_xml
from .xml_sender import build_aeat_client
from .xml_signer import sign

_logger = logging.getLogger(__name__)


class VerifactuSubmissionService(object):

    def __init__(self, session_factory, settings=None, client=None, credentials=None,
                 engine=None, lock_timeout=60.0):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client = client or build_aeat_client(self.settings)
        # None → CertificateStore sobre la sesión de cada envío
        self.credentials = credentials
        self.engine = engine if engine is not None else session_factory.kw.get("bind")
        self.lock_timeout = lock_timeout

    # ──────────────────────────────
    # Helpers
    # ──────────────────────────────
    @staticmethod
    def _get_record(session, invoice_id):
        stmt = select(VerifactuRecord).where(VerifactuRecord.invoice_id == invoice_id)
        return session.execute(stmt).scalars().first()

    @staticmethod
    def _load_invoice(session, invoice_id):
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError("Factura %s no encontrada." % invoice_id)
        return invoice

    def _credential_provider(self, session):
        return self.credentials or CertificateStore(session, self.settings)

    @staticmethod
    def _check_dispatchable(record):
        """True si ya está aceptada (no-op); lanza si hay un envío en vuelo."""
        if record is None:
            return False
        if record.status == STATUS_SENT:
            raise SubmissionInProgressError(
                "La factura ya se está enviando a VeriFactu. Espera a que termine antes de reintentar."
            )
        return record.status == STATUS_ACCEPTED

    def _create_or_reuse_record(self, session, invoice):
        record = self._get_record(session, invoice.id)
        if record is not None:
            return record

        record = VerifactuRecord(
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            status=STATUS_PENDING,
        )
        session.add(record)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise SubmissionInProgressError("Ya existe un registro VeriFactu en curso para esta factura.")
        log_verifactu_status(session, record, notes="Registro VeriFactu creado")
        session.commit()
        _logger.info("[VeriFactu] Registro creado para factura %s", invoice.full_number)
        return record

    def _mark_error(self, session, record, message, aeat_code=None, auto_retry=True):
        """
        Deja el registro en ``error`` con su mensaje (transacción propia).
        ``auto_retry=False`` lo saca del cron hasta un reenvío manual.
        """
        session.rollback()
        session.refresh(record)
        now = utcnow()
        record.status = STATUS_ERROR
        record.error_message = message
        record.retry_count = (record.retry_count or 0) + 1
        record.auto_retry = auto_retry
        record.last_attempt_at = now
        record.updated_at = now
        log_verifactu_status(session, record, notes=message, aeat_code=aeat_code)
        session.commit()
        _logger.warning("[VeriFactu] Factura %s → error: %s", record.invoice_id, message)
        return record

    def _mark_sent(self, session, record, values):
        """UPDATE condicional a ``sent``; 0 filas → otro proceso se adelantó."""
        now = utcnow()
        values = dict(values, status=STATUS_SENT, sent_at=now, last_attempt_at=now, updated_at=now,
                      error_message=None, aeat_csv=None, qr_code=None, aeat_response=None,
                      auto_retry=True)
        result = session.execute(
            update(VerifactuRecord)
            .where(VerifactuRecord.id == record.id, VerifactuRecord.status.in_(DISPATCHABLE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise SubmissionInProgressError("La factura ya se está enviando a VeriFactu.")
        session.refresh(record)
        log_verifactu_status(session, record, notes="XML firmado y enviado a AEAT")
        session.commit()
        _logger.info("[VeriFactu] Factura %s → sent (huella %s…)", record.invoice_id, record.hash[:16])

    def _finalize(self, session, record, invoice, response):
        now = utcnow()
        status = response.get("status") or STATUS_ERROR
        code = response.get("code")

        record.aeat_response = {
            "status": status,
            "code": code,
            "csv": response.get("csv"),
            "attempts": response.get("attempts"),
            "raw": response.get("raw_response") or "",
        }
        record.updated_at = now

        if status == STATUS_ACCEPTED:
            record.status = STATUS_ACCEPTED
            record.aeat_csv = response.get("csv")
            record.error_message = ""
            try:
                record.qr_code = generate_qr(invoice, record.aeat_csv, settings=self.settings)
            except QrEncodingError as e:
                _logger.warning("[VeriFactu] Factura %s aceptada pero sin QR: %s", invoice.full_number, e.message)
                record.qr_code = None
            notes = "Aceptada por AEAT (CSV %s)" % (record.aeat_csv or "-")
            if response.get("error_message"):
                notes += ": %s" % response["error_message"]
        elif status == STATUS_REJECTED:
            record.status = STATUS_REJECTED
            record.aeat_csv = None
            record.error_message = response.get("error_message") or "Registro rechazado por AEAT"
            notes = record.error_message
        else:
            record.status = STATUS_ERROR
            record.aeat_csv = None
            record.error_message = response.get("error_message") or "Error de comunicación con AEAT"
            record.retry_count = (record.retry_count or 0) + 1
            notes = record.error_message

        log_verifactu_status(session, record, notes=notes, aeat_code=code)
        session.commit()
        _logger.info("[VeriFactu] Factura %s → %s", invoice.full_number, record.status)
        return record

    def _dispatch(self, envelope, certificate):
        """Llamada AEAT; los clientes que lanzan en lugar de devolver se normalizan."""
        try:
            return self.client.submit(envelope, certificate=certificate)
        except AeatRejectedError as e:
            return {"accepted": False, "status": STATUS_REJECTED, "csv": None, "raw_response": e.raw_response or "",
                    "error_message": e.message, "code": e.code}
        except AeatTransientError as e:
            return {"accepted": False, "status": STATUS_ERROR, "csv": None, "raw_response": e.raw_response or "",
                    "error_message": e.message, "code": e.code}

    # ──────────────────────────────
    # API pública
    # ──────────────────────────────
    def submit_invoice(self, invoice_id):
        session = self.session_factory()
        try:
            invoice = self._load_invoice(session, invoice_id)
            existing = self._get_record(session, invoice_id)
            if self._check_dispatchable(existing):
                _logger.info("[VeriFactu] Factura %s ya aceptada; no se reenvía.", invoice.full_number)
                return existing

            # Errores de entrada: sin tocar el registro
            VerifactuXMLValidator(invoice).validate()

            with TenantLock(self.engine, invoice.tenant_id, timeout=self.lock_timeout):
                # Releer bajo lock: otro proceso pudo adelantarse
                session.expire_all()
                existing = self._get_record(session, invoice_id)
                if self._check_dispatchable(existing):
                    return existing

                record = self._create_or_reuse_record(session, invoice)
                return self._submit_locked(session, record, invoice)
        finally:
            session.close()

    def _submit_locked(self, session, record, invoice):
        try:
            certificate = self._credential_provider(session).get_decrypted_certificate(invoice.tenant_id)
        except CertificateError as e:
            self._mark_error(session, record, e.message, auto_retry=False)
            raise

        calculator = VerifactuHashCalculator(session, invoice)
        previous = calculator.find_previous_record()
        previous_hash = previous.hash if previous is not None else ""
        new_hash = calculator.compute_hash(previous_hash)
        chained_at = utcnow()
        if previous_hash:
            _logger.info("[VeriFactu] Factura %s encadenada a %s…", invoice.full_number, previous_hash[:16])
        else:
            _logger.info("[VeriFactu] Factura %s es el primer registro de la cadena.", invoice.full_number)

        try:
            xml_unsigned = build_unsigned_xml(
                invoice, new_hash, previous_hash,
                previous_invoice=previous.invoice if previous is not None else None,
                chained_at=chained_at,
                settings=self.settings,
            )
            xml_signed = sign(xml_unsigned, certificate)
            envelope = VerifactuEnvelopeBuilder(invoice.tenant).build(xml_signed)
        except VerifactuError as e:
            # Firma o datos: sin envío, el registro queda en error con el motivo
            self._mark_error(session, record, e.message, auto_retry=False)
            raise

        self._mark_sent(session, record, {
            "hash": new_hash,
            "previous_hash": previous_hash,
            "chained_at": chained_at,
            "xml_unsigned": xml_unsigned,
            "xml_signed": xml_signed,
        })

        try:
            response = self._dispatch(envelope, certificate)
        except Exception as e:
            _logger.exception("[VeriFactu] Error inesperado enviando la factura %s", invoice.full_number)
            self._mark_error(session, record, "Error inesperado en el envío a AEAT: %s" % e.__class__.__name__)
            raise

        return self._finalize(session, record, invoice, response)

    # ──────────────────────────────
    # Lectura
    # ──────────────────────────────
    def get_record(self, invoice_id):
        session = self.session_factory()
        try:
            self._load_invoice(session, invoice_id)
            return self._get_record(session, invoice_id)
        finally:
            session.close()

    def get_qr_png(self, invoice_id):
        session = self.session_factory()
        try:
            invoice = self._load_invoice(session, invoice_id)
            record = self._get_record(session, invoice_id)
            csv = record.aeat_csv if record is not None else None
            return invoice.full_number, VerifactuQRContentGenerator(invoice, csv, settings=self.settings).generate_qr_binary()
        finally:
            session.close()

    def get_stats(self, tenant_id):
        session = self.session_factory()
        try:
            rows = session.execute(
                select(VerifactuRecord.status, func.count(VerifactuRecord.id))
                .where(VerifactuRecord.tenant_id == tenant_id)
                .group_by(VerifactuRecord.status)
            ).all()
        finally:
            session.close()

        stats = dict((status, 0) for status in STATUSES)
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(stats[s] for s in STATUSES)
        return stats
