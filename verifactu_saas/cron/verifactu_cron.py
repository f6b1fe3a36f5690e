# -*- coding: utf-8 -*-
import argparse
import logging
import time
from datetime import timedelta

from sqlalchemy import or_, select, update

from ..config import get_settings
from ..exceptions import VerifactuError
from ..models.database import build_engine, build_session_factory, init_db, utcnow
from ..models.status_log import log_verifactu_status
from ..models.verifactu_record import STATUS_ERROR, STATUS_PENDING, STATUS_SENT, VerifactuRecord
from ..verifactu.services.submission import VerifactuSubmissionService

_logger = logging.getLogger(__name__)


def next_backoff_minutes(retry_count, base_min, cap_min):
    """base * 2**retry, con tope."""
    retry = min(max(0, int(retry_count or 0)), 20)
    base = max(1, int(base_min or 10))
    cap = max(base, int(cap_min or 60))
    return min(cap, base * (2 ** retry))


class VerifactuCronService(object):
    """
    Reintentos periódicos de VeriFactu.
    - Watchdog de registros 'sent' atascados (sin respuesta) → 'error'
    - Selección de 'pending' abandonados y 'error' con backoff exponencial y tope
    - Un fallo en una factura no detiene el lote
    """

    def __init__(self, session_factory, service, settings=None):
        self.session_factory = session_factory
        self.service = service
        self.settings = settings or get_settings()

    # ───────────────── ENTRYPOINT ─────────────────
    def run(self, now=None):
        now = now or utcnow()
        released = self._release_stuck_sent(now)
        candidates = self._pick_invoices_batch(now)

        summary = {"released": released, "picked": len(candidates), "ok": 0, "failed": 0}
        if not candidates:
            return summary

        _logger.info(
            "[VeriFactu] Cron: procesando %s facturas (batch=%s, base_backoff=%sm, cap_backoff=%sm).",
            len(candidates), self.settings.cron_batch_size,
            self.settings.retry_backoff_min, self.settings.retry_backoff_cap_min,
        )

        for invoice_id in candidates:
            try:
                record = self.service.submit_invoice(invoice_id)
            except VerifactuError as e:
                _logger.warning("[VeriFactu] Error al reenviar factura %s: %s", invoice_id, e.message)
                summary["failed"] += 1
                continue
            except Exception:
                _logger.exception("[VeriFactu] Error inesperado al reenviar factura %s", invoice_id)
                summary["failed"] += 1
                continue

            if record is not None and record.status == "accepted":
                summary["ok"] += 1
            else:
                summary["failed"] += 1

        _logger.info("[VeriFactu] Cron resumen → ok=%s, fail=%s, batch=%s",
                     summary["ok"], summary["failed"], len(candidates))
        return summary

    # ───────────────── Watchdog de 'sent' ─────────────────
    def _release_stuck_sent(self, now):
        ttl_min = self.settings.watchdog_ttl_min
        cutoff = now - timedelta(minutes=ttl_min)
        message = "Sin respuesta de AEAT tras %s minutos; se reintentará." % ttl_min

        session = self.session_factory()
        try:
            stuck = session.execute(
                select(VerifactuRecord).where(
                    VerifactuRecord.status == STATUS_SENT,
                    or_(VerifactuRecord.sent_at.is_(None), VerifactuRecord.sent_at < cutoff),
                ).limit(200)
            ).scalars().all()

            released = 0
            for record in stuck:
                result = session.execute(
                    update(VerifactuRecord)
                    .where(VerifactuRecord.id == record.id, VerifactuRecord.status == STATUS_SENT)
                    .values(status=STATUS_ERROR, error_message=message, updated_at=now,
                            retry_count=VerifactuRecord.retry_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                session.refresh(record)
                log_verifactu_status(session, record, notes=message)
                released += 1
            session.commit()
        finally:
            session.close()

        if released:
            _logger.warning("[VeriFactu] Liberados %s registros atascados en 'sent'.", released)
        return released

    # ───────────────── Selección de candidatas ─────────────────
    def _pick_invoices_batch(self, now):
        s = self.settings
        batch = s.cron_batch_size
        stale_cutoff = now - timedelta(minutes=s.watchdog_ttl_min)

        session = self.session_factory()
        try:
            # PENDING abandonados (creados pero nunca enviados)
            pending = session.execute(
                select(VerifactuRecord.invoice_id)
                .where(VerifactuRecord.status == STATUS_PENDING, VerifactuRecord.updated_at < stale_cutoff)
                .order_by(VerifactuRecord.id.asc())
                .limit(batch)
            ).scalars().all()
            if len(pending) >= batch:
                return list(pending)
            remaining = batch - len(pending)

            # ERROR con backoff
            superset = session.execute(
                select(VerifactuRecord)
                .where(
                    VerifactuRecord.status == STATUS_ERROR,
                    VerifactuRecord.auto_retry.is_(True),
                    VerifactuRecord.retry_count < s.retry_max,
                )
                .order_by(VerifactuRecord.last_attempt_at.asc(), VerifactuRecord.id.asc())
                .limit(5 * remaining)
            ).scalars().all()
        finally:
            session.close()

        eligible = []
        for record in superset:
            wait_min = next_backoff_minutes(record.retry_count, s.retry_backoff_min, s.retry_backoff_cap_min)
            last_try = record.last_attempt_at or record.updated_at or (now - timedelta(days=365))
            if last_try + timedelta(minutes=wait_min) <= now:
                eligible.append(record.invoice_id)
            if len(eligible) >= remaining:
                break

        return list(pending) + eligible


def run_once(settings=None, now=None):
    """Una pasada del cron contra ``DATABASE_URL`` (cliente AEAT según ajustes)."""
    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    try:
        init_db(engine)
        session_factory = build_session_factory(engine)
        service = VerifactuSubmissionService(session_factory, settings=settings, engine=engine)
        return VerifactuCronService(session_factory, service, settings).run(now=now)
    finally:
        engine.dispose()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reintentos periódicos de VeriFactu")
    parser.add_argument("--interval", type=int, default=0,
                        help="Minutos entre pasadas; 0 ejecuta una sola vez")
    parser.add_argument("--verbose", action="store_true", help="Log en nivel DEBUG")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = get_settings()
    while True:
        summary = run_once(settings)
        _logger.info("[VeriFactu] Cron: liberados=%s, seleccionadas=%s, ok=%s, fail=%s",
                     summary["released"], summary["picked"], summary["ok"], summary["failed"])
        if args.interval <= 0:
            return 0
        time.sleep(args.interval * 60)
