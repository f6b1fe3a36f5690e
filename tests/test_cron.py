# -*- coding: utf-8 -*-
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from verifactu_saas.config import VerifactuSettings
from verifactu_saas.cron import VerifactuCronService, main, next_backoff_minutes, run_once
from verifactu_saas.cron import verifactu_cron
from verifactu_saas.exceptions import CertificateExpiredError, CertificateNotFoundError
from verifactu_saas.models import VerifactuRecord, VerifactuStatusLog
from verifactu_saas.verifactu.services.certificate_store import CertificateStore

NOW = datetime(2025, 3, 20, 12, 0, 0)


class RecordingService(object):

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.submitted = []

    def submit_invoice(self, invoice_id):
        self.submitted.append(invoice_id)
        outcome = self.outcomes.get(invoice_id, "accepted")
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(status=outcome)


@pytest.fixture
def cron_settings():
    return VerifactuSettings(environment="test", cron_batch_size=5, retry_backoff_min=10,
                             retry_backoff_cap_min=60, retry_max=3, watchdog_ttl_min=30)


@pytest.fixture
def add_record(session, tenant, make_invoice):
    counter = {"n": 0}

    def _add_record(status, **values):
        counter["n"] += 1
        invoice = make_invoice(counter["n"])
        values.setdefault("updated_at", NOW)
        record = VerifactuRecord(tenant_id=tenant.id, invoice_id=invoice.id, status=status, **values)
        session.add(record)
        session.commit()
        return record
    return _add_record


def test_next_backoff_minutes():
    assert next_backoff_minutes(0, 10, 60) == 10
    assert next_backoff_minutes(1, 10, 60) == 20
    assert next_backoff_minutes(2, 10, 60) == 40
    assert next_backoff_minutes(3, 10, 60) == 60
    assert next_backoff_minutes(50, 10, 60) == 60


def test_picks_error_records_after_backoff(session_factory, cron_settings, add_record):
    due = add_record("error", retry_count=1, last_attempt_at=NOW - timedelta(minutes=25))
    waiting = add_record("error", retry_count=1, last_attempt_at=NOW - timedelta(minutes=5))
    exhausted = add_record("error", retry_count=3, last_attempt_at=NOW - timedelta(days=1))
    add_record("rejected", last_attempt_at=NOW - timedelta(days=1))
    add_record("accepted", last_attempt_at=NOW - timedelta(days=1))

    service = RecordingService()
    summary = VerifactuCronService(session_factory, service, cron_settings).run(now=NOW)

    assert service.submitted == [due.invoice_id]
    assert waiting.invoice_id not in service.submitted
    assert exhausted.invoice_id not in service.submitted
    assert summary == {"released": 0, "picked": 1, "ok": 1, "failed": 0}


def test_picks_abandoned_pending_first(session_factory, cron_settings, add_record):
    error = add_record("error", retry_count=0, last_attempt_at=NOW - timedelta(hours=1))
    stale = add_record("pending", updated_at=NOW - timedelta(hours=2))
    add_record("pending", updated_at=NOW - timedelta(minutes=1))

    service = RecordingService()
    VerifactuCronService(session_factory, service, cron_settings).run(now=NOW)
    assert service.submitted == [stale.invoice_id, error.invoice_id]


def test_batch_size_is_respected(session_factory, add_record):
    settings = VerifactuSettings(environment="test", cron_batch_size=2)
    for _ in range(4):
        add_record("error", retry_count=0, last_attempt_at=NOW - timedelta(hours=1))

    service = RecordingService()
    summary = VerifactuCronService(session_factory, service, settings).run(now=NOW)
    assert summary["picked"] == 2
    assert len(service.submitted) == 2


def test_failures_do_not_stop_the_batch(session_factory, cron_settings, add_record):
    first = add_record("error", retry_count=0, last_attempt_at=NOW - timedelta(hours=2))
    second = add_record("error", retry_count=0, last_attempt_at=NOW - timedelta(hours=1))
    service = RecordingService({first.invoice_id: CertificateExpiredError("caducado")})

    summary = VerifactuCronService(session_factory, service, cron_settings).run(now=NOW)
    assert service.submitted == [first.invoice_id, second.invoice_id]
    assert summary["ok"] == 1
    assert summary["failed"] == 1


def test_watchdog_releases_stuck_sent(session, session_factory, cron_settings, add_record):
    stuck = add_record("sent", hash="A" * 64, sent_at=NOW - timedelta(hours=1), last_attempt_at=NOW - timedelta(hours=1))
    recent = add_record("sent", hash="B" * 64, sent_at=NOW - timedelta(minutes=5), last_attempt_at=NOW - timedelta(minutes=5))

    service = RecordingService()
    summary = VerifactuCronService(session_factory, service, cron_settings).run(now=NOW)

    session.expire_all()
    released = session.get(VerifactuRecord, stuck.id)
    assert summary["released"] == 1
    assert released.status == "error"
    assert released.retry_count == 1
    assert "Sin respuesta" in released.error_message
    assert session.get(VerifactuRecord, recent.id).status == "sent"

    logs = session.execute(select(VerifactuStatusLog).where(VerifactuStatusLog.record_id == stuck.id)).scalars().all()
    assert [log.status for log in logs] == ["error"]
    # backoff de 20 min desde el último intento (hace 60) → se reintenta en la misma pasada
    assert service.submitted == [stuck.invoice_id]


def test_run_with_real_service(session, session_factory, service, fake_client, make_invoice, make_result, settings):
    fake_client.responses.append(make_result("error", error_message="sin conexión"))
    invoice = make_invoice(1)
    service.submit_invoice(invoice.id)

    session.expire_all()
    record = session.execute(select(VerifactuRecord).where(VerifactuRecord.invoice_id == invoice.id)).scalars().one()
    later = record.last_attempt_at + timedelta(minutes=30)

    summary = VerifactuCronService(session_factory, service, settings).run(now=later)
    assert summary["ok"] == 1
    session.expire_all()
    assert session.get(VerifactuRecord, record.id).status == "accepted"


def test_certificate_errors_are_left_for_manual_resubmission(session, session_factory, service, fake_client,
                                                              settings, tenant, make_invoice, pfx_bytes):
    store = CertificateStore(session, settings)
    store.delete_certificate(tenant.id)
    invoice = make_invoice(1)
    with pytest.raises(CertificateNotFoundError):
        service.submit_invoice(invoice.id)

    session.expire_all()
    record = session.execute(select(VerifactuRecord).where(VerifactuRecord.invoice_id == invoice.id)).scalars().one()
    assert record.status == "error"
    assert record.retry_count == 1
    assert record.auto_retry is False

    cron = VerifactuCronService(session_factory, service, settings)
    for hours in (1, 6, 48):
        summary = cron.run(now=record.last_attempt_at + timedelta(hours=hours))
        assert summary["picked"] == 0
    assert fake_client.calls == []

    # con el certificado de nuevo en su sitio, el reenvío manual funciona y vuelve al cron
    store.store_certificate(tenant.id, pfx_bytes, "secreto-pfx")
    assert service.submit_invoice(invoice.id).status == "accepted"
    session.expire_all()
    assert session.get(VerifactuRecord, record.id).auto_retry is True


@pytest.fixture
def file_settings(file_database_url):
    return VerifactuSettings(environment="test", database_url=file_database_url, encryption_key="clave-de-pruebas",
                             simulate=True, system_vendor_nif="B87654321")


@pytest.fixture
def stale_pending(file_session_factory, file_tenant, new_invoice):
    session = file_session_factory()
    try:
        invoice = new_invoice(file_tenant, number=1)
        session.add(invoice)
        session.flush()
        session.add(VerifactuRecord(tenant_id=file_tenant.id, invoice_id=invoice.id, status="pending",
                                    updated_at=NOW - timedelta(hours=2)))
        session.commit()
        return invoice.id
    finally:
        session.close()


def test_run_once_against_database_url(file_session_factory, file_settings, stale_pending):
    summary = run_once(file_settings, now=NOW)
    assert summary == {"released": 0, "picked": 1, "ok": 1, "failed": 0}

    session = file_session_factory()
    try:
        record = session.execute(
            select(VerifactuRecord).where(VerifactuRecord.invoice_id == stale_pending)
        ).scalars().one()
        assert record.status == "accepted"
        assert record.aeat_csv.startswith("TEST")
    finally:
        session.close()


def test_main_runs_a_single_pass(monkeypatch, file_settings, stale_pending):
    monkeypatch.setattr(verifactu_cron, "get_settings", lambda: file_settings)
    assert main([]) == 0
    assert run_once(file_settings)["picked"] == 0
