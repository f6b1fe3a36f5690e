# -*- coding: utf-8 -*-
import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile

from ..models.verifactu_record import STATUS_ACCEPTED, STATUS_REJECTED
from ..verifactu.services.certificate_store import CertificateStore
from ..verifactu.services.chain_verifier import VerifactuChainVerifier
from .deps import get_cron_service, get_session_factory, get_settings_dep, get_submission_service

_logger = logging.getLogger(__name__)

invoices_router = APIRouter(prefix="/invoices", tags=["VeriFactu"])
tenants_router = APIRouter(prefix="/tenants", tags=["VeriFactu"])
cron_router = APIRouter(prefix="/verifactu", tags=["VeriFactu"])


# ──────────────────────────────
# Facturas
# ──────────────────────────────
@invoices_router.post("/{invoice_id}/verifactu/submit", summary="Enviar la factura a VeriFactu")
def submit_invoice(invoice_id: int, service=Depends(get_submission_service)):
    record = service.submit_invoice(invoice_id)

    if record.status == STATUS_ACCEPTED:
        message = "Factura registrada en VeriFactu."
    elif record.status == STATUS_REJECTED:
        message = "AEAT rechazó el registro: %s" % (record.error_message or "-")
    else:
        message = "No se pudo completar el envío: %s" % (record.error_message or "-")

    return {
        "success": record.status == STATUS_ACCEPTED,
        "message": message,
        "csv": record.aeat_csv,
        "status": record.status,
        "hash": record.hash or "",
    }


@invoices_router.get("/{invoice_id}/verifactu", summary="Estado VeriFactu de la factura")
def get_invoice_verifactu(invoice_id: int, service=Depends(get_submission_service)):
    record = service.get_record(invoice_id)
    if record is None:
        return {"invoiceId": invoice_id, "status": None}
    return record.to_dict()


# ──────────────────────────────
# Emisores
# ──────────────────────────────
@tenants_router.get("/{tenant_id}/verifactu/stats")
def get_stats(tenant_id: int, service=Depends(get_submission_service)):
    return service.get_stats(tenant_id)


@tenants_router.get("/{tenant_id}/verifactu/chain", summary="Verificar la cadena de huellas")
def verify_chain(tenant_id: int, session_factory=Depends(get_session_factory)):
    session = session_factory()
    try:
        return VerifactuChainVerifier(session).verify(tenant_id)
    finally:
        session.close()


@tenants_router.put("/{tenant_id}/certificate", summary="Subir el certificado digital (.pfx/.p12)")
def upload_certificate(
    tenant_id: int,
    file: UploadFile = File(...),
    password: str = Form(...),
    session_factory=Depends(get_session_factory),
    settings=Depends(get_settings_dep),
):
    pfx_bytes = file.file.read()
    session = session_factory()
    try:
        status = CertificateStore(session, settings).store_certificate(tenant_id, pfx_bytes, password)
    finally:
        session.close()
    return dict(status, success=True, message="Certificado guardado correctamente.")


@tenants_router.delete("/{tenant_id}/certificate")
def delete_certificate(tenant_id: int, session_factory=Depends(get_session_factory),
                       settings=Depends(get_settings_dep)):
    session = session_factory()
    try:
        CertificateStore(session, settings).delete_certificate(tenant_id)
    finally:
        session.close()
    return {"success": True, "message": "Certificado eliminado."}


@tenants_router.get("/{tenant_id}/certificate")
def get_certificate_status(tenant_id: int, session_factory=Depends(get_session_factory),
                           settings=Depends(get_settings_dep)):
    session = session_factory()
    try:
        return CertificateStore(session, settings).certificate_status(tenant_id)
    finally:
        session.close()


# ──────────────────────────────
# Reintentos
# ──────────────────────────────
@cron_router.post("/process-pending", summary="Reenviar registros pendientes o en error")
def process_pending(cron=Depends(get_cron_service)):
    summary = cron.run()
    return dict(summary, success=True,
                message="Procesadas %s facturas: %s aceptadas, %s con fallo." % (
                    summary["picked"], summary["ok"], summary["failed"]))
