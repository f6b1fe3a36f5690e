# -*- coding: utf-8 -*-
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from .deps import get_submission_service
from .download_qr import _safe_filename

router = APIRouter(tags=["VeriFactu"])


@router.get("/invoices/{invoice_id}/verifactu/xml", summary="Descargar el XML firmado")
def download_verifactu_xml(invoice_id: int, service=Depends(get_submission_service)):
    record = service.get_record(invoice_id)
    if record is None or not record.xml_signed:
        raise HTTPException(status_code=404, detail="La factura no tiene XML VeriFactu firmado.")

    return Response(
        content=record.xml_signed.encode("utf-8"),
        media_type="application/xml",
        headers={"Content-Disposition": 'attachment; filename="%s"' % _safe_filename(str(invoice_id), "xml")},
    )
