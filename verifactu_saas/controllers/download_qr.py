# -*- coding: utf-8 -*-
import re

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from .deps import get_submission_service

router = APIRouter(tags=["VeriFactu"])


def _safe_filename(number, ext):
    safe_num = re.sub(r"[^\w\-_.]+", "_", number or "factura")
    return "verifactu_%s.%s" % (safe_num, ext)


@router.get("/invoices/{invoice_id}/verifactu/qr", summary="Descargar el QR de cotejo")
def download_qr(invoice_id: int, service=Depends(get_submission_service)):
    """
    PNG con la URL de cotejo AEAT de la factura (incluye el CSV si ya fue aceptada).
    """
    number, png = service.get_qr_png(invoice_id)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": 'attachment; filename="%s"' % _safe_filename(number, "png")},
    )
