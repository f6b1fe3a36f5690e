# -*- coding: utf-8 -*-
import logging

from sqlalchemy import select

from ...exceptions import ChainIntegrityError
from ...models.verifactu_record import CHAINED_STATUSES, VerifactuRecord
from .hash_calculator import compute_hash

_logger = logging.getLogger(__name__)


def _short(h):
    return (h or "")[:16]


class VerifactuChainVerifier:
    """
    Verifica la integridad del encadenamiento de un emisor:
      • El previous_hash de cada registro coincide con el hash del anterior
        (el primero debe ir vacío).
      • Recalcular la huella con el contenido actual de la factura reproduce
        el hash guardado (detecta facturas modificadas tras el envío).
    """

    def __init__(self, session):
        self.session = session

    def _chain(self, tenant_id):
        stmt = (
            select(VerifactuRecord)
            .where(
                VerifactuRecord.tenant_id == tenant_id,
                VerifactuRecord.status.in_(CHAINED_STATUSES),
                VerifactuRecord.hash != "",
            )
            .order_by(VerifactuRecord.chained_at.asc(), VerifactuRecord.id.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def verify(self, tenant_id, raise_on_error=False):
        records = self._chain(tenant_id)
        issues = []
        expected_prev = ""

        for record in records:
            num = record.invoice.full_number if record.invoice is not None else "#%s" % record.invoice_id

            if (record.previous_hash or "") != expected_prev:
                issues.append({
                    "invoiceId": record.invoice_id,
                    "invoiceNumber": num,
                    "type": "broken_link",
                    "message": "Ruptura de cadena: previous_hash=%s vs esperado=%s" % (
                        _short(record.previous_hash) or "-", _short(expected_prev) or "-"),
                })

            calc_hash = compute_hash(record.invoice, record.previous_hash)
            if calc_hash != record.hash:
                issues.append({
                    "invoiceId": record.invoice_id,
                    "invoiceNumber": num,
                    "type": "hash_mismatch",
                    "message": "La factura fue modificada tras su envío: actual=%s guardado=%s" % (
                        _short(calc_hash), _short(record.hash)),
                })

            expected_prev = record.hash

        ok = not issues
        if ok:
            _logger.info("[VeriFactu] Cadena del tenant %s verificada (%s registros).", tenant_id, len(records))
        else:
            _logger.warning("[VeriFactu] Cadena del tenant %s con %s incidencias.", tenant_id, len(issues))
            if raise_on_error:
                raise ChainIntegrityError(
                    "Se detectaron discrepancias en la cadena de huellas: %s" % issues[0]["message"]
                )

        return {"ok": ok, "checked": len(records), "issues": issues}
