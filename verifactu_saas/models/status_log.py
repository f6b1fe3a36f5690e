# -*- coding: utf-8 -*-
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class VerifactuStatusLog(Base):
    """Histórico de cambios de estado VeriFactu (solo inserciones)."""
    __tablename__ = "verifactu_status_logs"

    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("verifactu_records.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False)
    date = Column(DateTime, default=utcnow, nullable=False)

    # Trazabilidad de la huella en el momento del cambio
    hash_actual = Column(String(64))
    hash_previo = Column(String(64))

    # Código de respuesta AEAT (4102, 2000, 3000…)
    aeat_code = Column(Integer)
    notes = Column(Text)

    record = relationship("VerifactuRecord", back_populates="status_logs")


def log_verifactu_status(session, record, notes="", aeat_code=None):
    """Añade una fila al histórico con el estado actual del registro (no hace commit)."""
    entry = VerifactuStatusLog(
        record_id=record.id,
        invoice_id=record.invoice_id,
        status=record.status,
        date=utcnow(),
        hash_actual=record.hash or None,
        hash_previo=record.previous_hash or None,
        aeat_code=aeat_code,
        notes=notes or "",
    )
    session.add(entry)
    return entry
