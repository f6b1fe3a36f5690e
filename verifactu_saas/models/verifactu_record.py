# -*- coding: utf-8 -*-
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .database import Base, utcnow

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"

STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_ERROR)

# Estados desde los que se puede (re)lanzar un envío
DISPATCHABLE_STATUSES = (STATUS_PENDING, STATUS_REJECTED, STATUS_ERROR)
# Registros que forman parte de la cadena de huellas
CHAINED_STATUSES = (STATUS_SENT, STATUS_ACCEPTED)


class VerifactuRecord(Base):
    __tablename__ = "verifactu_records"
    __table_args__ = (
        UniqueConstraint("invoice_id", name="uq_verifactu_records_invoice_id"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)

    hash = Column(String(64), default="", nullable=False)
    previous_hash = Column(String(64), default="", nullable=False)
    chained_at = Column(DateTime, index=True)

    xml_unsigned = Column(Text)
    xml_signed = Column(Text)

    aeat_response = Column(JSON)
    aeat_csv = Column(String(64))
    sent_at = Column(DateTime)

    status = Column(String(16), default=STATUS_PENDING, nullable=False, index=True)
    error_message = Column(Text)
    qr_code = Column(Text)

    retry_count = Column(Integer, default=0, nullable=False)
    # False: fallo de certificado o firma, solo se reintenta a mano
    auto_retry = Column(Boolean, default=True, nullable=False)
    last_attempt_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="verifactu_record")
    tenant = relationship("Tenant")
    status_logs = relationship(
        "VerifactuStatusLog",
        back_populates="record",
        order_by="VerifactuStatusLog.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self):
        """Vista de lectura para el detalle de factura."""
        return {
            "id": self.id,
            "invoiceId": self.invoice_id,
            "tenantId": self.tenant_id,
            "status": self.status,
            "hash": self.hash or "",
            "previousHash": self.previous_hash or "",
            "csv": self.aeat_csv,
            "qrCode": self.qr_code,
            "errorMessage": self.error_message or "",
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
            "retryCount": self.retry_count or 0,
            "autoRetry": bool(self.auto_retry),
        }

    def __repr__(self):
        return "<VerifactuRecord invoice=%s status=%s>" % (self.invoice_id, self.status)
