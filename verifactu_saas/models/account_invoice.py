# -*- coding: utf-8 -*-
"""
Factura y líneas (lado lectura para VeriFactu: el CRUD vive en otra parte).
"""
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from .database import Base, utcnow

CENT = Decimal("0.01")


def _dec(v):
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def round_amount(v):
    return _dec(v).quantize(CENT, rounding=ROUND_HALF_UP)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    series = Column(String(20))
    number = Column(Integer)
    full_number = Column(String(40), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String(20), default="draft", nullable=False)

    # Snapshot del cliente (enlazado o introducido a mano)
    customer_name = Column(String(255))
    customer_nif = Column(String(20))
    customer_address = Column(Text)

    subtotal = Column(Numeric(12, 2), default=0, nullable=False)
    total_iva = Column(Numeric(12, 2), default=0, nullable=False)
    total = Column(Numeric(12, 2), default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    tenant = relationship("Tenant")
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        order_by="(InvoiceLine.position, InvoiceLine.id)",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    verifactu_record = relationship(
        "VerifactuRecord",
        back_populates="invoice",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def customer(self):
        return {
            "name": self.customer_name or "",
            "nif": self.customer_nif or "",
            "address": self.customer_address or "",
        }

    def recompute_totals(self):
        """subtotal/total_iva = suma de líneas; total = subtotal + total_iva."""
        subtotal = sum((line.base for line in self.lines), Decimal("0"))
        total_iva = sum((line.iva_amount for line in self.lines), Decimal("0"))
        self.subtotal = round_amount(subtotal)
        self.total_iva = round_amount(total_iva)
        self.total = self.subtotal + self.total_iva
        return self.total

    def __repr__(self):
        return "<Invoice %s %s>" % (self.id, self.full_number)


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    # El orden de inserción es significativo
    position = Column(Integer, default=0, nullable=False)
    description = Column(String(500), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False)
    iva_rate = Column(Numeric(5, 2), nullable=False)

    invoice = relationship("Invoice", back_populates="lines")

    @property
    def base(self):
        return round_amount(_dec(self.quantity) * _dec(self.unit_price))

    @property
    def iva_amount(self):
        return round_amount(self.base * _dec(self.iva_rate) / Decimal("100"))
