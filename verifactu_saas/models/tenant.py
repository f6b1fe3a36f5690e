# -*- coding: utf-8 -*-
from sqlalchemy import Column, DateTime, Integer, String, Text

from .database import Base, utcnow


class Tenant(Base):
    """Empresa/autónomo emisor. El certificado se guarda cifrado (AES-256-GCM)."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    nif = Column(String(20), nullable=False)
    address = Column(String(255))

    certificate_encrypted = Column(Text)
    certificate_password = Column(Text)
    certificate_expires_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def has_certificate(self):
        return bool(self.certificate_encrypted and self.certificate_password)

    def __repr__(self):
        return "<Tenant %s %s>" % (self.id, self.nif)
