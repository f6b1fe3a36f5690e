# -*- coding: utf-8 -*-
# ──────────────────────────────
# 1. Base declarativa y sesión
# ──────────────────────────────
from .database import Base, build_engine, build_session_factory, init_db, utcnow

# ──────────────────────────────
# 2. Colaboradores (solo lectura para VeriFactu)
# ──────────────────────────────
from .tenant import Tenant
from .account_invoice import Invoice, InvoiceLine

# ──────────────────────────────
# 3. Registro VeriFactu e histórico
# ──────────────────────────────
from .verifactu_record import VerifactuRecord
from .status_log import VerifactuStatusLog, log_verifactu_status
