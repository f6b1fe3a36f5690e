# -*- coding: utf-8 -*-
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def utcnow():
    """Fecha/hora UTC naive (así se guarda en BD)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_fks(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url, **kwargs):
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        # Sin esto SQLite ignora ON DELETE CASCADE
        event.listen(engine, "connect", _enable_sqlite_fks)
    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine):
    # Registra todos los modelos antes de crear tablas
    from . import account_invoice, status_log, tenant, verifactu_record  # noqa: F401
    Base.metadata.create_all(bind=engine)
