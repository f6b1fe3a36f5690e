# -*- coding: utf-8 -*-
import logging
import threading
import time

from sqlalchemy import text

from ...exceptions import SubmissionInProgressError

_logger = logging.getLogger(__name__)

# Espacio de claves para pg_try_advisory_lock(int, int)
_LOCK_NAMESPACE = 0x5646

_registry_guard = threading.Lock()
_local_locks = {}


def _local_lock(tenant_id):
    with _registry_guard:
        lock = _local_locks.get(tenant_id)
        if lock is None:
            lock = _local_locks[tenant_id] = threading.Lock()
        return lock


class TenantLock(object):
    """
    Serializa los envíos de un mismo emisor mientras dura el ``with``.

    - Siempre: lock de proceso por tenant.
    - En PostgreSQL además: advisory lock de sesión sobre una conexión propia,
      para que varias instancias no calculen la misma huella anterior.
    """

    def __init__(self, engine, tenant_id, timeout=60.0, poll_interval=0.2):
        self.engine = engine
        self.tenant_id = int(tenant_id)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._lock = _local_lock(self.tenant_id)
        self._conn = None

    def __enter__(self):
        if not self._lock.acquire(timeout=self.timeout):
            _logger.info("[VeriFactu] Lock local ocupado para tenant %s", self.tenant_id)
            raise SubmissionInProgressError("Hay otro envío VeriFactu en curso para este emisor. Inténtalo más tarde.")
        try:
            if self.engine is not None and self.engine.dialect.name == "postgresql":
                self._acquire_db_lock()
        except Exception:
            self._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self._release_db_lock()
        finally:
            self._lock.release()

    def _acquire_db_lock(self):
        self._conn = self.engine.connect()
        deadline = time.monotonic() + self.timeout
        while True:
            locked = self._conn.execute(
                text("SELECT pg_try_advisory_lock(:ns, :key)"),
                {"ns": _LOCK_NAMESPACE, "key": self.tenant_id},
            ).scalar()
            if locked:
                return True
            if time.monotonic() >= deadline:
                self._conn.close()
                self._conn = None
                _logger.info("[VeriFactu] Advisory lock ocupado para tenant %s: otro worker está enviando.", self.tenant_id)
                raise SubmissionInProgressError("Hay otro envío VeriFactu en curso para este emisor. Inténtalo más tarde.")
            time.sleep(self.poll_interval)

    def _release_db_lock(self):
        if self._conn is None:
            return
        try:
            self._conn.execute(
                text("SELECT pg_advisory_unlock(:ns, :key)"),
                {"ns": _LOCK_NAMESPACE, "key": self.tenant_id},
            )
        finally:
            self._conn.close()
            self._conn = None
