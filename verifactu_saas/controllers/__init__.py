# -*- coding: utf-8 -*-
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..cron.verifactu_cron import VerifactuCronService
from ..exceptions import VerifactuError
from ..models.database import build_engine, build_session_factory, init_db
from ..verifactu.services.submission import VerifactuSubmissionService
from . import download_qr, download_verifactu_xml, verifactu_routes

_logger = logging.getLogger(__name__)


async def verifactu_error_handler(request: Request, exc: VerifactuError):
    _logger.info("[VeriFactu] %s %s → %s: %s", request.method, request.url.path,
                 exc.__class__.__name__, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"success": False, "message": exc.message})


def create_app(settings=None, session_factory=None, service=None):
    settings = settings or get_settings()
    if session_factory is None:
        engine = build_engine(settings.database_url)
        init_db(engine)
        session_factory = build_session_factory(engine)

    app = FastAPI(title="VeriFactu SaaS", description="Envío de registros de facturación a la AEAT (VeriFactu)")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.submission_service = service or VerifactuSubmissionService(session_factory, settings=settings)
    app.state.cron_service = VerifactuCronService(session_factory, app.state.submission_service, settings)

    app.add_exception_handler(VerifactuError, verifactu_error_handler)

    app.include_router(verifactu_routes.invoices_router)
    app.include_router(verifactu_routes.tenants_router)
    app.include_router(verifactu_routes.cron_router)
    app.include_router(download_qr.router)
    app.include_router(download_verifactu_xml.router)

    @app.get("/")
    def root():
        return {"message": "VeriFactu SaaS", "environment": settings.environment}

    return app
