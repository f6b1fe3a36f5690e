# -*- coding: utf-8 -*-
from fastapi import Request


def get_submission_service(request: Request):
    return request.app.state.submission_service


def get_session_factory(request: Request):
    return request.app.state.session_factory


def get_settings_dep(request: Request):
    return request.app.state.settings


def get_cron_service(request: Request):
    return request.app.state.cron_service
