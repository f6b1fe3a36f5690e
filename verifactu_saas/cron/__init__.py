# -*- coding: utf-8 -*-
from .verifactu_cron import VerifactuCronService, main, next_backoff_minutes, run_once
