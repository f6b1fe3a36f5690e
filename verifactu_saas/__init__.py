# -*- coding: utf-8 -*-
from . import config, exceptions, models
