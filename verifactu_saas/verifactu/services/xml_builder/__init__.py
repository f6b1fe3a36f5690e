# -*- coding: utf-8 -*-
from .xml_builder import VerifactuXMLBuilder, build_unsigned_xml
from .envelope_builder import VerifactuEnvelopeBuilder
