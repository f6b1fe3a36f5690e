# -*- coding: utf-8 -*-
from . import (
    certificate_store,
    chain_verifier,
    hash_calculator,
    qr_content,
    submission,
    xml_sender,
    xml_signer,
)
