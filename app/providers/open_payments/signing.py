# app/providers/open_payments/signing.py
from __future__ import annotations

import importlib
import logging
from typing import Optional

from settings import settings
from app.providers.open_payments.http import RequestSigner

logger = logging.getLogger("kanzu.open_payments")


def load_signer(path: str, *, key_id: str, private_key_path: str) -> RequestSigner:
    """
    Resolve "package.module:factory" and build the request signer with our
    client key. The factory must return a RequestSigner callable.
    """
    module_name, _, attr = (path or "").partition(":")
    if not module_name or not attr:
        raise RuntimeError(f"OP_REQUEST_SIGNER must look like 'package.module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(key_id=key_id, private_key_path=private_key_path)


def signer_from_settings() -> Optional[RequestSigner]:
    path = (settings.OP_REQUEST_SIGNER or "").strip()
    if not path:
        logger.warning("OP_REQUEST_SIGNER not configured; Open Payments requests will be unsigned")
        return None
    return load_signer(path, key_id=settings.OP_KEY_ID, private_key_path=settings.OP_PRIVATE_KEY_PATH)
