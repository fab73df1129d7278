from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from deps.pools import get_grant_store
from app.pools.store import GrantStore

router = APIRouter(tags=["health"])

MIGRATION_REVISION = "0002_disbursement_grant_id"


def _resolve_env() -> str:
    return (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip()


def _resolve_git_sha() -> str | None:
    return (
        (os.getenv("FLY_IMAGE_REF") or "").strip()
        or (os.getenv("GIT_SHA") or "").strip()
        or None
    )


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": _resolve_env(),
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
    }


@router.get("/readyz")
def readyz(store: GrantStore = Depends(get_grant_store)):
    store_ok = store.healthy()
    return {
        "ready": store_ok,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "store_ok": store_ok,
        "store_backend": type(store).__name__,
        "migration_revision": MIGRATION_REVISION,
    }
