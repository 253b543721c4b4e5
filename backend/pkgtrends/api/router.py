from __future__ import annotations

from fastapi import APIRouter

from pkgtrends.api import downloads, health


router = APIRouter(prefix="/api")
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(downloads.router, prefix="/downloads", tags=["downloads"])
