from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from pkgtrends.data.models import HealthResponse
from pkgtrends.downloads.service import DownloadsService, get_service


router = APIRouter()


@router.get("", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))


@router.get("/debug")
def health_debug(service: DownloadsService = Depends(get_service)) -> dict[str, Any]:
    settings = service.settings
    return {
        "status": "debug",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": {
            "GOOGLE_CLOUD_PROJECT_ID": "SET" if settings.project_id else "NOT SET",
            "GOOGLE_CLOUD_KEY": "SET" if settings.service_key else "NOT SET",
            "cacheBackend": settings.cache_backend,
        },
    }
