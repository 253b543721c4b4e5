from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from pkgtrends.data.models import (
    BatchTimeSeriesRequest,
    BatchTimeSeriesResponse,
    DownloadCountResponse,
    TimeSeriesResponse,
)
from pkgtrends.downloads.service import DownloadsService, get_service


router = APIRouter()


def _exclude_ci_cd(value: str | None) -> bool:
    # Anything but an explicit "false" keeps the CI/CD filter on.
    return (value or "").strip().lower() != "false"


@router.post("/batch", response_model=BatchTimeSeriesResponse)
async def get_time_series_batch(
    payload: BatchTimeSeriesRequest,
    background_tasks: BackgroundTasks,
    service: DownloadsService = Depends(get_service),
) -> BatchTimeSeriesResponse:
    return await service.get_time_series_batch(
        payload.packages,
        payload.period,
        exclude_noise=payload.excludeCiCd,
        background=background_tasks,
    )


@router.get("/{package_name}/timeseries", response_model=TimeSeriesResponse)
async def get_time_series(
    package_name: str,
    background_tasks: BackgroundTasks,
    period: str = Query("1year"),
    exclude_ci_cd: str | None = Query(None),
    cache_bust: str | None = Query(None, alias="_t"),
    service: DownloadsService = Depends(get_service),
) -> TimeSeriesResponse:
    return await service.get_time_series(
        package_name,
        period,
        exclude_noise=_exclude_ci_cd(exclude_ci_cd),
        cache_bypass=cache_bust is not None,
        background=background_tasks,
    )


@router.get("/{package_name}", response_model=DownloadCountResponse)
async def get_download_count(
    package_name: str,
    background_tasks: BackgroundTasks,
    period: str = Query("1month"),
    exclude_ci_cd: str | None = Query(None),
    cache_bust: str | None = Query(None, alias="_t"),
    service: DownloadsService = Depends(get_service),
) -> DownloadCountResponse:
    return await service.get_download_count(
        package_name,
        period,
        exclude_noise=_exclude_ci_cd(exclude_ci_cd),
        cache_bypass=cache_bust is not None,
        background=background_tasks,
    )
