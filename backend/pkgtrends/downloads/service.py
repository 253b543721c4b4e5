from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

import httpx
from fastapi import BackgroundTasks
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as ModelValidationError

from pkgtrends.bigquery.credentials import CredentialBroker
from pkgtrends.bigquery.executor import QueryExecutor, TabularResult
from pkgtrends.bigquery.query_builder import build_count_query, build_time_series_query
from pkgtrends.core.config import Settings, load_settings
from pkgtrends.core.errors import ApiError, BackendError, ConfigError, ValidationError
from pkgtrends.core.periods import VALID_PERIODS, is_valid_period
from pkgtrends.data.cache import ResponseCache, build_cache
from pkgtrends.data.models import (
    BatchFailure,
    BatchTimeSeriesResponse,
    DownloadCountResponse,
    TimeSeriesPoint,
    TimeSeriesRequest,
    TimeSeriesResponse,
)


logger = logging.getLogger(__name__)

MISSING_CONFIG_MESSAGE = (
    "Missing required environment variables: GOOGLE_CLOUD_PROJECT_ID, GOOGLE_CLOUD_KEY"
)


def validate_request(
    entity_id: str | None,
    period: str | None,
    exclude_noise: bool = True,
    cache_bypass: bool = False,
) -> TimeSeriesRequest:
    name = (entity_id or "").strip()
    if not name:
        raise ValidationError("Package name is required", {"validPeriods": list(VALID_PERIODS)})
    if not is_valid_period(period):
        raise ValidationError(
            "Invalid period. Valid options: " + ", ".join(VALID_PERIODS),
            {"period": period, "validPeriods": list(VALID_PERIODS)},
        )
    return TimeSeriesRequest(
        entity_id=name,
        period=str(period),
        exclude_noise=exclude_noise,
        cache_bypass=cache_bypass,
    )


def parse_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


def shape_points(rows: Iterable[Sequence[Any]]) -> list[TimeSeriesPoint]:
    """Map ``(date, count)`` rows to ascending points with one bucket per date."""
    totals: dict[str, int] = {}
    for row in rows:
        if not row or row[0] is None:
            continue
        date = str(row[0])
        count = parse_count(row[1] if len(row) > 1 else None)
        totals[date] = totals.get(date, 0) + count
    return [TimeSeriesPoint(date=date, count=count) for date, count in sorted(totals.items())]


class DownloadsService:
    def __init__(
        self,
        settings: Settings,
        cache: ResponseCache,
        broker: CredentialBroker,
        executor: QueryExecutor,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._broker = broker
        self._executor = executor
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def settings(self) -> Settings:
        return self._settings

    def validate(
        self,
        entity_id: str | None,
        period: str | None,
        exclude_noise: bool = True,
        cache_bypass: bool = False,
    ) -> TimeSeriesRequest:
        try:
            return validate_request(entity_id, period, exclude_noise, cache_bypass)
        except ValidationError as exc:
            raise ApiError(
                status_code=400,
                error="invalid_request",
                message=exc.message,
                details=exc.details,
            ) from exc

    async def get_time_series(
        self,
        entity_id: str | None,
        period: str | None,
        exclude_noise: bool = True,
        cache_bypass: bool = False,
        background: BackgroundTasks | None = None,
    ) -> TimeSeriesResponse:
        request = self.validate(entity_id, period, exclude_noise, cache_bypass)
        key = self._cache.key(request.entity_id, request.period, request.exclude_noise)

        if not request.cache_bypass:
            cached = await self._read_cache(key, TimeSeriesResponse)
            if cached is not None:
                return cached.model_copy(update={"servedFromCache": True, "period": request.period})

        rows = await self._fetch_rows(
            lambda: build_time_series_query(
                request.entity_id,
                request.period,
                request.exclude_noise,
                table=self._settings.source_table,
                human_installer=self._settings.human_installer,
                strict=True,
            ),
            failure_message="Failed to fetch time series data",
        )
        response = TimeSeriesResponse(
            entityId=request.entity_id,
            period=request.period,
            excludeNoise=request.exclude_noise,
            points=shape_points(rows),
            queriedAt=self._clock(),
            servedFromCache=False,
        )
        self._schedule_write(key, response.model_dump(mode="json"), background)
        return response

    async def get_download_count(
        self,
        entity_id: str | None,
        period: str | None,
        exclude_noise: bool = True,
        cache_bypass: bool = False,
        background: BackgroundTasks | None = None,
    ) -> DownloadCountResponse:
        request = self.validate(entity_id, period, exclude_noise, cache_bypass)
        key = self._cache.key(
            request.entity_id, request.period, request.exclude_noise, kind="count"
        )

        if not request.cache_bypass:
            cached = await self._read_cache(key, DownloadCountResponse)
            if cached is not None:
                return cached.model_copy(update={"servedFromCache": True, "period": request.period})

        rows = await self._fetch_rows(
            lambda: build_count_query(
                request.entity_id,
                request.period,
                request.exclude_noise,
                table=self._settings.source_table,
                human_installer=self._settings.human_installer,
                strict=True,
            ),
            failure_message="Failed to fetch download data",
        )
        first_cell = rows[0][0] if rows and rows[0] else None
        response = DownloadCountResponse(
            entityId=request.entity_id,
            period=request.period,
            count=parse_count(first_cell),
            excludeNoise=request.exclude_noise,
            queriedAt=self._clock(),
            servedFromCache=False,
        )
        self._schedule_write(key, response.model_dump(mode="json"), background)
        return response

    async def get_time_series_batch(
        self,
        entity_ids: Iterable[str],
        period: str | None,
        exclude_noise: bool = True,
        background: BackgroundTasks | None = None,
    ) -> BatchTimeSeriesResponse:
        names = list(dict.fromkeys(name.strip() for name in entity_ids if name and name.strip()))
        self.validate(names[0] if names else "", period)

        results = await asyncio.gather(
            *(
                self.get_time_series(name, period, exclude_noise, background=background)
                for name in names
            ),
            return_exceptions=True,
        )

        series: dict[str, TimeSeriesResponse] = {}
        failed: list[BatchFailure] = []
        for name, result in zip(names, results):
            if isinstance(result, ApiError) and result.error == "config_error":
                raise result
            if isinstance(result, BaseException):
                reason = result.message if isinstance(result, ApiError) else str(result)
                failed.append(BatchFailure(entityId=name, reason=reason))
                continue
            series[name] = result
        return BatchTimeSeriesResponse(
            period=str(period),
            excludeNoise=exclude_noise,
            series=series,
            failed=failed,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _require_config(self) -> tuple[str, str]:
        if not self._settings.has_credentials():
            raise ConfigError(MISSING_CONFIG_MESSAGE)
        return str(self._settings.project_id), str(self._settings.service_key)

    async def _fetch_rows(
        self, build_query: Callable[[], str], failure_message: str
    ) -> TabularResult:
        try:
            project_id, service_key = self._require_config()
        except ConfigError as exc:
            logger.error(str(exc))
            raise ApiError(status_code=500, error="config_error", message=str(exc)) from exc

        try:
            token = await self._broker.get_access_token(service_key)
            return await self._executor.execute(build_query(), project_id, token.value)
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, BackendError) and exc.status == 401:
                # Rejected token: drop it so the next request exchanges a new one.
                self._broker.invalidate(service_key)
            logger.error(f"{failure_message}: {exc}")
            raise ApiError(
                status_code=500,
                error="upstream_error",
                message=failure_message,
                details={"error": str(exc)},
            ) from exc

    async def _read_cache(self, key: str, model: type[Any]) -> Any | None:
        try:
            payload = await run_in_threadpool(self._cache.get, key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Cache read failed for {key}: {exc}")
            return None
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except ModelValidationError as exc:
            logger.warning(f"Discarding malformed cache entry {key}: {exc}")
            return None

    def _write_cache(self, key: str, payload: dict[str, Any]) -> None:
        try:
            self._cache.put(key, payload, self._cache.ttl_until_midnight())
            logger.info(f"Cached response for {key}")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Failed to cache response for {key}: {exc}")

    def _schedule_write(
        self, key: str, payload: dict[str, Any], background: BackgroundTasks | None
    ) -> None:
        if background is None:
            self._write_cache(key, payload)
            return
        background.add_task(self._write_cache, key, payload)


def build_service(settings: Settings) -> DownloadsService:
    client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    broker = CredentialBroker(
        client,
        token_url=settings.token_url,
        scope=settings.scope,
        timeout_seconds=settings.http_timeout_seconds,
        refresh_skew_seconds=settings.token_refresh_skew_seconds,
    )
    executor = QueryExecutor(
        client,
        base_url=settings.bigquery_base_url,
        max_results=settings.max_results,
        timeout_seconds=settings.http_timeout_seconds,
    )
    return DownloadsService(settings, build_cache(settings), broker, executor, client=client)


_service: DownloadsService | None = None


def get_service() -> DownloadsService:
    global _service
    if _service is None:
        _service = build_service(load_settings())
    return _service


async def close_service() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None
