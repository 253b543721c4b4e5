from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field, computed_field


# Internal request value: built by DownloadsService once inputs are validated.
@dataclass(frozen=True)
class TimeSeriesRequest:
    entity_id: str
    period: str
    exclude_noise: bool = True
    cache_bypass: bool = False


# API DTOs (Pydantic): used for request/response validation at the API boundary.
class TimeSeriesPoint(BaseModel):
    date: str
    count: int = Field(0, ge=0, description="Downloads in this bucket")


class TimeSeriesResponse(BaseModel):
    entityId: str
    period: str
    excludeNoise: bool
    points: list[TimeSeriesPoint]
    queriedAt: datetime
    servedFromCache: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def totalCount(self) -> int:
        return sum(point.count for point in self.points)


class DownloadCountResponse(BaseModel):
    entityId: str
    period: str
    count: int = Field(0, ge=0)
    excludeNoise: bool
    queriedAt: datetime
    servedFromCache: bool = False


class BatchTimeSeriesRequest(BaseModel):
    packages: list[str] = Field(..., min_length=1)
    period: str = "1year"
    excludeCiCd: bool = True


class BatchFailure(BaseModel):
    entityId: str
    reason: str


class BatchTimeSeriesResponse(BaseModel):
    period: str
    excludeNoise: bool
    series: dict[str, TimeSeriesResponse]
    failed: list[BatchFailure]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
