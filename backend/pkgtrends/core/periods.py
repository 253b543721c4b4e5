from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


Granularity = Literal["day", "week", "month", "year"]


@dataclass(frozen=True)
class PeriodSpec:
    name: str
    alias: str
    granularity: Granularity
    # Whole months before the current month; None means no lower bound.
    months_back: int | None
    # Rolling window for the aggregate count query.
    rolling_days: int | None

    @property
    def names(self) -> tuple[str, str]:
        return (self.name, self.alias)


PERIODS = [
    PeriodSpec(name="1month", alias="1m", granularity="day", months_back=0, rolling_days=30),
    PeriodSpec(name="3month", alias="3m", granularity="week", months_back=2, rolling_days=90),
    PeriodSpec(name="6month", alias="6m", granularity="month", months_back=5, rolling_days=180),
    PeriodSpec(name="1year", alias="1y", granularity="month", months_back=11, rolling_days=365),
    PeriodSpec(name="2year", alias="2y", granularity="month", months_back=23, rolling_days=730),
    PeriodSpec(name="5year", alias="5y", granularity="month", months_back=59, rolling_days=1825),
    PeriodSpec(name="all", alias="alltime", granularity="year", months_back=None, rolling_days=None),
]

PERIODS_BY_NAME = {name: spec for spec in PERIODS for name in spec.names}
VALID_PERIODS = [name for spec in PERIODS for name in spec.names]
DEFAULT_PERIOD = PERIODS_BY_NAME["1month"]


def resolve_period(period: str | None) -> PeriodSpec | None:
    if period is None:
        return None
    return PERIODS_BY_NAME.get(period)


def is_valid_period(period: str | None) -> bool:
    return resolve_period(period) is not None
