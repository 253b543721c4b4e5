"""SQL for the public PyPI download log.

Both builders are pure. The noise filter keeps only rows whose installer is the
human-facing client (``pip`` by default); it drops most CI/CD mirrors but is a
heuristic, so some automated installs still pass and some humans are dropped.
"""

from __future__ import annotations

import logging

from pkgtrends.core.periods import DEFAULT_PERIOD, PeriodSpec, resolve_period


logger = logging.getLogger(__name__)

DEFAULT_TABLE = "bigquery-public-data.pypi.file_downloads"
DEFAULT_INSTALLER = "pip"

_DATE_EXPRESSIONS = {
    "day": "DATE(timestamp)",
    "week": "DATE_TRUNC(DATE(timestamp), WEEK)",
    "month": "DATE_TRUNC(DATE(timestamp), MONTH)",
    "year": "DATE_TRUNC(DATE(timestamp), YEAR)",
}


def quote_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _base_conditions(entity_id: str, exclude_noise: bool, human_installer: str) -> list[str]:
    conditions = [f"file.project = {quote_literal(entity_id)}"]
    if exclude_noise:
        conditions.append(f"details.installer.name = {quote_literal(human_installer)}")
    return conditions


def _resolve(period: str, strict: bool, fallback: PeriodSpec) -> PeriodSpec:
    spec = resolve_period(period)
    if spec is not None:
        return spec
    if strict:
        raise ValueError(f"Unsupported period: {period!r}")
    logger.warning(f"Unknown period {period!r}, falling back to {fallback.name}")
    return fallback


def calendar_window_clause(spec: PeriodSpec) -> str | None:
    """Date filter anchored at the start of the current month, or None for all time."""
    if spec.months_back is None:
        return None
    month_start = "DATE_TRUNC(CURRENT_DATE(), MONTH)"
    return (
        f"DATE(timestamp) >= DATE_SUB({month_start}, INTERVAL {spec.months_back} MONTH)"
        f" AND DATE(timestamp) < DATE_ADD({month_start}, INTERVAL 1 MONTH)"
    )


def build_time_series_query(
    entity_id: str,
    period: str,
    exclude_noise: bool = True,
    *,
    table: str = DEFAULT_TABLE,
    human_installer: str = DEFAULT_INSTALLER,
    strict: bool = False,
) -> str:
    """Return a query yielding ``(date, downloads)`` rows in ascending date order.

    Unknown periods fall back to daily buckets over the current month unless
    ``strict`` is set, in which case ``ValueError`` is raised.
    """
    spec = _resolve(period, strict, DEFAULT_PERIOD)
    conditions = _base_conditions(entity_id, exclude_noise, human_installer)
    window = calendar_window_clause(spec)
    if window is not None:
        conditions.append(window)

    where = " AND ".join(conditions)
    return f"""
    SELECT
      {_DATE_EXPRESSIONS[spec.granularity]} AS date,
      COUNT(*) AS downloads
    FROM `{table}`
    WHERE {where}
    GROUP BY date
    ORDER BY date ASC
    """


def build_count_query(
    entity_id: str,
    period: str,
    exclude_noise: bool = True,
    *,
    table: str = DEFAULT_TABLE,
    human_installer: str = DEFAULT_INSTALLER,
    strict: bool = False,
) -> str:
    """Return a single-cell query counting downloads over a rolling day window."""
    spec = _resolve(period, strict, DEFAULT_PERIOD)
    conditions = _base_conditions(entity_id, exclude_noise, human_installer)
    if spec.rolling_days is not None:
        conditions.append(
            "DATE(timestamp) BETWEEN "
            f"DATE_SUB(CURRENT_DATE(), INTERVAL {spec.rolling_days} DAY) AND CURRENT_DATE()"
        )

    where = " AND ".join(conditions)
    return f"""
    SELECT COUNT(*) AS num_downloads
    FROM `{table}`
    WHERE {where}
    """
