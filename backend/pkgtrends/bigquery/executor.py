from __future__ import annotations

import logging
from typing import Any

import httpx

from pkgtrends.core.errors import BackendError


logger = logging.getLogger(__name__)

TabularResult = list[list[str | None]]


class QueryExecutor:
    """Runs a query through BigQuery ``jobs.query`` and returns positional rows.

    The response carries no column names, so callers interpret cells by position.
    Results are read from the first page only; ``max_results`` must cover the
    largest supported window.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        max_results: int = 10000,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._max_results = max_results
        self._timeout_seconds = timeout_seconds

    def _query_url(self, project_id: str) -> str:
        return f"{self._base_url}/projects/{project_id}/queries"

    async def execute(self, query_text: str, project_id: str, token: str) -> TabularResult:
        payload = {
            "query": query_text,
            "useLegacySql": False,
            "maxResults": self._max_results,
        }
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        logger.debug(f"Running query for project {project_id}: {query_text}")

        try:
            response = await self._client.post(
                self._query_url(project_id),
                json=payload,
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.error(f"BigQuery request failed: {exc}")
            raise BackendError(f"BigQuery request failed: {exc}") from exc

        if not response.is_success:
            logger.error(
                f"BigQuery API error: status={response.status_code} body={response.text}"
            )
            raise BackendError(
                "BigQuery API error", status=response.status_code, body=response.text
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise BackendError(
                "BigQuery returned a non-JSON body",
                status=response.status_code,
                body=response.text,
            ) from exc

        if result.get("jobComplete") is False:
            raise BackendError(
                "BigQuery job did not complete in time",
                status=response.status_code,
                body=str(result.get("jobReference", "")),
            )
        return parse_rows(result)


def parse_rows(result: dict[str, Any]) -> TabularResult:
    rows: TabularResult = []
    for row in result.get("rows") or []:
        cells = (row.get("f") or []) if isinstance(row, dict) else []
        rows.append([_cell_value(cell) for cell in cells])
    return rows


def _cell_value(cell: Any) -> str | None:
    if not isinstance(cell, dict):
        return None
    value = cell.get("v")
    return None if value is None else str(value)
