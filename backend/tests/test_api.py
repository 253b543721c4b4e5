from __future__ import annotations

import json
from urllib.parse import parse_qs
import unittest

import httpx
from fastapi.testclient import TestClient

from fakes import (
    BIGQUERY_URL,
    PROJECT_ID,
    TOKEN_URL,
    daily_rows,
    make_rsa_key,
    make_service_key,
    make_settings,
)
from pkgtrends.bigquery.credentials import JWT_BEARER_GRANT, CredentialBroker
from pkgtrends.bigquery.executor import QueryExecutor
from pkgtrends.core.periods import VALID_PERIODS
from pkgtrends.data.cache import InMemoryResponseCache
from pkgtrends.downloads.service import DownloadsService, get_service
from pkgtrends.main import app


class FakeGoogle:
    """Token endpoint plus BigQuery jobs.query endpoint behind one MockTransport."""

    def __init__(self) -> None:
        self.token_requests = 0
        self.revoked: set[str] = set()
        self.queries: list[str] = []
        self.row_sets: list[list[list[str]]] = [daily_rows(30)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_requests += 1
            form = parse_qs(request.content.decode("ascii"))
            assert form["grant_type"] == [JWT_BEARER_GRANT]
            token = f"ya29.test-{self.token_requests}"
            return httpx.Response(200, json={"access_token": token, "expires_in": 3600})

        if str(request.url) == f"{BIGQUERY_URL}/projects/{PROJECT_ID}/queries":
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if not token.startswith("ya29.test-") or token in self.revoked:
                return httpx.Response(401, json={"error": {"message": "Unauthorized"}})
            query = json.loads(request.content)["query"]
            self.queries.append(query)
            rows = self.row_sets[min(len(self.queries) - 1, len(self.row_sets) - 1)]
            return httpx.Response(
                200,
                json={"jobComplete": True, "rows": [{"f": [{"v": c} for c in row]} for row in rows]},
            )
        return httpx.Response(404, text="unexpected url")


class DownloadsApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.service_key = make_service_key(make_rsa_key())

    def setUp(self) -> None:
        self.google = FakeGoogle()
        self.service = self._make_service(make_settings(service_key=self.service_key))
        app.dependency_overrides[get_service] = lambda: self.service
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        app.dependency_overrides.clear()

    def _make_service(self, settings) -> DownloadsService:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.google))
        broker = CredentialBroker(http, token_url=TOKEN_URL, scope=settings.scope)
        executor = QueryExecutor(http, base_url=BIGQUERY_URL)
        return DownloadsService(settings, InMemoryResponseCache(), broker, executor)

    def test_timeseries_end_to_end(self) -> None:
        response = self.client.get("/api/downloads/requests/timeseries?period=1month")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["entityId"], "requests")
        self.assertEqual(body["period"], "1month")
        self.assertTrue(body["excludeNoise"])
        self.assertFalse(body["servedFromCache"])
        dates = [point["date"] for point in body["points"]]
        self.assertEqual(len(dates), 30)
        self.assertEqual(dates, sorted(set(dates)))
        self.assertEqual(body["totalCount"], sum(point["count"] for point in body["points"]))

        query = self.google.queries[0]
        self.assertIn("DATE(timestamp) AS date", query)
        self.assertIn("details.installer.name = 'pip'", query)
        self.assertIn("file.project = 'requests'", query)

    def test_repeat_request_is_served_from_cache(self) -> None:
        first = self.client.get("/api/downloads/requests/timeseries?period=1year").json()
        second = self.client.get("/api/downloads/requests/timeseries?period=1year").json()

        self.assertTrue(second["servedFromCache"])
        self.assertEqual(second["points"], first["points"])
        self.assertEqual(second["totalCount"], first["totalCount"])
        self.assertEqual(len(self.google.queries), 1)

    def test_cache_bust_parameter_bypasses_read(self) -> None:
        self.google.row_sets = [daily_rows(30), daily_rows(10)]
        first = self.client.get("/api/downloads/requests/timeseries?period=1m&_t=1").json()
        second = self.client.get("/api/downloads/requests/timeseries?period=1m&_t=2").json()

        self.assertNotEqual(first["totalCount"], second["totalCount"])
        self.assertFalse(first["servedFromCache"])
        self.assertFalse(second["servedFromCache"])
        # One token exchange serves both queries.
        self.assertEqual(self.google.token_requests, 1)

    def test_rejected_token_is_replaced_on_next_request(self) -> None:
        self.google.revoked.add("ya29.test-1")

        first = self.client.get("/api/downloads/requests/timeseries?period=1m&_t=1")
        self.assertEqual(first.status_code, 500)
        self.assertIn("401", first.json()["details"]["error"])

        second = self.client.get("/api/downloads/requests/timeseries?period=1m&_t=2")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(self.google.token_requests, 2)

    def test_exclude_ci_cd_false_drops_installer_filter(self) -> None:
        response = self.client.get(
            "/api/downloads/requests/timeseries?period=3month&exclude_ci_cd=false"
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["excludeNoise"])
        self.assertNotIn("details.installer.name", self.google.queries[0])
        self.assertIn("WEEK", self.google.queries[0])

    def test_invalid_period_is_rejected_without_network(self) -> None:
        response = self.client.get("/api/downloads/requests/timeseries?period=decade")

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["error"], "invalid_request")
        self.assertEqual(body["details"]["validPeriods"], VALID_PERIODS)
        self.assertEqual(self.google.token_requests, 0)
        self.assertEqual(self.google.queries, [])

    def test_blank_package_is_rejected(self) -> None:
        response = self.client.get("/api/downloads/%20%20/timeseries?period=1month")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Package name is required")

    def test_missing_config_returns_500_without_signing(self) -> None:
        self.service = self._make_service(make_settings(project_id=None, service_key=None))
        response = self.client.get("/api/downloads/requests/timeseries?period=1month")

        self.assertEqual(response.status_code, 500)
        body = response.json()
        self.assertEqual(body["error"], "config_error")
        self.assertNotIn("private_key", response.text)
        self.assertEqual(self.google.token_requests, 0)

    def test_upstream_failure_returns_500_with_details(self) -> None:
        self.service = self._make_service(
            make_settings(service_key=self.service_key, project_id="other-project")
        )
        response = self.client.get("/api/downloads/requests/timeseries?period=1month")

        self.assertEqual(response.status_code, 500)
        body = response.json()
        self.assertEqual(body["error"], "upstream_error")
        self.assertIn("404", body["details"]["error"])

    def test_aggregate_count(self) -> None:
        self.google.row_sets = [[["98765"]]]
        response = self.client.get("/api/downloads/flask?period=6m")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["entityId"], "flask")
        self.assertEqual(body["count"], 98765)
        self.assertEqual(body["period"], "6m")
        self.assertIn("INTERVAL 180 DAY", self.google.queries[0])

        again = self.client.get("/api/downloads/flask?period=6month").json()
        self.assertTrue(again["servedFromCache"])
        self.assertEqual(again["period"], "6month")

    def test_aggregate_defaults_to_one_month(self) -> None:
        self.google.row_sets = [[["5"]]]
        body = self.client.get("/api/downloads/flask").json()
        self.assertEqual(body["period"], "1month")
        self.assertIn("INTERVAL 30 DAY", self.google.queries[0])

    def test_batch(self) -> None:
        response = self.client.post(
            "/api/downloads/batch",
            json={"packages": ["requests", "flask"], "period": "all", "excludeCiCd": False},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(sorted(body["series"]), ["flask", "requests"])
        self.assertEqual(body["failed"], [])
        self.assertEqual(len(self.google.queries), 2)
        for query in self.google.queries:
            self.assertIn("DATE_TRUNC(DATE(timestamp), YEAR) AS date", query)
            self.assertNotIn("DATE(timestamp) >=", query)


class HealthApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_health(self) -> None:
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertIn("timestamp", body)

    def test_debug_reports_presence_only(self) -> None:
        secret = '{"client_email": "svc@example", "private_key": "SECRET"}'
        service = DownloadsService(
            make_settings(project_id=None, service_key=secret),
            InMemoryResponseCache(),
            broker=None,  # type: ignore[arg-type]
            executor=None,  # type: ignore[arg-type]
        )
        app.dependency_overrides[get_service] = lambda: service
        response = self.client.get("/api/health/debug")

        self.assertEqual(response.status_code, 200)
        environment = response.json()["environment"]
        self.assertEqual(environment["GOOGLE_CLOUD_PROJECT_ID"], "NOT SET")
        self.assertEqual(environment["GOOGLE_CLOUD_KEY"], "SET")
        self.assertNotIn("SECRET", response.text)


if __name__ == "__main__":
    unittest.main()
