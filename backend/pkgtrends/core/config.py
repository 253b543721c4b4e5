from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

import yaml


@dataclass(frozen=True)
class Settings:
    project_id: str | None
    service_key: str | None
    token_url: str
    bigquery_base_url: str
    scope: str
    source_table: str
    human_installer: str
    http_timeout_seconds: float
    max_results: int
    token_refresh_skew_seconds: int
    cache_backend: str
    cache_dir: Path
    cache_timezone: str
    cors_origins: list[str]
    log_level: str

    def has_credentials(self) -> bool:
        return bool(self.project_id and self.service_key)


def _config_or_env(config_value: object, *env_names: str) -> str | None:
    for name in env_names:
        env_val = os.getenv(name, "")
        if env_val:
            return env_val
    if config_value:
        return str(config_value)
    return None


def load_settings() -> Settings:
    repo_root = Path(__file__).resolve().parents[3]
    default_config = Path(__file__).with_name("config.yaml")
    config_path = Path(os.getenv("SETTINGS_PATH", str(default_config)))
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("Settings file must contain a mapping at the top level.")

    cache_dir = Path(str(data.get("cache_dir", "var/cache")))
    if not cache_dir.is_absolute():
        cache_dir = repo_root / cache_dir

    cors_origins_raw = data.get("cors_origins", [])
    if isinstance(cors_origins_raw, str):
        cors_origins = [item.strip() for item in cors_origins_raw.split(",") if item.strip()]
    else:
        cors_origins = [str(item).strip() for item in cors_origins_raw or [] if str(item).strip()]

    return Settings(
        project_id=_config_or_env(data.get("project_id"), "GOOGLE_CLOUD_PROJECT_ID"),
        service_key=_config_or_env(data.get("service_key"), "GOOGLE_CLOUD_KEY"),
        token_url=str(data.get("token_url", "https://oauth2.googleapis.com/token")),
        bigquery_base_url=str(
            data.get("bigquery_base_url", "https://bigquery.googleapis.com/bigquery/v2")
        ),
        scope=str(data.get("scope", "https://www.googleapis.com/auth/bigquery.readonly")),
        source_table=str(data.get("source_table", "bigquery-public-data.pypi.file_downloads")),
        human_installer=str(data.get("human_installer", "pip")),
        http_timeout_seconds=float(data.get("http_timeout_seconds", 30)),
        max_results=int(data.get("max_results", 10000)),
        token_refresh_skew_seconds=int(data.get("token_refresh_skew_seconds", 300)),
        cache_backend=str(data.get("cache_backend", "memory")).strip().lower(),
        cache_dir=cache_dir,
        cache_timezone=str(data.get("cache_timezone", "UTC")),
        cors_origins=cors_origins,
        log_level=str(os.getenv("LOG_LEVEL", data.get("log_level", "INFO"))).upper(),
    )
