from __future__ import annotations

import hashlib
import json
import tempfile
import time
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Callable

from pkgtrends.data.cache import ResponseCache


class JsonFileResponseCache(ResponseCache):
    def __init__(
        self,
        base_dir: Path,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(tz=tz, clock=clock)
        self._base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        # Keys carry user-supplied package names; hash them into safe file names.
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._base_dir / f"{digest}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            path.unlink(missing_ok=True)
            return None
        if (
            not isinstance(entry, dict)
            or entry.get("key") != key
            or float(entry.get("expiresAt", 0)) <= self._clock()
        ):
            path.unlink(missing_ok=True)
            return None
        payload = entry.get("payload")
        return payload if isinstance(payload, dict) else None

    def put(self, key: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {"key": key, "expiresAt": self._clock() + ttl_seconds, "payload": payload}
        # One temp file per writer; concurrent writes of the same key each replace atomically.
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f"{path.stem}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            json.dump(entry, handle, ensure_ascii=True, indent=2)
            tmp_path = Path(handle.name)
        try:
            tmp_path.replace(path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
