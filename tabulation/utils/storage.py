import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock

DEFAULT_DATA_DIR = Path(__file__).resolve().parents[2] / "data"


class JsonStore:
    """JSON files in one data directory, serialized by a single file lock.

    Every write goes through a temp file and ``os.replace`` so readers never see
    a half-written file. Multi-file updates run inside ``transaction()``; reads
    that must be consistent across files run inside ``snapshot()``.
    """

    def __init__(self, data_dir: str | Path | None = None):
        self.data_dir = Path(data_dir or os.environ.get("TABULATION_DATA_DIR") or DEFAULT_DATA_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.data_dir / ".data.lock"))

    @contextmanager
    def transaction(self) -> Iterator["JsonStore"]:
        with self._lock:
            yield self

    # Same lock: readers and writers exclude each other.
    snapshot = transaction

    def load_json(self, filename: str, default: Any) -> Any:
        path = self.data_dir / filename
        with self._lock:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)

    def save_json(self, filename: str, data: Any) -> None:
        path = self.data_dir / filename
        tmp = self.data_dir / (filename + ".tmp")
        with self._lock:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)

    def touch_last_update(self) -> dict:
        """Bump the store revision. Called once per committed mutation."""
        with self._lock:
            meta = self.load_json("meta.json", default={})
            meta["last_update_utc"] = datetime.now(timezone.utc).isoformat()
            meta["revision"] = int(meta.get("revision") or 0) + 1
            self.save_json("meta.json", meta)
            return meta

    def revision(self) -> dict:
        meta = self.load_json("meta.json", default={})
        return {
            "revision": int(meta.get("revision") or 0),
            "last_update_utc": meta.get("last_update_utc"),
        }
