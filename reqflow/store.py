"""reqflow store - execution history and saved request records.

Both stores sit on a Persistence layer: an in-memory cache in front of an
optional durable backend. Backend failures are logged and the store keeps
working from the cache.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable

from reqflow.errors import PersistenceError
from reqflow.models import (
    FORM_BODY_TYPES,
    TEXT_BODY_TYPES,
    HistoryEntry,
    SavedRequestRecord,
    now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


# ── Durable backend ──────────────────────────────────────────────────────


class FileBackend:
    """JSON files under a root directory.

        <root>/requests/<id>.json   one saved record per file
        <root>/history.json         history, newest first
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.requests_dir = self.root / "requests"
        self.history_path = self.root / "history.json"

    def _record_path(self, record_id: str) -> Path:
        if not record_id or "/" in record_id or "\\" in record_id or record_id.startswith("."):
            raise PersistenceError(f"Invalid record id: {record_id!r}")
        return self.requests_dir / f"{record_id}.json"

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def load_all(self) -> list[dict]:
        if not self.requests_dir.exists():
            return []
        records: list[dict] = []
        try:
            paths = sorted(self.requests_dir.glob("*.json"))
        except OSError as e:
            raise PersistenceError(f"Failed to list {self.requests_dir}: {e}") from e
        for path in paths:
            try:
                with open(path) as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable record %s: %s", path, e)
                continue
            if isinstance(data, dict):
                records.append(data)
        records.sort(key=lambda r: r.get("created_at") or "")
        return records

    def save(self, record: dict) -> None:
        self._write_json(self._record_path(record["id"]), record)

    def delete(self, record_id: str) -> None:
        path = self._record_path(record_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e

    def load_history(self) -> list[dict]:
        if not self.history_path.exists():
            return []
        try:
            with open(self.history_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {self.history_path}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"{self.history_path} does not contain a list")
        return [item for item in data if isinstance(item, dict)]

    def save_history(self, entries: list[dict]) -> None:
        self._write_json(self.history_path, entries)


class Persistence:
    """In-memory cache in front of an optional backend.

    Every write updates the cache first and then the backend. A backend
    error is logged, ``degraded`` is set, and the cache stays authoritative.
    """

    def __init__(self, backend: FileBackend | None = None):
        self.backend = backend
        self.degraded = False
        self._lock = threading.Lock()
        self._records: dict[str, dict] | None = None
        self._history: list[dict] | None = None

    def _backend_call(self, operation: str, fn: Callable, *args) -> Any:
        if self.backend is None:
            return None
        try:
            return fn(*args)
        except PersistenceError as e:
            self.degraded = True
            logger.warning("Persistence %s failed, continuing in memory: %s", operation, e)
            return None

    def load_records(self) -> list[dict]:
        with self._lock:
            if self._records is None:
                loaded = self._backend_call("load_records", getattr(self.backend, "load_all", None))
                self._records = {r["id"]: r for r in (loaded or []) if r.get("id")}
            return [dict(r) for r in self._records.values()]

    def save_record(self, record: dict) -> None:
        with self._lock:
            if self._records is None:
                self._records = {}
            self._records[record["id"]] = dict(record)
        self._backend_call("save_record", getattr(self.backend, "save", None), record)

    def delete_record(self, record_id: str) -> None:
        with self._lock:
            if self._records is not None:
                self._records.pop(record_id, None)
        self._backend_call("delete_record", getattr(self.backend, "delete", None), record_id)

    def load_history(self) -> list[dict]:
        with self._lock:
            if self._history is None:
                loaded = self._backend_call(
                    "load_history", getattr(self.backend, "load_history", None)
                )
                self._history = list(loaded or [])
            return list(self._history)

    def save_history(self, entries: list[dict]) -> None:
        with self._lock:
            self._history = list(entries)
        self._backend_call("save_history", getattr(self.backend, "save_history", None), entries)


class BackgroundWriter:
    """Single worker thread for fire-and-forget persistence.

    Jobs run in submission order, so the last snapshot submitted is the
    last one written.
    """

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reqflow-writer")
        self._lock = threading.Lock()
        self._pending: list[Future] = []
        self._closed = False

    def submit(self, fn: Callable, *args) -> Future | None:
        with self._lock:
            if self._closed:
                fn(*args)
                return None
            future = self._executor.submit(self._run, fn, args)
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
            return future

    @staticmethod
    def _run(fn: Callable, args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Background write failed")

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)


# ── History ──────────────────────────────────────────────────────────────


class HistoryStore:
    """Newest-first execution history, capped at ``limit`` entries."""

    def __init__(
        self,
        persistence: Persistence,
        limit: int = DEFAULT_HISTORY_LIMIT,
        writer: BackgroundWriter | None = None,
    ):
        self.persistence = persistence
        self.limit = limit
        self.writer = writer
        self._lock = threading.Lock()
        self._entries = [HistoryEntry.from_dict(d) for d in persistence.load_history()][:limit]

    def _persist(self, snapshot: list[dict], immediate: bool = False) -> None:
        # Called under self._lock so snapshots reach the writer in order
        if self.writer is None:
            self.persistence.save_history(snapshot)
            return
        future = self.writer.submit(self.persistence.save_history, snapshot)
        if immediate and future is not None:
            future.result()

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            self._entries.insert(0, entry)
            del self._entries[self.limit:]
            self._persist([e.to_dict() for e in self._entries])
        return entry

    def clear(self) -> None:
        """Empty the history; returns once the empty list is written."""
        with self._lock:
            self._entries = []
            self._persist([], immediate=True)

    def delete(self, entry_id: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != entry_id]
            removed = len(self._entries) != before
            if removed:
                self._persist([e.to_dict() for e in self._entries])
        return removed

    def entries(self) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, index: int) -> HistoryEntry | None:
        with self._lock:
            if 0 <= index < len(self._entries):
                return self._entries[index]
        return None

    def __len__(self) -> int:
        return len(self._entries)


# ── Saved request records ────────────────────────────────────────────────


def normalize_form_data(fields: list[dict] | None) -> list[tuple[str, str, str]] | None:
    """Enabled, keyed form fields as (key, value, type), sorted by key then value."""
    if fields is None:
        return None
    normalized = [
        (f.get("key", ""), f.get("value", ""), f.get("type", "text"))
        for f in fields
        if f.get("enabled", True) and f.get("key")
    ]
    return sorted(normalized, key=lambda f: (f[0], f[1]))


def content_signature(record: SavedRequestRecord) -> tuple:
    """Identity of a saved request's content, used to deduplicate upserts."""
    body_type = record.body_type
    form = normalize_form_data(record.form_data) if body_type in FORM_BODY_TYPES else None
    return (
        record.method,
        record.url,
        tuple(sorted(record.headers.items())),
        body_type,
        (record.body or "").strip() if body_type in TEXT_BODY_TYPES else None,
        tuple(form) if form is not None else None,
        record.binary_data if body_type == "binary" else None,
    )


class RequestRecordStore:
    """Saved requests keyed by id, deduplicated by content signature."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence
        self._lock = threading.Lock()
        self._records: dict[str, SavedRequestRecord] = {}
        for data in persistence.load_records():
            record = SavedRequestRecord.from_dict(data)
            self._records[record.id] = record

    def records(self) -> list[SavedRequestRecord]:
        with self._lock:
            return list(self._records.values())

    def get(self, record_id: str) -> SavedRequestRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def _find_by_signature(self, record: SavedRequestRecord) -> SavedRequestRecord | None:
        signature = content_signature(record)
        for existing in self._records.values():
            if content_signature(existing) == signature:
                return existing
        return None

    def find_by_signature(self, record: SavedRequestRecord) -> SavedRequestRecord | None:
        with self._lock:
            return self._find_by_signature(record)

    def upsert(
        self,
        record: SavedRequestRecord,
        selected_id: str | None = None,
    ) -> SavedRequestRecord:
        """Update the selected record, else a same-content record, else insert.

        An updated record keeps its id, created_at and folder.
        """
        with self._lock:
            target = self._records.get(selected_id) if selected_id else None
            if target is None:
                target = self._find_by_signature(record)

            if target is not None:
                record.id = target.id
                record.created_at = target.created_at
                record.name = record.name or target.name
                record.folder_id = target.folder_id
                record.updated_at = now_iso()
                logger.debug("Updating saved request %s", record.id)
            else:
                logger.debug("Saving new request %s", record.id)
            self._records[record.id] = record
        self.persistence.save_record(record.to_dict())
        return record

    def delete(self, record_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(record_id, None) is not None
        if removed:
            self.persistence.delete_record(record_id)
        return removed
