from __future__ import annotations

import base64
import json
import queue
import sqlite3
import sys
import threading
import time
import uuid
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts TEXT NOT NULL,
    event TEXT NOT NULL,
    payload TEXT,
    session_id TEXT DEFAULT '',
    seq INTEGER DEFAULT 0,
    source TEXT DEFAULT '',
    kind TEXT DEFAULT '',
    severity INTEGER DEFAULT 1,
    correlation_id TEXT
)
"""


class EventLedger:
    """Batched, append-only SQLite sink for lifecycle events.

    Records are queued from any thread and written by a single daemon writer
    that owns the connection. Recording never raises; a full queue drops.
    """

    def __init__(self, db_path: Path | str, app_version: str = "") -> None:
        self._db_path = str(db_path)
        self._app_version = app_version
        self._session_id = str(uuid.uuid4())
        self._seq = 0
        self._seq_lock = threading.Lock()
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=10000)
        self._stop_event = threading.Event()
        self._conn: sqlite3.Connection | None = None

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._writer_thread = threading.Thread(target=self._writer_loop, name="event-ledger-writer", daemon=True)
        self._writer_thread.start()

        self.record(
            "app",
            "lifecycle",
            "session_start",
            payload={"app_version": app_version, "session_id": self._session_id},
        )

    @property
    def session_id(self) -> str:
        return self._session_id

    def record(
        self,
        source: str,
        kind: str,
        name: str,
        payload: Any = None,
        severity: int = 1,
        correlation_id: str | None = None,
    ) -> None:
        try:
            payload_text = self._safe_payload(payload)
            with self._seq_lock:
                self._seq += 1
                seq = self._seq

            self._queue.put_nowait(
                {
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "event": name,
                    "payload": payload_text,
                    "session_id": self._session_id,
                    "seq": seq,
                    "source": source,
                    "kind": kind,
                    "severity": severity,
                    "correlation_id": correlation_id,
                }
            )
        except queue.Full:
            return

    def _open(self) -> sqlite3.Connection | None:
        try:
            conn = sqlite3.connect(self._db_path)
            conn.execute(_SCHEMA)
            conn.commit()
            return conn
        except sqlite3.Error as exc:
            print(f"[EventLedger] open failed: {exc}", file=sys.stderr)
            return None

    def _writer_loop(self) -> None:
        self._conn = self._open()
        batch: list[dict[str, Any]] = []
        batch_start: float | None = None

        while True:
            if self._stop_event.is_set() and self._queue.empty() and not batch:
                break

            timeout = 0.1
            if batch_start is not None:
                timeout = max(0.0, 0.1 - (time.monotonic() - batch_start))

            try:
                item = self._queue.get(timeout=timeout)
                batch.append(item)
                if batch_start is None:
                    batch_start = time.monotonic()
            except queue.Empty:
                pass

            if not batch:
                continue

            if len(batch) >= 50 or self._stop_event.is_set() or (batch_start is not None and time.monotonic() - batch_start >= 0.1):
                self._write_batch(batch)
                batch = []
                batch_start = None

        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _write_batch(self, batch: list[dict[str, Any]]) -> None:
        if not batch or self._conn is None:
            return

        rows = [
            (
                item["ts"],
                item["event"],
                item["payload"],
                item["session_id"],
                item["seq"],
                item["source"],
                item["kind"],
                item["severity"],
                item["correlation_id"],
            )
            for item in batch
        ]

        try:
            self._conn.executemany(
                """
                INSERT INTO events(
                    ts, event, payload, session_id, seq,
                    source, kind, severity, correlation_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            print(f"[EventLedger] write failed: {exc}", file=sys.stderr)

    def _safe_payload(self, payload: Any) -> str:
        try:
            return json.dumps(self._serialize(payload), ensure_ascii=False)
        except (TypeError, ValueError):
            return json.dumps({"_error": "serialization_failed", "repr": repr(payload)[:500]})

    def _serialize(self, value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Enum):
            return self._serialize(value.value)
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, bytes):
            return base64.b64encode(value).decode("ascii")
        if is_dataclass(value):
            return self._serialize(asdict(value))
        if isinstance(value, dict):
            return {str(k): self._serialize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._serialize(v) for v in value]
        return str(value)

    def shutdown(self) -> None:
        if self._stop_event.is_set():
            return

        self.record(
            "app",
            "lifecycle",
            "session_end",
            payload={"app_version": self._app_version, "session_id": self._session_id},
        )
        self._stop_event.set()
        self._writer_thread.join(timeout=2.0)
