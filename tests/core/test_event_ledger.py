import json
import sqlite3

from core.event_ledger import EventLedger
from core.state import EngineStatus


def _rows(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute("SELECT event, source, kind, severity, payload, seq FROM events ORDER BY seq").fetchall()
    finally:
        conn.close()


class TestEventLedger:
    def test_records_are_flushed_on_shutdown(self, tmp_path):
        db_path = tmp_path / "logs" / "events.db"
        ledger = EventLedger(db_path, app_version="test")
        ledger.record("host", "state", "status_changed", payload={"status": EngineStatus.READY})
        ledger.shutdown()

        rows = _rows(db_path)
        names = [r[0] for r in rows]
        assert names == ["session_start", "status_changed", "session_end"]
        assert json.loads(rows[1][4]) == {"status": "READY"}
        assert [r[5] for r in rows] == [1, 2, 3]

    def test_unserializable_payload_is_stringified(self, tmp_path):
        db_path = tmp_path / "events.db"
        ledger = EventLedger(db_path)
        ledger.record("host", "error", "odd", payload={"obj": object()}, severity=2)
        ledger.shutdown()

        row = [r for r in _rows(db_path) if r[0] == "odd"][0]
        assert row[3] == 2
        assert json.loads(row[4])["obj"].startswith("<object object")

    def test_shutdown_is_idempotent(self, tmp_path):
        ledger = EventLedger(tmp_path / "events.db")
        ledger.shutdown()
        ledger.shutdown()
        assert [r[0] for r in _rows(tmp_path / "events.db")].count("session_end") == 1
