import json
import os
import sqlite3
import tempfile
import unittest

from intraday_thesis.config import EngineConfig
from intraday_thesis.events import EventType, ThesisCleared, make_event
from intraday_thesis.llm.config import LLMConfig
from intraday_thesis.persistence import SNAPSHOT_VERSION, SqliteStore


class TestPersistence(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._td.name, "engine.sqlite")
        self.store = SqliteStore(self.db_path)

    def tearDown(self) -> None:
        self.store.close()
        self._td.cleanup()

    def test_run_and_events(self) -> None:
        cfg = EngineConfig(llm=LLMConfig(provider="gemini", gemini_api_key="AIzaSECRET"))
        run_id = self.store.start_run(cfg)
        event = make_event(EventType.THESIS_CLEARED, 1_000, "inst-1",
                           ThesisCleared(symbol="SPY", reason="thesis_invalidated", play_id="play_9"))
        self.store.log_event(run_id, event)
        self.store.log_error(run_id, where="process_bar", message="boom", bar_ts=1_000)
        self.store.end_run(run_id)

        events = self.store.list_events(run_id)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["type"], "THESIS_CLEARED")
        self.assertEqual(events[0]["data"]["play_id"], "play_9")

        con = sqlite3.connect(self.db_path)
        try:
            runs = con.execute("SELECT instance_id, symbol, ended_epoch_s, config_json FROM runs").fetchall()
            self.assertEqual(len(runs), 1)
            self.assertEqual(runs[0][:2], ("thesis-engine-001", "SPY"))
            self.assertIsNotNone(runs[0][2])
            self.assertNotIn("AIzaSECRET", runs[0][3])
            self.assertEqual(json.loads(runs[0][3])["llm"]["gemini_api_key"], "***")

            play = con.execute("SELECT play_id FROM events").fetchone()[0]
            self.assertEqual(play, "play_9")
            errors = con.execute("SELECT where_text, message, bar_ts_ms FROM errors").fetchall()
            self.assertEqual(errors, [("process_bar", "boom", 1_000)])
        finally:
            con.close()

    def test_snapshot_round_trip_and_overwrite(self) -> None:
        self.assertIsNone(self.store.load_snapshot("inst-1"))
        self.store.save_snapshot("inst-1", {"orchestrator": {"execution": {"phase": "IN_TRADE"}}})
        self.store.save_snapshot("inst-1", {"orchestrator": {"execution": {"phase": "WAITING_FOR_ENTRY"}}})
        snap = self.store.load_snapshot("inst-1")
        self.assertEqual(snap["version"], SNAPSHOT_VERSION)
        self.assertEqual(snap["instance_id"], "inst-1")
        self.assertIn("saved_at", snap)
        self.assertEqual(snap["orchestrator"]["execution"]["phase"], "WAITING_FOR_ENTRY")
        self.assertIsNone(self.store.load_snapshot("other"))

    def test_version_mismatch_is_ignored(self) -> None:
        self.store.save_snapshot("inst-1", {"version": SNAPSHOT_VERSION + 1, "orchestrator": {}})
        self.assertIsNone(self.store.load_snapshot("inst-1"))

    def test_schema_is_idempotent(self) -> None:
        self.store.close()
        self.store = SqliteStore(self.db_path)
        con = sqlite3.connect(self.db_path)
        try:
            self.assertEqual(con.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0], 1)
        finally:
            con.close()


if __name__ == "__main__":
    unittest.main()
