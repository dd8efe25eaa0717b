from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import asdict
from typing import Any, Optional

from intraday_thesis.config import EngineConfig
from intraday_thesis.events import DomainEvent, to_dict
from intraday_thesis.serialization import to_jsonable

log = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SqliteStore:
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def start_run(self, cfg: EngineConfig) -> int:
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO runs(started_epoch_s, instance_id, symbol, config_json) VALUES(?, ?, ?, ?)",
            (time.time(), cfg.instance_id, cfg.symbol, json.dumps(_config_jsonable(cfg), sort_keys=True)),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def end_run(self, run_id: int) -> None:
        self._conn.execute("UPDATE runs SET ended_epoch_s=? WHERE id=?", (time.time(), int(run_id)))
        self._conn.commit()

    def log_event(self, run_id: int, event: DomainEvent) -> None:
        self._conn.execute(
            "INSERT INTO events(run_id, ts_ms, event_type, play_id, event_json) VALUES(?, ?, ?, ?, ?)",
            (
                int(run_id),
                int(event.timestamp),
                event.type.value,
                event.play_id,
                json.dumps(to_dict(event), sort_keys=True),
            ),
        )
        self._conn.commit()

    def list_events(self, run_id: int) -> list[dict]:
        cur = self._conn.execute("SELECT event_json FROM events WHERE run_id=? ORDER BY id", (int(run_id),))
        return [json.loads(row[0]) for row in cur.fetchall()]

    def log_error(self, run_id: int, *, where: str, message: str, bar_ts: Optional[int] = None) -> None:
        self._conn.execute(
            "INSERT INTO errors(run_id, ts_epoch_s, bar_ts_ms, where_text, message) VALUES(?, ?, ?, ?, ?)",
            (int(run_id), time.time(), bar_ts, str(where), str(message)),
        )
        self._conn.commit()

    def save_snapshot(self, instance_id: str, snapshot: dict) -> None:
        payload = dict(snapshot)
        payload.setdefault("version", SNAPSHOT_VERSION)
        payload.setdefault("instance_id", instance_id)
        payload.setdefault("saved_at", int(time.time() * 1000))
        self._conn.execute(
            "INSERT INTO state_snapshots(instance_id, saved_epoch_s, version, snapshot_json) VALUES(?, ?, ?, ?) "
            "ON CONFLICT(instance_id) DO UPDATE SET saved_epoch_s=excluded.saved_epoch_s, "
            "version=excluded.version, snapshot_json=excluded.snapshot_json",
            (str(instance_id), time.time(), int(payload["version"]), json.dumps(to_jsonable(payload), sort_keys=True)),
        )
        self._conn.commit()

    def load_snapshot(self, instance_id: str) -> dict | None:
        cur = self._conn.execute(
            "SELECT version, snapshot_json FROM state_snapshots WHERE instance_id=?", (str(instance_id),)
        )
        row = cur.fetchone()
        if not row:
            return None
        version, raw = int(row[0]), row[1]
        if version != SNAPSHOT_VERSION:
            log.warning("Ignoring snapshot for %s with unsupported version %s", instance_id, version)
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            log.warning("Ignoring unreadable snapshot for %s", instance_id)
            return None
        return data if isinstance(data, dict) else None

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_epoch_s REAL NOT NULL,
                ended_epoch_s REAL,
                instance_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                config_json TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_ms INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                play_id TEXT,
                event_json TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
            CREATE INDEX IF NOT EXISTS idx_events_play ON events(play_id);

            CREATE TABLE IF NOT EXISTS errors(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id INTEGER NOT NULL,
                ts_epoch_s REAL NOT NULL,
                bar_ts_ms INTEGER,
                where_text TEXT NOT NULL,
                message TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            );

            CREATE TABLE IF NOT EXISTS state_snapshots(
                instance_id TEXT PRIMARY KEY,
                saved_epoch_s REAL NOT NULL,
                version INTEGER NOT NULL,
                snapshot_json TEXT NOT NULL
            );
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")
        self._conn.commit()


def _config_jsonable(cfg: EngineConfig) -> Any:
    data = to_jsonable(asdict(cfg))
    # Never persist credentials.
    llm = data.get("llm") if isinstance(data, dict) else None
    if isinstance(llm, dict) and llm.get("gemini_api_key"):
        llm["gemini_api_key"] = "***"
    return data
