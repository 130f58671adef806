from __future__ import annotations
import csv
import json
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Any, Dict, Iterable, List, Tuple

from .config import ensure_dirs
from .models import AuditRecord, IncidentMessage

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS timeline (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts INTEGER NOT NULL,
  kind TEXT NOT NULL,
  summary TEXT NOT NULL,
  details TEXT
);

-- One row per completed, failed or rejected incident. Never updated.
CREATE TABLE IF NOT EXISTS audit_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  incident_id TEXT NOT NULL,
  detected_at REAL NOT NULL,
  resolved_at REAL NOT NULL,
  trigger_source TEXT NOT NULL,
  remediation_source TEXT NOT NULL,
  manual INTEGER NOT NULL,
  outcome TEXT NOT NULL,
  cpu REAL NOT NULL,
  ram REAL NOT NULL,
  recovery_seconds INTEGER NOT NULL,
  human_latency_seconds INTEGER NOT NULL,
  shift_id INTEGER NOT NULL,
  drill_id TEXT NOT NULL,
  classifier_match INTEGER NOT NULL,
  confidence INTEGER NOT NULL,
  cognitive_load INTEGER NOT NULL,
  stalled INTEGER NOT NULL,
  queue_delay_seconds INTEGER NOT NULL,
  queue_depth INTEGER NOT NULL,
  adversary INTEGER NOT NULL,
  alert_success INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_resolved ON audit_log(resolved_at DESC);

-- Shared bus between independent contexts (windows / processes).
CREATE TABLE IF NOT EXISTS channel_messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  topic TEXT NOT NULL,
  origin TEXT NOT NULL,
  sent_at REAL NOT NULL,
  payload TEXT NOT NULL
);
"""

_AUDIT_COLUMNS = (
    "incident_id", "detected_at", "resolved_at", "trigger_source", "remediation_source",
    "manual", "outcome", "cpu", "ram", "recovery_seconds", "human_latency_seconds",
    "shift_id", "drill_id", "classifier_match", "confidence", "cognitive_load",
    "stalled", "queue_delay_seconds", "queue_depth", "adversary", "alert_success",
)

_BOOL_COLUMNS = {"manual", "classifier_match", "stalled", "adversary", "alert_success"}

CSV_HEADER = [
    "UTC_DATE", "UTC_TIME_PRECISION", "UNIX_EPOCH", "INCIDENT_UUID", "TRIGGER_TYPE",
    "REMEDIATION_TYPE", "CPU_PEAK", "RAM_PEAK", "TOTAL_RECOVERY_TIME_SEC", "SHIFT_ID",
    "ASSOCIATED_DRILL", "GEMINI_HYPOTHESIS_MATCH", "AI_FORENSIC_CONFIDENCE",
    "COGNITIVE_LOAD_SCORE", "STALL_DETECTED", "QUEUE_DELAY_SEC", "IS_ADVERSARY_MODE",
    "LATENCY_HUMAN_ACTION_SEC", "OUTCOME", "QUEUE_DEPTH",
]


class Store:
    def __init__(self, db_path: str):
        ensure_dirs(Path(db_path).parent)
        self.db_path = db_path
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error:
            pass

    def now_ts(self) -> int:
        return int(time.time())

    # ── meta ──────────────────────────────────
    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT INTO meta(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        self._conn.commit()

    def get_meta(self, key: str) -> Optional[str]:
        cur = self._conn.execute("SELECT value FROM meta WHERE key=?", (key,))
        row = cur.fetchone()
        return row[0] if row else None

    # ── timeline ──────────────────────────────
    def add_timeline(self, ts: int, kind: str, summary: str, details: str = "") -> None:
        self._conn.execute(
            "INSERT INTO timeline(ts,kind,summary,details) VALUES(?,?,?,?)",
            (ts, kind, summary, details),
        )
        self._conn.commit()

    def list_timeline(self, limit: int = 200) -> List[Tuple[Any, ...]]:
        cur = self._conn.execute(
            "SELECT ts, kind, summary, details FROM timeline ORDER BY ts DESC, id DESC LIMIT ?",
            (limit,),
        )
        return cur.fetchall()

    # ── audit log (append-only) ───────────────
    def append_audit(self, r: AuditRecord) -> None:
        values = []
        for col in _AUDIT_COLUMNS:
            v = getattr(r, col)
            values.append(int(v) if col in _BOOL_COLUMNS else v)
        self._conn.execute(
            f"INSERT INTO audit_log({','.join(_AUDIT_COLUMNS)}) "
            f"VALUES({','.join('?' for _ in _AUDIT_COLUMNS)})",
            values,
        )
        self._conn.commit()
        self.add_timeline(
            int(r.resolved_at), "audit",
            f"[{r.outcome}] {r.incident_id} via {r.remediation_source}",
            f"recovery={r.recovery_seconds}s latency={r.human_latency_seconds}s",
        )

    def list_audit(self, limit: int = 200, since: Optional[float] = None) -> List[AuditRecord]:
        sql = f"SELECT {','.join(_AUDIT_COLUMNS)} FROM audit_log"
        args: List[Any] = []
        if since is not None:
            sql += " WHERE resolved_at >= ?"
            args.append(since)
        sql += " ORDER BY id DESC LIMIT ?"
        args.append(limit)
        rows = self._conn.execute(sql, args).fetchall()
        return [_row_to_record(row) for row in rows]

    def export_audit_csv(self, path: str, shifts: Optional[Iterable[int]] = None) -> int:
        """Write the audit log as CSV (oldest first). Returns rows written."""
        wanted = set(shifts) if shifts else None
        rows = self._conn.execute(
            f"SELECT {','.join(_AUDIT_COLUMNS)} FROM audit_log ORDER BY id ASC"
        ).fetchall()
        written = 0
        with open(path, "w", newline="", encoding="utf-8") as fh:
            w = csv.writer(fh)
            w.writerow(CSV_HEADER)
            for row in rows:
                r = _row_to_record(row)
                if wanted is not None and r.shift_id not in wanted:
                    continue
                w.writerow(_record_to_csv(r))
                written += 1
        return written

    def audit_summary(self, since: float) -> Dict[str, Any]:
        records = [r for r in self.list_audit(limit=100000, since=since) if r.outcome != "REJECTED_COOLDOWN"]
        total = len(records)
        human = sum(1 for r in records if r.trigger_type == "MANUAL")
        agent = total - human
        avg_ttr = (sum(r.recovery_seconds for r in records) / total) if total else 0.0
        if agent:
            ratio = f"{human / agent:.2f}"
        else:
            ratio = "INFINITE" if human else "0.00"
        return {
            "total_fractures": total,
            "avg_ttr": round(avg_ttr, 1),
            "human_count": human,
            "agent_count": agent,
            "efficiency_ratio": ratio,
            "failed": sum(1 for r in records if r.outcome == "FAILED"),
        }

    # ── cross-context channel ─────────────────
    def add_channel_message(self, msg: IncidentMessage) -> int:
        payload = json.dumps({
            "source": msg.source,
            "message_id": msg.message_id,
            "incident_id": msg.incident_id,
        })
        cur = self._conn.execute(
            "INSERT INTO channel_messages(topic,origin,sent_at,payload) VALUES(?,?,?,?)",
            (msg.topic, msg.origin, msg.sent_at, payload),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def channel_messages_after(self, last_id: int, limit: int = 500) -> List[Tuple[Any, ...]]:
        cur = self._conn.execute(
            "SELECT id, topic, origin, sent_at, payload FROM channel_messages WHERE id > ? ORDER BY id ASC LIMIT ?",
            (last_id, limit),
        )
        return cur.fetchall()

    def last_channel_id(self) -> int:
        row = self._conn.execute("SELECT MAX(id) FROM channel_messages").fetchone()
        return int(row[0] or 0)

    def prune_channel(self, older_than: float) -> None:
        self._conn.execute("DELETE FROM channel_messages WHERE sent_at < ?", (older_than,))
        self._conn.commit()


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────
def _row_to_record(row: Tuple[Any, ...]) -> AuditRecord:
    data = dict(zip(_AUDIT_COLUMNS, row))
    for col in _BOOL_COLUMNS:
        data[col] = bool(data[col])
    return AuditRecord(**data)


def _record_to_csv(r: AuditRecord) -> List[Any]:
    dt = datetime.fromtimestamp(r.detected_at, tz=timezone.utc)
    return [
        dt.strftime("%Y-%m-%d"),
        dt.strftime("%H:%M:%S.") + f"{dt.microsecond // 1000:03d}",
        int(r.detected_at * 1000),
        r.incident_id,
        r.trigger_type,
        r.remediation_type,
        f"{r.cpu:.2f}",
        f"{r.ram:.2f}",
        r.recovery_seconds,
        r.shift_id,
        r.drill_id,
        str(r.classifier_match).lower(),
        r.confidence,
        r.cognitive_load,
        str(r.stalled).lower(),
        r.queue_delay_seconds,
        str(r.adversary).lower(),
        r.human_latency_seconds,
        r.outcome,
        r.queue_depth,
    ]
