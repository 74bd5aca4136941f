"""
Trace Store — SQLite persistence and query interface.

All spans are written here. Queries support:
- Full trace replay (all spans for one run, in order)
- Recent runs summary
- Filter by span type
- Per-kind task execution statistics
- Error-only view
"""
import os
import json
import sqlite3
import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

TRACE_DB_PATH = os.environ.get("FLOWGRAPH_TRACE_DB", "./data/traces.db")


class TraceStore:
    def __init__(self, db_path: str | None = None):
        self._db_path = db_path or TRACE_DB_PATH
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._init_schema()

    # ── connection ─────────────────────────────────────────────────
    def _conn(self) -> sqlite3.Connection:
        c = sqlite3.connect(self._db_path)
        c.row_factory = sqlite3.Row
        return c

    def _init_schema(self):
        conn = self._conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS spans (
                id           TEXT PRIMARY KEY,
                parent_id    TEXT,
                trace_id     TEXT,
                span_type    TEXT    NOT NULL,
                name         TEXT    NOT NULL,
                task_id      TEXT,
                task_kind    TEXT,
                iteration    INTEGER,
                status       TEXT    NOT NULL DEFAULT 'pending',
                started_at   TEXT,
                ended_at     TEXT,
                duration_ms  REAL    DEFAULT 0,
                input_data   TEXT    DEFAULT '{}',
                output_data  TEXT    DEFAULT '{}',
                error        TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_spans_trace_id   ON spans(trace_id);
            CREATE INDEX IF NOT EXISTS idx_spans_span_type  ON spans(span_type);
            CREATE INDEX IF NOT EXISTS idx_spans_started_at ON spans(started_at);
            CREATE INDEX IF NOT EXISTS idx_spans_status     ON spans(status);
        """)
        conn.commit()
        conn.close()

    # ── write ──────────────────────────────────────────────────────
    def save(self, span) -> None:
        """Persist a TraceSpan."""
        conn = self._conn()
        conn.execute("""
            INSERT OR REPLACE INTO spans (
                id, parent_id, trace_id, span_type, name,
                task_id, task_kind, iteration, status,
                started_at, ended_at, duration_ms,
                input_data, output_data, error
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            span.id, span.parent_id, span.trace_id,
            span.span_type.value, span.name,
            span.task_id, span.task_kind, span.iteration, span.status.value,
            span.started_at, span.ended_at, span.duration_ms,
            json.dumps(span.input_data, default=str),
            json.dumps(span.output_data, default=str),
            span.error,
        ))
        conn.commit()
        conn.close()

    # ── read ───────────────────────────────────────────────────────
    def get_trace(self, trace_id: str) -> list[dict]:
        """All spans for one run, ordered by start time."""
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM spans WHERE trace_id = ? ORDER BY started_at",
            (trace_id,)
        ).fetchall()
        conn.close()
        return [self._parse(r) for r in rows]

    def get_recent_traces(self, limit: int = 10) -> list[dict]:
        """Summary row per run, most recent first."""
        conn = self._conn()
        rows = conn.execute("""
            SELECT
                trace_id,
                COUNT(*)                          AS span_count,
                MIN(started_at)                   AS started_at,
                MAX(ended_at)                     AS ended_at,
                SUM(CASE WHEN span_type='task_execution' THEN 1 ELSE 0 END) AS task_count,
                SUM(CASE WHEN status='error' THEN 1 ELSE 0 END) AS error_count
            FROM spans
            WHERE trace_id IS NOT NULL
            GROUP BY trace_id
            ORDER BY MIN(started_at) DESC
            LIMIT ?
        """, (limit,)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def get_spans_by_type(self, span_type: str, limit: int = 20) -> list[dict]:
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM spans WHERE span_type = ? ORDER BY started_at DESC LIMIT ?",
            (span_type, limit)
        ).fetchall()
        conn.close()
        return [self._parse(r) for r in rows]

    def get_errors(self, limit: int = 20) -> list[dict]:
        """All spans that ended in error, most recent first."""
        conn = self._conn()
        rows = conn.execute(
            "SELECT * FROM spans WHERE status = 'error' ORDER BY started_at DESC LIMIT ?",
            (limit,)
        ).fetchall()
        conn.close()
        return [self._parse(r) for r in rows]

    def get_task_summary(self, days: int = 7) -> dict:
        """Aggregate task execution stats per kind for the last N days."""
        conn = self._conn()
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()

        rows = conn.execute("""
            SELECT
                task_kind,
                COUNT(*)                     AS executions,
                ROUND(AVG(duration_ms), 1)   AS avg_duration_ms,
                SUM(CASE WHEN status='error' THEN 1 ELSE 0 END) AS errors
            FROM spans
            WHERE span_type = 'task_execution' AND started_at > ?
            GROUP BY task_kind
            ORDER BY executions DESC
        """, (cutoff,)).fetchall()
        conn.close()

        return {
            "period_days": days,
            "by_kind": [dict(r) for r in rows],
            "total_executions": sum(r["executions"] or 0 for r in rows),
            "total_errors": sum(r["errors"] or 0 for r in rows),
        }

    # ── helpers ────────────────────────────────────────────────────
    @staticmethod
    def _parse(row) -> dict:
        d = dict(row)
        for field in ("input_data", "output_data"):
            if d.get(field):
                try:
                    d[field] = json.loads(d[field])
                except (json.JSONDecodeError, TypeError):
                    pass
        return d
