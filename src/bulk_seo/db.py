import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from bulk_seo.config import settings

TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled")

_JOB_FIELDS = {
    "status",
    "cancelled",
    "progress_current",
    "progress_total",
    "remaining_seconds",
    "reservation_id",
    "tokens_reserved",
    "tokens_used",
    "applied_count",
    "failed_count",
    "skipped_count",
    "message",
    "error",
    "failure_reason_code",
    "fail_reasons",
    "skip_reasons",
    "started_at",
    "finished_at",
}

_PRODUCT_FIELDS = {"state", "error", "applied_languages", "failed_languages", "tokens_used"}
_JSON_FIELDS = {
    "fail_reasons",
    "skip_reasons",
    "languages",
    "existing_languages",
    "applied_languages",
    "failed_languages",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ago(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()


def _conn() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def _decode(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    for key in _JSON_FIELDS & data.keys():
        data[key] = json.loads(data[key]) if data[key] else []
    return data


def init_db() -> None:
    with _conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS shops (
              shop TEXT PRIMARY KEY,
              plan TEXT,
              access_token TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS token_balances (
              shop TEXT PRIMARY KEY,
              balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
              total_purchased INTEGER NOT NULL DEFAULT 0,
              total_granted INTEGER NOT NULL DEFAULT 0,
              total_used INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reservations (
              id TEXT PRIMARY KEY,
              shop TEXT NOT NULL,
              amount INTEGER NOT NULL,
              feature TEXT NOT NULL,
              status TEXT NOT NULL,
              settled_amount INTEGER,
              job_id TEXT,
              created_at TEXT NOT NULL,
              settled_at TEXT
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS reservations_shop ON reservations(shop)")
        conn.execute("CREATE INDEX IF NOT EXISTS reservations_pending ON reservations(status, created_at)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS token_ledger (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              shop TEXT NOT NULL,
              type TEXT NOT NULL,
              tokens INTEGER NOT NULL,
              reservation_id TEXT,
              note TEXT,
              created_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              shop TEXT NOT NULL,
              model TEXT NOT NULL,
              status TEXT NOT NULL,
              cancelled INTEGER NOT NULL DEFAULT 0,
              progress_current INTEGER NOT NULL DEFAULT 0,
              progress_total INTEGER NOT NULL DEFAULT 0,
              remaining_seconds INTEGER,
              reservation_id TEXT,
              tokens_reserved INTEGER NOT NULL DEFAULT 0,
              tokens_used INTEGER NOT NULL DEFAULT 0,
              applied_count INTEGER NOT NULL DEFAULT 0,
              failed_count INTEGER NOT NULL DEFAULT 0,
              skipped_count INTEGER NOT NULL DEFAULT 0,
              message TEXT,
              error TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "jobs", "failure_reason_code"):
            conn.execute("ALTER TABLE jobs ADD COLUMN failure_reason_code TEXT")
        if not _has_col(conn, "jobs", "fail_reasons"):
            conn.execute("ALTER TABLE jobs ADD COLUMN fail_reasons TEXT")
        if not _has_col(conn, "jobs", "skip_reasons"):
            conn.execute("ALTER TABLE jobs ADD COLUMN skip_reasons TEXT")
        if not _has_col(conn, "jobs", "started_at"):
            conn.execute("ALTER TABLE jobs ADD COLUMN started_at TEXT")
        if not _has_col(conn, "jobs", "finished_at"):
            conn.execute("ALTER TABLE jobs ADD COLUMN finished_at TEXT")

        # One active job per shop, enforced by the database rather than a read-then-insert.
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS jobs_one_active_per_shop
            ON jobs(shop) WHERE status IN ('queued', 'running')
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS jobs_shop_created ON jobs(shop, created_at)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_products (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              job_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              product_id TEXT NOT NULL,
              title TEXT,
              description TEXT,
              languages TEXT NOT NULL,
              existing_languages TEXT NOT NULL,
              state TEXT NOT NULL DEFAULT 'pending',
              error TEXT,
              applied_languages TEXT,
              failed_languages TEXT,
              tokens_used INTEGER NOT NULL DEFAULT 0,
              updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS job_products_job ON job_products(job_id, position)")

        conn.commit()


def upsert_shop(shop: str, plan: str | None = None, access_token: str | None = None) -> None:
    ts = _now()
    with _conn() as conn:
        conn.execute(
            """
            INSERT INTO shops (shop, plan, access_token, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(shop) DO UPDATE SET
              plan = COALESCE(excluded.plan, shops.plan),
              access_token = COALESCE(excluded.access_token, shops.access_token),
              updated_at = excluded.updated_at
            """,
            (shop, plan, access_token, ts, ts),
        )
        conn.commit()


def get_shop(shop: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM shops WHERE shop=?", (shop,)).fetchone()
    return dict(row) if row else None


def create_job(job_id: str, shop: str, model: str, products: list[dict], progress_total: int) -> bool:
    """Persist a queued job with its product tasks. False when the shop already has an active job."""
    ts = _now()
    try:
        with _conn() as conn:
            conn.execute(
                """
                INSERT INTO jobs (job_id, shop, model, status, progress_total, message, created_at, updated_at)
                VALUES (?, ?, ?, 'queued', ?, ?, ?, ?)
                """,
                (job_id, shop, model, progress_total, f"Queued ({len(products)} products)", ts, ts),
            )
            conn.executemany(
                """
                INSERT INTO job_products (
                  job_id, position, product_id, title, description,
                  languages, existing_languages, applied_languages, failed_languages, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, '[]', '[]', ?)
                """,
                [
                    (
                        job_id,
                        pos,
                        p["product_id"],
                        p.get("title"),
                        p.get("description"),
                        json.dumps(p["languages"]),
                        json.dumps(p["existing_languages"]),
                        ts,
                    )
                    for pos, p in enumerate(products)
                ],
            )
            conn.commit()
    except sqlite3.IntegrityError:
        return False
    return True


def claim_job(job_id: str) -> bool:
    """queued -> running, at most once across processes."""
    ts = _now()
    with _conn() as conn:
        cur = conn.execute(
            "UPDATE jobs SET status = 'running', started_at = ?, updated_at = ? WHERE job_id = ? AND status = 'queued'",
            (ts, ts, job_id),
        )
        conn.commit()
    return cur.rowcount == 1


def update_job(job_id: str, **fields: Any) -> None:
    unknown = set(fields) - _JOB_FIELDS
    if unknown:
        raise ValueError(f"unknown job fields: {sorted(unknown)}")
    if fields.get("status") in TERMINAL_JOB_STATUSES:
        fields.setdefault("finished_at", _now())

    assignments = ["updated_at = ?"]
    values: list[Any] = [_now()]
    for key, value in fields.items():
        assignments.append(f"{key} = ?")
        values.append(json.dumps(value) if key in _JSON_FIELDS else value)

    values.append(job_id)
    sql = f"UPDATE jobs SET {', '.join(assignments)} WHERE job_id = ?"
    with _conn() as conn:
        conn.execute(sql, tuple(values))
        conn.commit()


def get_job(job_id: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    return _decode(row)


def get_active_job(shop: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute(
            "SELECT * FROM jobs WHERE shop = ? AND status IN ('queued', 'running')",
            (shop,),
        ).fetchone()
    return _decode(row)


def get_latest_job(shop: str) -> dict | None:
    with _conn() as conn:
        row = conn.execute(
            "SELECT * FROM jobs WHERE shop = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (shop,),
        ).fetchone()
    return _decode(row)


def request_cancel(shop: str) -> bool:
    with _conn() as conn:
        cur = conn.execute(
            "UPDATE jobs SET cancelled = 1, updated_at = ? WHERE shop = ? AND status IN ('queued', 'running')",
            (_now(), shop),
        )
        conn.commit()
    return cur.rowcount > 0


def is_cancel_requested(job_id: str) -> bool:
    with _conn() as conn:
        row = conn.execute("SELECT cancelled FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    return bool(row and row["cancelled"])


def list_job_products(job_id: str) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM job_products WHERE job_id = ? ORDER BY position",
            (job_id,),
        ).fetchall()
    return [_decode(r) for r in rows]


def update_job_product(job_id: str, position: int, **fields: Any) -> None:
    unknown = set(fields) - _PRODUCT_FIELDS
    if unknown:
        raise ValueError(f"unknown product fields: {sorted(unknown)}")

    assignments = ["updated_at = ?"]
    values: list[Any] = [_now()]
    for key, value in fields.items():
        assignments.append(f"{key} = ?")
        values.append(json.dumps(value) if key in _JSON_FIELDS else value)

    values.extend([job_id, position])
    sql = f"UPDATE job_products SET {', '.join(assignments)} WHERE job_id = ? AND position = ?"
    with _conn() as conn:
        conn.execute(sql, tuple(values))
        conn.commit()


def list_stale_jobs(stale_after_sec: float) -> list[dict]:
    with _conn() as conn:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE status IN ('queued', 'running') AND updated_at < ?",
            (_ago(stale_after_sec),),
        ).fetchall()
    return [_decode(r) for r in rows]
