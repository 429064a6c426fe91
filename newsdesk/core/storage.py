from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from newsdesk.core.settings import Settings
from newsdesk.providers.content_store import ContentQuery
from newsdesk.providers.content_types import ContentItem

logger = logging.getLogger(__name__)


def to_db_time(dt: datetime) -> str:
    """Format a datetime as naive-UTC ISO text for lexicographic comparison."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime("%Y-%m-%dT%H:%M:%S")


def from_db_time(value: str) -> datetime:
    """Parse text written by to_db_time back into an aware UTC datetime."""
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- App Settings (key-value configuration provider, JSON values)
CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);

-- Content store (read-only from the sitemap's point of view)
CREATE TABLE IF NOT EXISTS content_items (
  id INTEGER PRIMARY KEY,
  title TEXT NOT NULL,
  url TEXT NOT NULL,
  content TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL DEFAULT 'publish',
  item_type TEXT NOT NULL DEFAULT 'post',
  author_id INTEGER,
  published_at TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_content_date_status
  ON content_items(published_at, status, item_type);

CREATE TABLE IF NOT EXISTS content_terms (
  item_id INTEGER NOT NULL REFERENCES content_items(id) ON DELETE CASCADE,
  taxonomy TEXT NOT NULL,  -- category, tag
  term_id INTEGER NOT NULL,
  name TEXT NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (item_id, taxonomy, term_id)
);

CREATE INDEX IF NOT EXISTS idx_content_terms_term ON content_terms(taxonomy, term_id);

CREATE TABLE IF NOT EXISTS content_meta (
  item_id INTEGER NOT NULL REFERENCES content_items(id) ON DELETE CASCADE,
  meta_key TEXT NOT NULL,
  meta_value TEXT,
  PRIMARY KEY (item_id, meta_key)
);

CREATE INDEX IF NOT EXISTS idx_content_meta_key ON content_meta(meta_key, item_id);

-- Durable cache fallback store
CREATE TABLE IF NOT EXISTS cache_entries (
  key TEXT PRIMARY KEY,
  value BLOB NOT NULL,
  expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at);

-- Ping audit log (append-only)
CREATE TABLE IF NOT EXISTS ping_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  item_id INTEGER NOT NULL,  -- 0 for feed-level pings
  action TEXT NOT NULL,      -- ping, indexnow, submit
  target TEXT NOT NULL,
  response_code INTEGER,
  response_message TEXT,
  success INTEGER NOT NULL DEFAULT 0,
  timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ping_log_item ON ping_log(item_id, target);
CREATE INDEX IF NOT EXISTS idx_ping_log_timestamp ON ping_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_ping_log_target ON ping_log(target);

-- Deferred notifications (one row per item)
CREATE TABLE IF NOT EXISTS ping_queue (
  item_id INTEGER PRIMARY KEY,
  due_at REAL NOT NULL,
  created_at TEXT DEFAULT (datetime('now'))
);

-- Daily analytics counters
CREATE TABLE IF NOT EXISTS analytics (
  date TEXT PRIMARY KEY,
  posts_in_sitemap INTEGER DEFAULT 0,
  total_pings INTEGER DEFAULT 0,
  successful_pings INTEGER DEFAULT 0,
  failed_pings INTEGER DEFAULT 0,
  cache_hits INTEGER DEFAULT 0,
  cache_misses INTEGER DEFAULT 0
);
"""


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.commit()

    # ==================== App Settings ====================

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        cur = self.conn.execute(
            "SELECT value FROM app_settings WHERE key = ?",
            (key,)
        )
        row = cur.fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        self.conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value)
        )
        self.conn.commit()

    # ==================== Content ====================

    def save_content_item(self, item: ContentItem) -> None:
        """Insert or replace a content item with its terms and metadata."""
        self.conn.execute(
            """
            INSERT INTO content_items (id, title, url, content, status, item_type, author_id, published_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                url = excluded.url,
                content = excluded.content,
                status = excluded.status,
                item_type = excluded.item_type,
                author_id = excluded.author_id,
                published_at = excluded.published_at,
                updated_at = datetime('now')
            """,
            (
                item.id,
                item.title,
                item.url,
                item.content,
                item.status,
                item.item_type,
                item.author_id,
                to_db_time(item.published_at),
            ),
        )
        self.conn.execute("DELETE FROM content_terms WHERE item_id = ?", (item.id,))
        self.conn.execute("DELETE FROM content_meta WHERE item_id = ?", (item.id,))

        terms = []
        for pos, name in enumerate(item.categories):
            term_id = item.category_ids[pos] if pos < len(item.category_ids) else -(pos + 1)
            terms.append((item.id, "category", term_id, name, pos))
        for pos, name in enumerate(item.tags):
            term_id = item.tag_ids[pos] if pos < len(item.tag_ids) else -(pos + 1)
            terms.append((item.id, "tag", term_id, name, pos))
        # Ids without a name still count for exclusion filtering
        for pos in range(len(item.categories), len(item.category_ids)):
            terms.append((item.id, "category", item.category_ids[pos], "", pos))
        for pos in range(len(item.tags), len(item.tag_ids)):
            terms.append((item.id, "tag", item.tag_ids[pos], "", pos))
        self.conn.executemany(
            "INSERT OR IGNORE INTO content_terms (item_id, taxonomy, term_id, name, position) VALUES (?, ?, ?, ?, ?)",
            terms,
        )
        self.conn.executemany(
            "INSERT INTO content_meta (item_id, meta_key, meta_value) VALUES (?, ?, ?)",
            [(item.id, k, None if v is None else str(v)) for k, v in item.meta.items()],
        )
        self.conn.commit()

    def delete_content_item(self, item_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM content_items WHERE id = ?", (item_id,))
        self.conn.execute("DELETE FROM content_terms WHERE item_id = ?", (item_id,))
        self.conn.execute("DELETE FROM content_meta WHERE item_id = ?", (item_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def _content_where(self, flt: ContentQuery) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if flt.item_types:
            clauses.append(f"c.item_type IN ({_placeholders(flt.item_types)})")
            params.extend(flt.item_types)
        if flt.statuses:
            clauses.append(f"c.status IN ({_placeholders(flt.statuses)})")
            params.extend(flt.statuses)
        if flt.published_after is not None:
            clauses.append("c.published_at >= ?")
            params.append(to_db_time(flt.published_after))
        if flt.excluded_author_ids:
            clauses.append(
                f"(c.author_id IS NULL OR c.author_id NOT IN ({_placeholders(flt.excluded_author_ids)}))"
            )
            params.extend(flt.excluded_author_ids)
        for taxonomy, ids in (("category", flt.excluded_category_ids), ("tag", flt.excluded_tag_ids)):
            if ids:
                clauses.append(
                    f"""NOT EXISTS (
                        SELECT 1 FROM content_terms t
                        WHERE t.item_id = c.id AND t.taxonomy = ? AND t.term_id IN ({_placeholders(ids)})
                    )"""
                )
                params.append(taxonomy)
                params.extend(ids)

        where = " AND ".join(clauses) if clauses else "1=1"
        return where, params

    def query_content(self, flt: ContentQuery, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        """Return candidate rows (base columns only) in sitemap order."""
        where, params = self._content_where(flt)
        order = "c.published_at DESC, c.id DESC"
        if flt.breaking_first:
            order = (
                "EXISTS (SELECT 1 FROM content_meta m WHERE m.item_id = c.id "
                "AND m.meta_key = 'breaking_news' AND LOWER(m.meta_value) IN ('1', 'true', 'yes')) DESC, " + order
            )
        cur = self.conn.execute(
            f"""
            SELECT c.id, c.title, c.url, c.content, c.status, c.item_type, c.author_id, c.published_at
            FROM content_items c
            WHERE {where}
            ORDER BY {order}
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [dict(zip([d[0] for d in cur.description], row)) for row in cur.fetchall()]

    def count_content(self, flt: ContentQuery) -> int:
        where, params = self._content_where(flt)
        cur = self.conn.execute(f"SELECT COUNT(*) FROM content_items c WHERE {where}", params)
        return cur.fetchone()[0]

    def get_content_row(self, item_id: int) -> dict[str, Any] | None:
        cur = self.conn.execute(
            """
            SELECT id, title, url, content, status, item_type, author_id, published_at
            FROM content_items WHERE id = ?
            """,
            (item_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return dict(zip([d[0] for d in cur.description], row))

    def get_meta_batch(self, item_ids: list[int], meta_keys: Iterable[str]) -> dict[int, dict[str, str]]:
        """Load named metadata for many items in a single query."""
        keys = list(meta_keys)
        if not item_ids or not keys:
            return {}
        cur = self.conn.execute(
            f"""
            SELECT item_id, meta_key, meta_value
            FROM content_meta
            WHERE item_id IN ({_placeholders(item_ids)})
              AND meta_key IN ({_placeholders(keys)})
            """,
            (*item_ids, *keys),
        )
        result: dict[int, dict[str, str]] = {}
        for item_id, key, value in cur.fetchall():
            result.setdefault(item_id, {})[key] = value
        return result

    def get_terms_batch(self, item_ids: list[int]) -> dict[int, list[tuple[str, int, str]]]:
        """Load categories and tags for many items in a single query."""
        if not item_ids:
            return {}
        cur = self.conn.execute(
            f"""
            SELECT item_id, taxonomy, term_id, name
            FROM content_terms
            WHERE item_id IN ({_placeholders(item_ids)})
            ORDER BY item_id, taxonomy, position
            """,
            item_ids,
        )
        result: dict[int, list[tuple[str, int, str]]] = {}
        for item_id, taxonomy, term_id, name in cur.fetchall():
            result.setdefault(item_id, []).append((taxonomy, term_id, name))
        return result

    # ==================== Durable Cache ====================

    def cache_get(self, key: str, now: float) -> bytes | None:
        cur = self.conn.execute(
            "SELECT value FROM cache_entries WHERE key = ? AND expires_at > ?",
            (key, now),
        )
        row = cur.fetchone()
        return bytes(row[0]) if row else None

    def cache_set(self, key: str, value: bytes, expires_at: float) -> None:
        self.conn.execute(
            """
            INSERT INTO cache_entries (key, value, expires_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at
            """,
            (key, sqlite3.Binary(value), expires_at),
        )
        self.conn.commit()

    def cache_delete_prefix(self, prefix: str) -> int:
        """Delete every cache row whose key starts with prefix."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cur = self.conn.execute(
            "DELETE FROM cache_entries WHERE key LIKE ? ESCAPE '\\'",
            (escaped + "%",),
        )
        self.conn.commit()
        return cur.rowcount

    def cache_purge_expired(self, now: float) -> int:
        cur = self.conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
        self.conn.commit()
        return cur.rowcount

    # ==================== Ping Audit Log ====================

    def log_ping(
        self,
        item_id: int,
        action: str,
        target: str,
        response_code: int,
        response_message: str,
        success: bool,
        timestamp: datetime,
    ) -> int:
        """Append one ping attempt to the audit log."""
        cur = self.conn.execute(
            """
            INSERT INTO ping_log (item_id, action, target, response_code, response_message, success, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (item_id, action, target, response_code, response_message, 1 if success else 0, to_db_time(timestamp)),
        )
        self.conn.commit()
        return cur.lastrowid

    def get_failed_ping_items(self, since: datetime, limit: int = 10) -> list[int]:
        """Items whose latest attempt for some target since `since` failed."""
        cur = self.conn.execute(
            """
            SELECT DISTINCT p.item_id
            FROM ping_log p
            WHERE p.item_id != 0
              AND p.timestamp >= ?
              AND p.success = 0
              AND p.id = (
                  SELECT MAX(q.id) FROM ping_log q
                  WHERE q.item_id = p.item_id AND q.target = p.target
              )
            ORDER BY p.item_id
            LIMIT ?
            """,
            (to_db_time(since), limit),
        )
        return [row[0] for row in cur.fetchall()]

    def get_recent_pings(self, limit: int = 50, target: str | None = None) -> list[dict[str, Any]]:
        sql = """
            SELECT id, item_id, action, target, response_code, response_message, success, timestamp
            FROM ping_log
        """
        params: list[Any] = []
        if target:
            sql += " WHERE target = ?"
            params.append(target)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        cur = self.conn.execute(sql, params)
        return [
            {
                "id": r[0],
                "item_id": r[1],
                "action": r[2],
                "target": r[3],
                "response_code": r[4],
                "response_message": r[5],
                "success": bool(r[6]),
                "timestamp": r[7],
            }
            for r in cur.fetchall()
        ]

    def get_ping_stats_by_target(self, since: datetime) -> dict[str, dict[str, int]]:
        cur = self.conn.execute(
            """
            SELECT target, COUNT(*), SUM(success)
            FROM ping_log
            WHERE timestamp >= ?
            GROUP BY target
            """,
            (to_db_time(since),),
        )
        return {
            r[0]: {"total": r[1], "successful": r[2] or 0, "failed": r[1] - (r[2] or 0)}
            for r in cur.fetchall()
        }

    # ==================== Deferred Ping Queue ====================

    def queue_ping(self, item_id: int, due_at: float) -> bool:
        """Queue an item once. Returns False if it was already queued."""
        cur = self.conn.execute(
            "INSERT OR IGNORE INTO ping_queue (item_id, due_at) VALUES (?, ?)",
            (item_id, due_at),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def get_due_pings(self, now: float, limit: int = 50) -> list[int]:
        cur = self.conn.execute(
            "SELECT item_id FROM ping_queue WHERE due_at <= ? ORDER BY due_at, item_id LIMIT ?",
            (now, limit),
        )
        return [row[0] for row in cur.fetchall()]

    def list_queued_pings(self) -> list[dict[str, Any]]:
        cur = self.conn.execute("SELECT item_id, due_at FROM ping_queue ORDER BY due_at, item_id")
        return [{"item_id": r[0], "due_at": r[1]} for r in cur.fetchall()]

    def reschedule_ping(self, item_id: int, due_at: float) -> None:
        self.conn.execute("UPDATE ping_queue SET due_at = ? WHERE item_id = ?", (due_at, item_id))
        self.conn.commit()

    def dequeue_pings(self, item_ids: list[int]) -> None:
        if not item_ids:
            return
        self.conn.execute(
            f"DELETE FROM ping_queue WHERE item_id IN ({_placeholders(item_ids)})",
            item_ids,
        )
        self.conn.commit()

    # ==================== Analytics ====================

    def record_ping_stat(self, day: str, success: bool) -> None:
        self.conn.execute(
            """
            INSERT INTO analytics (date, total_pings, successful_pings, failed_pings)
            VALUES (?, 1, ?, ?)
            ON CONFLICT(date) DO UPDATE SET
                total_pings = total_pings + 1,
                successful_pings = successful_pings + excluded.successful_pings,
                failed_pings = failed_pings + excluded.failed_pings
            """,
            (day, 1 if success else 0, 0 if success else 1),
        )
        self.conn.commit()

    def record_cache_stat(self, day: str, hit: bool) -> None:
        field = "cache_hits" if hit else "cache_misses"
        self.conn.execute(
            f"""
            INSERT INTO analytics (date, {field}) VALUES (?, 1)
            ON CONFLICT(date) DO UPDATE SET {field} = {field} + 1
            """,
            (day,),
        )
        self.conn.commit()

    def set_posts_in_sitemap(self, day: str, count: int) -> None:
        self.conn.execute(
            """
            INSERT INTO analytics (date, posts_in_sitemap) VALUES (?, ?)
            ON CONFLICT(date) DO UPDATE SET posts_in_sitemap = excluded.posts_in_sitemap
            """,
            (day, count),
        )
        self.conn.commit()

    def get_analytics(self, since_day: str) -> list[dict[str, Any]]:
        cur = self.conn.execute(
            """
            SELECT date, posts_in_sitemap, total_pings, successful_pings, failed_pings,
                   cache_hits, cache_misses
            FROM analytics
            WHERE date >= ?
            ORDER BY date
            """,
            (since_day,),
        )
        return [dict(zip([d[0] for d in cur.description], row)) for row in cur.fetchall()]


_db: DB | None = None


def init_db() -> None:
    global _db

    s = Settings.from_env()
    os.makedirs(os.path.dirname(s.db_path), exist_ok=True)

    conn = sqlite3.connect(s.db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    _db = DB(conn=conn)
    _db.init()
    logger.info(f"Database initialized at {s.db_path}")


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
