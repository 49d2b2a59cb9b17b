from __future__ import annotations

import os
import sqlite3
import threading
from typing import Optional

import logging

from filtersync.models import FilterConf, FilterDescriptor


logger = logging.getLogger(__name__)


class ConfigStore:
    """Persists the filter list and update interval for the web service.

    The filter storage itself never writes configuration; the app saves
    `FilterStorage.write_config()` here after changes and update passes.
    """

    def __init__(self, db_path: str = "/var/lib/filtersync/filters.db"):
        self.db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filters (
                    id INTEGER PRIMARY KEY,
                    position INTEGER NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    url TEXT NOT NULL UNIQUE,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    last_updated INTEGER NOT NULL DEFAULT 0,
                    last_modified TEXT NOT NULL DEFAULT '',
                    rule_count INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filter_settings (
                    k TEXT PRIMARY KEY,
                    v TEXT NOT NULL
                );
                """
            )

    def load(self, defaults: FilterConf) -> FilterConf:
        """Return `defaults` overlaid with the stored interval and filter list."""
        self.init_db()
        conf = defaults.copy()
        with self._connect() as conn:
            row = conn.execute("SELECT v FROM filter_settings WHERE k='update_interval_hours'").fetchone()
            if row is not None:
                try:
                    conf.update_interval_hours = max(0, int(row[0]))
                except (TypeError, ValueError):
                    logger.warning("Ignoring bad stored update_interval_hours=%r", row[0])

            rows = conn.execute(
                """
                SELECT id, name, url, enabled, last_updated, last_modified, rule_count
                FROM filters ORDER BY position, id
                """
            ).fetchall()

        conf.filters = [
            FilterDescriptor(
                id=int(r["id"]),
                name=str(r["name"] or ""),
                url=str(r["url"]),
                enabled=bool(r["enabled"]),
                last_updated=int(r["last_updated"] or 0),
                last_modified=str(r["last_modified"] or ""),
                rule_count=int(r["rule_count"] or 0),
            )
            for r in rows
        ]
        return conf

    def save(self, conf: FilterConf) -> None:
        self.init_db()
        rows = [
            (
                int(f.id),
                pos,
                f.name or "",
                f.url,
                1 if f.enabled else 0,
                int(f.last_updated),
                f.last_modified or "",
                int(f.rule_count),
            )
            for pos, f in enumerate(conf.filters)
        ]
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM filters")
            if rows:
                conn.executemany(
                    """
                    INSERT INTO filters(id, position, name, url, enabled, last_updated, last_modified, rule_count)
                    VALUES(?,?,?,?,?,?,?,?)
                    """,
                    rows,
                )
            conn.execute(
                "INSERT INTO filter_settings(k,v) VALUES('update_interval_hours',?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (str(int(conf.update_interval_hours)),),
            )


_store: Optional[ConfigStore] = None


def get_config_store() -> ConfigStore:
    global _store
    if _store is None:
        _store = ConfigStore(db_path=os.environ.get("FILTERS_DB", "/var/lib/filtersync/filters.db"))
    return _store
