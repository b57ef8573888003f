from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


class AdsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  account_name TEXT,
                  customer_id TEXT,
                  credentials_json TEXT NOT NULL DEFAULT '{}',
                  data_json TEXT NOT NULL DEFAULT '{}',
                  settings_json TEXT NOT NULL DEFAULT '{}',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_by TEXT,
                  last_synced_at TEXT,
                  last_error TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_credentials_active
                  ON credentials(team_id, platform, account_id) WHERE is_active = 1;

                CREATE INDEX IF NOT EXISTS idx_credentials_platform
                  ON credentials(platform, is_active);

                CREATE TABLE IF NOT EXISTS campaigns (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  credential_id TEXT,
                  platform TEXT NOT NULL,
                  platform_campaign_id TEXT NOT NULL,
                  name TEXT,
                  status TEXT,
                  is_active INTEGER NOT NULL DEFAULT 0,
                  budget REAL,
                  budget_type TEXT,
                  raw_json TEXT NOT NULL DEFAULT '{}',
                  synced_at TEXT,
                  updated_at TEXT NOT NULL,
                  UNIQUE (team_id, platform, platform_campaign_id)
                );

                CREATE TABLE IF NOT EXISTS campaign_metrics (
                  campaign_id TEXT NOT NULL,
                  team_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  impressions INTEGER,
                  clicks INTEGER,
                  cost REAL,
                  conversions REAL,
                  revenue REAL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (campaign_id, date),
                  FOREIGN KEY (campaign_id) REFERENCES campaigns(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS sync_logs (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  platform TEXT NOT NULL,
                  sync_type TEXT NOT NULL,
                  status TEXT NOT NULL,
                  records_synced INTEGER NOT NULL DEFAULT 0,
                  error_message TEXT,
                  started_at TEXT NOT NULL,
                  completed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sync_logs_team
                  ON sync_logs(team_id, platform, started_at);

                CREATE TABLE IF NOT EXISTS manual_campaigns (
                  id TEXT PRIMARY KEY,
                  team_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  budget REAL,
                  budget_type TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )

            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

