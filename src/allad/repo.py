from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from allad.util import now_utc_iso, new_id


def _loads(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return obj if isinstance(obj, dict) else {}


def _dumps(obj: dict[str, Any] | None) -> str:
    return json.dumps(obj or {}, ensure_ascii=True)


def _credential_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out = dict(row)
    out["credentials"] = _loads(out.pop("credentials_json", None))
    out["data"] = _loads(out.pop("data_json", None))
    out["settings"] = _loads(out.pop("settings_json", None))
    out["is_active"] = bool(out.get("is_active"))
    return out


class Repo:
    """
    Relational store for credentials, campaigns, daily metrics and sync logs.
    Every write is an upsert keyed by the natural composite key, so re-running a sync converges.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    # ---- credentials ----

    def save_credential(
        self,
        *,
        team_id: str,
        platform: str,
        account_id: str,
        account_name: str | None = None,
        customer_id: str | None = None,
        credentials: dict[str, Any] | None = None,
        settings: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> str:
        """
        Create the active credential for (team, platform, account) or update it in place.

        On update each bag is shallow-merged into the stored one, so a reconnect that only
        carries a new refresh token keeps the user's settings and the durable token mirror.
        """
        now = now_utc_iso()
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, credentials_json, settings_json, data_json FROM credentials
                WHERE team_id=? AND platform=? AND account_id=? AND is_active=1
                """,
                (team_id, platform, account_id),
            ).fetchone()
            if row:
                cid = str(row["id"])
                credentials = {**_loads(row["credentials_json"]), **(credentials or {})}
                settings = {**_loads(row["settings_json"]), **(settings or {})}
                data = {**_loads(row["data_json"]), **(data or {})}
                conn.execute(
                    """
                    UPDATE credentials SET
                      account_name=COALESCE(?, account_name),
                      customer_id=COALESCE(?, customer_id),
                      credentials_json=?,
                      settings_json=?,
                      data_json=?,
                      updated_at=?
                    WHERE id=?
                    """,
                    (account_name, customer_id, _dumps(credentials), _dumps(settings), _dumps(data), now, cid),
                )
                return cid

            cid = new_id("cred")
            conn.execute(
                """
                INSERT INTO credentials(
                  id, team_id, platform, account_id, account_name, customer_id,
                  credentials_json, data_json, settings_json, is_active, created_by, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    cid,
                    team_id,
                    platform,
                    account_id,
                    account_name,
                    customer_id,
                    _dumps(credentials),
                    _dumps(data),
                    _dumps(settings),
                    created_by,
                    now,
                    now,
                ),
            )
            return cid

    def get_credential(self, credential_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE id=?", (credential_id,)).fetchone()
            return _credential_row(row)

    def get_active_credential(
        self, team_id: str, platform: str, account_id: str | None = None
    ) -> dict[str, Any] | None:
        sql = "SELECT * FROM credentials WHERE team_id=? AND platform=? AND is_active=1"
        params: list[Any] = [team_id, platform]
        if account_id:
            sql += " AND account_id=?"
            params.append(account_id)
        sql += " ORDER BY updated_at DESC LIMIT 1"
        with self.connect() as conn:
            return _credential_row(conn.execute(sql, params).fetchone())

    def list_active_credentials(
        self, *, team_id: str | None = None, platform: str | None = None
    ) -> list[dict[str, Any]]:
        where = ["is_active=1"]
        params: list[Any] = []
        if team_id is not None:
            where.append("team_id=?")
            params.append(team_id)
        if platform is not None:
            where.append("platform=?")
            params.append(platform)
        sql = f"SELECT * FROM credentials WHERE {' AND '.join(where)} ORDER BY team_id, platform, account_id"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [r for r in (_credential_row(x) for x in rows) if r is not None]

    def list_credentials(self, team_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM credentials WHERE team_id=? ORDER BY is_active DESC, platform, account_id",
                (team_id,),
            ).fetchall()
            return [r for r in (_credential_row(x) for x in rows) if r is not None]

    def update_credential_data(self, credential_id: str, patch: dict[str, Any], *, is_active: bool | None = None) -> None:
        """Shallow-merge `patch` into the credential's data bag."""
        now = now_utc_iso()
        with self.connect() as conn:
            row = conn.execute("SELECT data_json FROM credentials WHERE id=?", (credential_id,)).fetchone()
            if not row:
                return
            data = _loads(row["data_json"])
            data.update(patch)
            if is_active is None:
                conn.execute(
                    "UPDATE credentials SET data_json=?, updated_at=? WHERE id=?",
                    (_dumps(data), now, credential_id),
                )
            else:
                conn.execute(
                    "UPDATE credentials SET data_json=?, is_active=?, updated_at=? WHERE id=?",
                    (_dumps(data), 1 if is_active else 0, now, credential_id),
                )

    def update_credential_settings(self, credential_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge `patch` into the settings bag; a None value removes the key."""
        now = now_utc_iso()
        with self.connect() as conn:
            row = conn.execute("SELECT settings_json FROM credentials WHERE id=?", (credential_id,)).fetchone()
            if not row:
                return {}
            settings = _loads(row["settings_json"])
            for k, v in patch.items():
                if v is None:
                    settings.pop(k, None)
                else:
                    settings[k] = v
            conn.execute(
                "UPDATE credentials SET settings_json=?, updated_at=? WHERE id=?",
                (_dumps(settings), now, credential_id),
            )
            return settings

    def update_credential_sync_status(self, credential_id: str, *, ok: bool, error: str | None) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            if ok:
                conn.execute(
                    "UPDATE credentials SET last_synced_at=?, last_error=NULL, updated_at=? WHERE id=?",
                    (now, now, credential_id),
                )
            else:
                conn.execute(
                    "UPDATE credentials SET last_error=?, updated_at=? WHERE id=?",
                    (error, now, credential_id),
                )

    def deactivate_credential(self, credential_id: str, *, error: str | None = None) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE credentials SET is_active=0, last_error=COALESCE(?, last_error), updated_at=? WHERE id=?",
                (error, now, credential_id),
            )

    def delete_credential(self, credential_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM credentials WHERE id=?", (credential_id,))

    # ---- campaigns ----

    def upsert_campaign(
        self,
        *,
        team_id: str,
        platform: str,
        platform_campaign_id: str,
        credential_id: str | None,
        name: str | None,
        status: str | None,
        is_active: bool,
        budget: float | None,
        budget_type: str | None,
        raw_json: dict[str, Any] | None = None,
    ) -> str:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO campaigns(
                  id, team_id, credential_id, platform, platform_campaign_id, name, status,
                  is_active, budget, budget_type, raw_json, synced_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(team_id, platform, platform_campaign_id) DO UPDATE SET
                  credential_id=excluded.credential_id,
                  name=excluded.name,
                  status=excluded.status,
                  is_active=excluded.is_active,
                  budget=excluded.budget,
                  budget_type=excluded.budget_type,
                  raw_json=excluded.raw_json,
                  synced_at=excluded.synced_at,
                  updated_at=excluded.updated_at
                """,
                (
                    new_id("cmp"),
                    team_id,
                    credential_id,
                    platform,
                    platform_campaign_id,
                    name,
                    status,
                    1 if is_active else 0,
                    budget,
                    budget_type,
                    _dumps(raw_json),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM campaigns WHERE team_id=? AND platform=? AND platform_campaign_id=?",
                (team_id, platform, platform_campaign_id),
            ).fetchone()
            return str(row["id"])

    def get_campaign(self, team_id: str, platform: str, platform_campaign_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM campaigns WHERE team_id=? AND platform=? AND platform_campaign_id=?",
                (team_id, platform, platform_campaign_id),
            ).fetchone()
            return dict(row) if row else None

    def list_campaigns(self, team_id: str, platform: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM campaigns WHERE team_id=?"
        params: list[Any] = [team_id]
        if platform:
            sql += " AND platform=?"
            params.append(platform)
        sql += " ORDER BY platform, name"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def set_campaign_status(
        self, *, team_id: str, platform: str, platform_campaign_id: str, status: str, is_active: bool
    ) -> bool:
        now = now_utc_iso()
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE campaigns SET status=?, is_active=?, updated_at=?
                WHERE team_id=? AND platform=? AND platform_campaign_id=?
                """,
                (status, 1 if is_active else 0, now, team_id, platform, platform_campaign_id),
            )
            return cur.rowcount > 0

    def set_campaign_budget(
        self, *, team_id: str, platform: str, platform_campaign_id: str, budget: float
    ) -> bool:
        now = now_utc_iso()
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE campaigns SET budget=?, updated_at=?
                WHERE team_id=? AND platform=? AND platform_campaign_id=?
                """,
                (budget, now, team_id, platform, platform_campaign_id),
            )
            return cur.rowcount > 0

    # ---- metrics ----

    def upsert_campaign_metric(
        self,
        *,
        campaign_id: str,
        team_id: str,
        day: str,
        impressions: int | None,
        clicks: int | None,
        cost: float | None,
        conversions: float | None,
        revenue: float | None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO campaign_metrics(
                  campaign_id, team_id, date, impressions, clicks, cost, conversions, revenue, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(campaign_id, date) DO UPDATE SET
                  team_id=excluded.team_id,
                  impressions=excluded.impressions,
                  clicks=excluded.clicks,
                  cost=excluded.cost,
                  conversions=excluded.conversions,
                  revenue=excluded.revenue,
                  updated_at=excluded.updated_at
                """,
                (campaign_id, team_id, day, impressions, clicks, cost, conversions, revenue, now),
            )

    def list_campaign_metrics(self, campaign_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM campaign_metrics WHERE campaign_id=? ORDER BY date",
                (campaign_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    # ---- sync logs ----

    def insert_sync_log(
        self,
        *,
        team_id: str,
        platform: str,
        sync_type: str,
        status: str,
        records_synced: int,
        error_message: str | None,
        started_at: str,
        completed_at: str | None,
    ) -> str:
        lid = new_id("sync")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_logs(
                  id, team_id, platform, sync_type, status, records_synced, error_message, started_at, completed_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (lid, team_id, platform, sync_type, status, records_synced, error_message, started_at, completed_at),
            )
        return lid

    def list_sync_logs(self, team_id: str, platform: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_logs WHERE team_id=?"
        params: list[Any] = [team_id]
        if platform:
            sql += " AND platform=?"
            params.append(platform)
        sql += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    # ---- manual campaigns (platforms without a campaign API) ----

    def add_manual_campaign(
        self, *, team_id: str, name: str, budget: float | None = None, budget_type: str | None = "daily"
    ) -> str:
        now = now_utc_iso()
        mid = new_id("man")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO manual_campaigns(id, team_id, name, status, budget, budget_type, created_at, updated_at)
                VALUES(?, ?, ?, 'active', ?, ?, ?, ?)
                """,
                (mid, team_id, name, budget, budget_type, now, now),
            )
        return mid

    def list_manual_campaigns(self, team_id: str) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM manual_campaigns WHERE team_id=? ORDER BY name",
                (team_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    def update_manual_campaign(
        self, manual_id: str, *, team_id: str, status: str | None = None, budget: float | None = None
    ) -> bool:
        now = now_utc_iso()
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE manual_campaigns SET
                  status=COALESCE(?, status),
                  budget=COALESCE(?, budget),
                  updated_at=?
                WHERE id=? AND team_id=?
                """,
                (status, budget, now, manual_id, team_id),
            )
            return cur.rowcount > 0

    # ---- meta ----

    def get_meta(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            return str(row["value"]) if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                (key, value),
            )

    def pop_meta(self, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM meta WHERE key=?", (key,))
            return str(row["value"])
