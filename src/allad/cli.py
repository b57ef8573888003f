from __future__ import annotations

import asyncio
import json
import logging

import typer

from allad.config import Settings
from allad.db import AdsDB
from allad.errors import AllAdError
from allad.oauth.configs import get_oauth_config
from allad.platforms import parse_platform
from allad.repo import Repo
from allad.scheduler import FULL, INCREMENTAL, run_platform_sync_job, trigger_scheduled_job
from allad.sync import RequestContext, build_orchestrator
from allad.util import new_id, now_utc_iso
from allad.web.app import run_web
from allad.worker import run_tick, run_worker

app = typer.Typer(no_args_is_help=True)
credential_app = typer.Typer(no_args_is_help=True)
campaign_app = typer.Typer(no_args_is_help=True)
app.add_typer(credential_app, name="credential")
app.add_typer(campaign_app, name="campaign")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load() -> tuple[Settings, Repo]:
    settings = Settings.load()
    AdsDB(settings.db_path).init()
    return settings, Repo(settings.db_path)


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    if action == "init":
        AdsDB(settings.db_path).init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be: init")


@app.command("web")
def web_cmd() -> None:
    run_web(Settings.load())


@app.command("worker")
def worker_cmd() -> None:
    run_worker(Settings.load())


@app.command("tick")
def tick_cmd() -> None:
    run_tick(Settings.load())


@app.command("job")
def job_cmd(
    name: str = typer.Argument(..., help="refresh-oauth-tokens|google-ads-sync-hourly|google-ads-sync-full-daily"),
    platform: str | None = typer.Option(None, help="Run the sync job for another platform instead."),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)

    async def _run():
        if platform and name != "refresh-oauth-tokens":
            sync_type = FULL if name.endswith("full-daily") else INCREMENTAL
            return await run_platform_sync_job(orchestrator, parse_platform(platform), sync_type)
        return await trigger_scheduled_job(orchestrator, name)

    try:
        out = asyncio.run(_run())
    except AllAdError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    typer.echo(json_dumps(out))


@app.command("sync")
def sync_cmd(
    team: str = typer.Option(..., help="Team id"),
    platform: str | None = typer.Option(None, help="Platform; omit to sync every connected platform."),
    full: bool = typer.Option(False, help="Also backfill daily metrics per campaign."),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    ctx = RequestContext(team_id=team, user_id="cli")
    if platform:
        out = asyncio.run(
            orchestrator.sync_platform_campaigns(ctx, platform, sync_type=FULL if full else "manual")
        )
        typer.echo(json_dumps(out))
        if not out.get("success"):
            raise typer.Exit(code=2)
        return
    typer.echo(json_dumps(asyncio.run(orchestrator.sync_all_platforms(ctx))))


@app.command("auth-url")
def auth_url_cmd(
    platform: str = typer.Option(..., help="google|meta|kakao|tiktok|amazon"),
    team: str = typer.Option(..., help="Team id"),
    account_id: str | None = typer.Option(None, help="External account id to connect"),
) -> None:
    """Print a provider authorization URL; the callback completes the connection."""
    settings, repo = _load()
    orchestrator = build_orchestrator(settings)
    try:
        cfg = get_oauth_config(platform)
        state = new_id("st")
        url = orchestrator.oauth_manager(cfg.platform).build_authorization_url(state)
    except AllAdError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    repo.set_meta(
        f"oauth_state:{state}",
        json.dumps(
            {
                "platform": cfg.platform.value,
                "team_id": team,
                "user_id": "cli",
                "account_id": account_id,
                "code_verifier": None,
                "created_at": now_utc_iso(),
            }
        ),
    )
    typer.echo(url)


@credential_app.command("add")
def credential_add_cmd(
    team: str = typer.Option(..., help="Team id"),
    platform: str = typer.Option(..., help="google|meta|naver|kakao|coupang|tiktok|amazon"),
    account_id: str = typer.Option(..., help="External account id"),
    account_name: str | None = typer.Option(None),
    customer_id: str | None = typer.Option(None, help="Explicit target account id (Google customer id)"),
    credentials: str = typer.Option("{}", help="Credential bag as a JSON object"),
    settings_json: str = typer.Option("{}", "--settings", help="Settings bag as a JSON object"),
) -> None:
    _settings, repo = _load()
    try:
        p = parse_platform(platform)
        creds = json.loads(credentials)
        bag_settings = json.loads(settings_json)
    except (AllAdError, ValueError) as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    if not isinstance(creds, dict) or not isinstance(bag_settings, dict):
        typer.echo("ERROR: --credentials and --settings must be JSON objects")
        raise typer.Exit(code=2)

    cid = repo.save_credential(
        team_id=team,
        platform=p.value,
        account_id=account_id,
        account_name=account_name,
        customer_id=customer_id,
        credentials=creds,
        settings=bag_settings,
        data={"connected": True, "connected_at": now_utc_iso()},
        created_by="cli",
    )
    typer.echo(f"OK credential {cid}")


@credential_app.command("list")
def credential_list_cmd(team: str = typer.Option(..., help="Team id")) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    rows = asyncio.run(orchestrator.connection_status(RequestContext(team_id=team)))
    typer.echo(json_dumps(rows))


@credential_app.command("accounts")
def credential_accounts_cmd(
    team: str = typer.Option(..., help="Team id"),
    platform: str = typer.Option(..., help="Platform of the connected credential"),
) -> None:
    """List ad accounts reachable with the team's credential."""
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    out = asyncio.run(orchestrator.list_accounts(RequestContext(team_id=team, user_id="cli"), platform))
    typer.echo(json_dumps(out))
    if not out.get("success"):
        raise typer.Exit(code=2)


@credential_app.command("settings")
def credential_settings_cmd(
    credential_id: str = typer.Argument(...),
    team: str = typer.Option(..., help="Team id"),
    patch: str = typer.Option(..., "--set", help='JSON object merged into settings, e.g. {"customer_id": "123"}'),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    try:
        values = json.loads(patch)
        if not isinstance(values, dict):
            raise ValueError("--set must be a JSON object")
        out = orchestrator.update_credential_settings(RequestContext(team_id=team, user_id="cli"), credential_id, values)
    except (AllAdError, ValueError) as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    typer.echo(json_dumps(out))


@credential_app.command("disconnect")
def credential_disconnect_cmd(
    credential_id: str = typer.Argument(...),
    team: str = typer.Option(..., help="Team id"),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    try:
        asyncio.run(orchestrator.disconnect_credential(RequestContext(team_id=team, user_id="cli"), credential_id))
    except AllAdError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    typer.echo("OK disconnected")


@credential_app.command("delete")
def credential_delete_cmd(
    credential_id: str = typer.Argument(...),
    team: str = typer.Option(..., help="Team id"),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    try:
        asyncio.run(orchestrator.delete_credential(RequestContext(team_id=team, user_id="cli"), credential_id))
    except AllAdError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=2) from e
    typer.echo("OK deleted")


@campaign_app.command("add-manual")
def campaign_add_manual_cmd(
    team: str = typer.Option(..., help="Team id"),
    name: str = typer.Option(..., help="Campaign name"),
    budget: float | None = typer.Option(None, help="Daily budget"),
) -> None:
    """Register a campaign for a platform without a campaign API (Coupang)."""
    _settings, repo = _load()
    mid = repo.add_manual_campaign(team_id=team, name=name, budget=budget)
    typer.echo(f"OK manual campaign {mid}")


@campaign_app.command("status")
def campaign_status_cmd(
    platform: str = typer.Argument(...),
    campaign_id: str = typer.Argument(...),
    team: str = typer.Option(..., help="Team id"),
    active: bool = typer.Option(..., "--active/--paused"),
) -> None:
    settings, _repo = _load()
    orchestrator = build_orchestrator(settings)
    out = asyncio.run(
        orchestrator.update_campaign_status(RequestContext(team_id=team, user_id="cli"), platform, campaign_id, active)
    )
    typer.echo(json_dumps(out))
    if not out.get("success"):
        raise typer.Exit(code=2)


if __name__ == "__main__":
    app()
