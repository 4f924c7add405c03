"""reps CLI — sign in from a terminal and manage the stored session.

Usage:
    reps login                  # Device flow: approve the shown code in a browser
    reps whoami                 # Who the stored session belongs to
    reps sessions               # Your signed-in devices
    reps sessions --revoke ID   # Sign one of them out
    reps logout                 # Revoke the stored session and forget it
    reps sweep                  # Delete expired auth records (run from cron)
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
import time
from pathlib import Path
from typing import Optional

import click
import httpx

from reps import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"
CREDENTIALS_FILE = "credentials.json"


def _api_url() -> str:
    return os.environ.get("REPS_API_URL", DEFAULT_API_URL).rstrip("/")


def _config_dir() -> Path:
    configured = os.environ.get("REPS_CONFIG_DIR")
    if configured:
        return Path(configured)
    return Path.home() / ".config" / "reps"


def _client(
    token: Optional[str] = None, api_url: Optional[str] = None
) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the reps backend.

    A stored token is only ever sent to the api_url it was issued by.
    """
    headers = {"User-Agent": f"reps-cli/{__version__}"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    base_url = api_url.rstrip("/") if api_url else _api_url()
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def load_credentials() -> Optional[dict]:
    path = _config_dir() / CREDENTIALS_FILE
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except (OSError, json.JSONDecodeError):
        return None


def save_credentials(data: dict) -> Path:
    """Write credentials readable by the owner only (0600)."""
    directory = _config_dir()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / CREDENTIALS_FILE
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)
    return path


def clear_credentials() -> bool:
    path = _config_dir() / CREDENTIALS_FILE
    if not path.exists():
        return False
    path.unlink()
    return True


def _stored_client() -> httpx.AsyncClient:
    """Client for the backend that issued the stored session."""
    creds = load_credentials()
    if not creds or not creds.get("session_token"):
        click.secho("Not logged in. Run `reps login` first.", fg="red", err=True)
        sys.exit(1)
    return _client(creds["session_token"], creds.get("api_url"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) or "—")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "pending": "yellow",
        "approved": "green",
        "denied": "red",
        "expired": "red",
    }
    return colors.get(status, "white")


def _session_expired():
    click.secho("Session expired or revoked. Run `reps login` again.", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="reps")
def main():
    """reps — sign in and manage sessions from the terminal."""


# ---------------------------------------------------------------------------
# reps login
# ---------------------------------------------------------------------------


@main.command()
@click.option("--no-browser", is_flag=True, help="Only print the approval URL")
def login(no_browser: bool):
    """Sign in through the browser with a one-time code."""
    _run(_login_impl(no_browser))


async def _login_impl(no_browser: bool):
    async with _client() as c:
        r = await c.post("/api/v1/auth/device/initiate")
        r.raise_for_status()
        grant = r.json()

        click.echo("To sign in, open:")
        click.secho(f"  {grant['verification_uri']}", bold=True)
        click.echo("and enter the code:")
        click.secho(f"  {grant['user_code']}", fg="cyan", bold=True)
        click.echo()
        if not no_browser:
            click.launch(grant["verification_uri"])

        token = await _poll_for_token(
            c, grant["device_code"], grant["interval"], grant["expires_in"]
        )

    if not token:
        sys.exit(1)

    async with _client(token) as c:
        r = await c.get("/api/v1/auth/me")
        r.raise_for_status()
        me = r.json()

    path = save_credentials({
        "api_url": _api_url(),
        "session_token": token,
        "email": me["email"],
    })
    click.secho(f"Logged in as {me['email']}", fg="green")
    click.echo(f"Credentials saved to {path}")


async def _poll_for_token(
    c: httpx.AsyncClient, device_code: str, interval: float, expires_in: float
) -> Optional[str]:
    """Poll until the code is approved, denied or expires."""
    deadline = time.monotonic() + expires_in
    while time.monotonic() < deadline:
        await asyncio.sleep(interval)
        r = await c.post("/api/v1/auth/device/poll", json={"device_code": device_code})
        r.raise_for_status()
        result = r.json()
        status = result["status"]

        if status == "approved":
            return result["session_token"]
        if status != "pending":
            click.secho(f"Login {status}.", fg=_status_color(status), err=True)
            return None
        click.echo("\r  Waiting for approval...", nl=False)

    click.echo()
    click.secho("Login expired.", fg="red", err=True)
    return None


# ---------------------------------------------------------------------------
# reps whoami
# ---------------------------------------------------------------------------


@main.command()
def whoami():
    """Show the account the stored session belongs to."""
    _run(_whoami_impl())


async def _whoami_impl():
    async with _stored_client() as c:
        r = await c.get("/api/v1/auth/me")
        if r.status_code in (401, 403):
            _session_expired()
        r.raise_for_status()
        me = r.json()

    click.echo(f"{me['email']}" + (f" ({me['display_name']})" if me.get("display_name") else ""))
    if me.get("is_admin"):
        click.secho("  admin", fg="magenta")


# ---------------------------------------------------------------------------
# reps sessions
# ---------------------------------------------------------------------------


@main.command()
@click.option("--revoke", "revoke_id", help="Session ID to sign out")
def sessions(revoke_id: Optional[str]):
    """List your sessions, or revoke one."""
    _run(_sessions_impl(revoke_id))


async def _sessions_impl(revoke_id: Optional[str]):
    async with _stored_client() as c:
        if revoke_id:
            r = await c.delete(f"/api/v1/users/me/sessions/{revoke_id}")
            if r.status_code == 401:
                _session_expired()
            if r.status_code in (404, 422):
                click.secho(f"No session {revoke_id}.", fg="red", err=True)
                sys.exit(1)
            r.raise_for_status()
            click.secho(f"Session {revoke_id} revoked.", fg="green")
            return

        r = await c.get("/api/v1/users/me/sessions")
        if r.status_code in (401, 403):
            _session_expired()
        r.raise_for_status()
        rows = r.json()

    for row in rows:
        row["marker"] = "*" if row.get("current") else ""
    _print_table(rows, [
        ("", "marker", 1),
        ("ID", "id", 36),
        ("LAST USED", "last_used_at", 19),
        ("EXPIRES", "expires_at", 19),
        ("CLIENT", "user_agent", 30),
    ])


# ---------------------------------------------------------------------------
# reps logout
# ---------------------------------------------------------------------------


@main.command()
def logout():
    """Revoke the stored session and delete it locally."""
    _run(_logout_impl())


async def _logout_impl():
    creds = load_credentials()
    if not creds or not creds.get("session_token"):
        click.echo("Not logged in.")
        return

    try:
        async with _client(creds["session_token"], creds.get("api_url")) as c:
            r = await c.post("/api/v1/auth/logout")
            r.raise_for_status()
    except httpx.HTTPError as e:
        click.secho(f"Could not reach server ({e}); removing local credentials.", fg="yellow", err=True)

    clear_credentials()
    click.secho("Logged out.", fg="green")


# ---------------------------------------------------------------------------
# reps sweep
# ---------------------------------------------------------------------------


@main.command()
def sweep():
    """Delete expired sessions, sign-in links and device codes."""
    result = _run(_sweep_impl())
    click.echo(
        f"Removed {result.sessions} session(s), {result.magic_links} sign-in link(s), "
        f"{result.device_codes} device code(s)."
    )


async def _sweep_impl():
    # Imported here so the client commands never need database settings.
    from reps.db.engine import engine
    from reps.services.sweeper import SweepWorker

    try:
        return await SweepWorker().sweep_once()
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
