"""CLI tests — click's CliRunner against an httpx.MockTransport backend.

Learn: The commands build their HTTP client through `_client()`, so the
tests swap that for a client whose transport is a plain function. No
server runs; each handler answers the few routes a command touches.
"""

import json
import os
import stat

import httpx
import pytest
from click.testing import CliRunner

from reps.cli import main as cli
from reps.services import sweeper

TOKEN = "a" * 64


@pytest.fixture()
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("REPS_CONFIG_DIR", str(tmp_path / "config"))
    return tmp_path / "config"


def _use_backend(monkeypatch, handler):
    def fake_client(token=None, api_url=None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        return httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            base_url=api_url or "http://reps.test",
            headers=headers,
        )

    monkeypatch.setattr(cli, "_client", fake_client)


def _write_credentials(config_dir, **extra):
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "credentials.json").write_text(
        json.dumps({"session_token": TOKEN, "email": "ada@example.com", **extra})
    )


# ═══════════════════════════════════════════════════════════
# login
# ═══════════════════════════════════════════════════════════


def test_login_polls_until_approved_and_saves(config_dir, monkeypatch):
    polls = iter([{"status": "pending"}, {"status": "approved", "session_token": TOKEN}])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/auth/device/initiate":
            return httpx.Response(200, json={
                "user_code": "ABCD2345",
                "device_code": "d" * 64,
                "verification_uri": "http://app.test/#device-approve",
                "expires_in": 600,
                "interval": 0,
            })
        if request.url.path == "/api/v1/auth/device/poll":
            assert json.loads(request.content) == {"device_code": "d" * 64}
            return httpx.Response(200, json=next(polls))
        if request.url.path == "/api/v1/auth/me":
            assert request.headers["Authorization"] == f"Bearer {TOKEN}"
            return httpx.Response(200, json={"email": "ada@example.com"})
        return httpx.Response(404)

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, ["login", "--no-browser"])

    assert result.exit_code == 0, result.output
    assert "ABCD2345" in result.output
    assert "Logged in as ada@example.com" in result.output

    path = config_dir / "credentials.json"
    assert json.loads(path.read_text())["session_token"] == TOKEN
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_login_denied(config_dir, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/initiate"):
            return httpx.Response(200, json={
                "user_code": "ABCD2345",
                "device_code": "d" * 64,
                "verification_uri": "http://app.test/#device-approve",
                "expires_in": 600,
                "interval": 0,
            })
        return httpx.Response(200, json={"status": "denied"})

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, ["login", "--no-browser"])

    assert result.exit_code == 1
    assert not (config_dir / "credentials.json").exists()


# ═══════════════════════════════════════════════════════════
# whoami / sessions / logout
# ═══════════════════════════════════════════════════════════


def test_whoami(config_dir, monkeypatch):
    _write_credentials(config_dir)
    _use_backend(monkeypatch, lambda request: httpx.Response(200, json={
        "email": "ada@example.com", "display_name": "Ada", "is_admin": False,
    }))

    result = CliRunner().invoke(cli.main, ["whoami"])
    assert result.exit_code == 0
    assert "ada@example.com (Ada)" in result.output


@pytest.mark.parametrize("command", [["whoami"], ["sessions"], ["logout"]])
def test_stored_token_goes_to_issuing_host(config_dir, monkeypatch, command):
    monkeypatch.delenv("REPS_API_URL", raising=False)
    _write_credentials(config_dir, api_url="https://prod.example")
    seen = []

    def handler(request):
        seen.append((request.url.host, request.headers.get("Authorization")))
        if request.url.path == "/api/v1/users/me/sessions":
            return httpx.Response(200, json=[])
        return httpx.Response(200, json={"email": "ada@example.com", "message": "ok"})

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, command)

    assert result.exit_code == 0, result.output
    assert seen == [("prod.example", f"Bearer {TOKEN}")]


def test_client_uses_given_api_url(monkeypatch):
    monkeypatch.setenv("REPS_API_URL", "http://localhost:8000")
    c = cli._client(TOKEN, "https://prod.example/")
    assert c.base_url.host == "prod.example"
    assert c.headers["Authorization"] == f"Bearer {TOKEN}"

    c = cli._client()
    assert c.base_url.host == "localhost"
    assert "Authorization" not in c.headers


def test_whoami_not_logged_in(config_dir):
    result = CliRunner().invoke(cli.main, ["whoami"])
    assert result.exit_code == 1


def test_whoami_revoked_session(config_dir, monkeypatch):
    _write_credentials(config_dir)
    _use_backend(monkeypatch, lambda request: httpx.Response(401, json={"detail": "x"}))

    result = CliRunner().invoke(cli.main, ["whoami"])
    assert result.exit_code == 1


def test_sessions_lists_rows(config_dir, monkeypatch):
    _write_credentials(config_dir)
    _use_backend(monkeypatch, lambda request: httpx.Response(200, json=[{
        "id": "11111111-2222-3333-4444-555555555555",
        "created_at": "2026-01-01T00:00:00Z",
        "last_used_at": "2026-01-02T00:00:00Z",
        "expires_at": "2026-02-01T00:00:00Z",
        "user_agent": "CLI",
        "ip_address": None,
        "current": True,
    }]))

    result = CliRunner().invoke(cli.main, ["sessions"])
    assert result.exit_code == 0
    assert "11111111-2222-3333-4444-555555555555" in result.output
    assert "CLI" in result.output


def test_sessions_revoke(config_dir, monkeypatch):
    _write_credentials(config_dir)
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"deleted": True})

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, ["sessions", "--revoke", "abc"])
    assert result.exit_code == 0
    assert seen == [("DELETE", "/api/v1/users/me/sessions/abc")]


def test_logout_revokes_and_forgets(config_dir, monkeypatch):
    _write_credentials(config_dir)
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("Authorization")))
        return httpx.Response(200, json={"message": "Logged out"})

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, ["logout"])

    assert result.exit_code == 0
    assert seen == [("/api/v1/auth/logout", f"Bearer {TOKEN}")]
    assert not (config_dir / "credentials.json").exists()


def test_logout_when_server_unreachable(config_dir, monkeypatch):
    _write_credentials(config_dir)

    def handler(request):
        raise httpx.ConnectError("refused")

    _use_backend(monkeypatch, handler)
    result = CliRunner().invoke(cli.main, ["logout"])

    assert result.exit_code == 0
    assert not (config_dir / "credentials.json").exists()


# ═══════════════════════════════════════════════════════════
# sweep
# ═══════════════════════════════════════════════════════════


def test_sweep_reports_counts(monkeypatch):
    async def fake_sweep_once(self):
        return sweeper.SweepResult(sessions=3, magic_links=2, device_codes=1)

    monkeypatch.setattr(sweeper.SweepWorker, "sweep_once", fake_sweep_once)
    result = CliRunner().invoke(cli.main, ["sweep"])

    assert result.exit_code == 0, result.output
    assert "Removed 3 session(s), 2 sign-in link(s), 1 device code(s)." in result.output
