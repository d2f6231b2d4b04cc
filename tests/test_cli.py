"""Command-line interface."""
from __future__ import annotations

import json

import httpx
import pytest

import tado_feed

from .conftest import API_URL, AUTH_URL, write_tokens
from .test_fetch import HOT_WATER, LIVING_ROOM, ME


@pytest.fixture()
def cli(monkeypatch, fake_tado, token_file):
    real_client = tado_feed.TadoClient

    def client_factory(token_file=None):
        return real_client(
            token_file=token_file,
            http_client=httpx.Client(transport=httpx.MockTransport(fake_tado)),
            auth_url=AUTH_URL,
            api_url=API_URL,
        )

    monkeypatch.setattr(tado_feed, "TadoClient", client_factory)

    def run(*args: str) -> int:
        return tado_feed.main(["--token-file", str(token_file), *args])

    return run


@pytest.fixture()
def seeded(fake_tado, token_file):
    write_tokens(token_file, expires_in=86400)
    fake_tado.add("/me", ME)
    fake_tado.add_home(1, "Home", [LIVING_ROOM, HOT_WATER])
    return fake_tado


def test_status_json(seeded, cli, capsys):
    assert cli("status", "--json") == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["tadoMe"] == ME
    assert [z["name"] for z in payload["tadoHomes"][0]["zones"]] == ["Living room", "Hot water"]


def test_status_text(seeded, cli, capsys):
    assert cli("status") == 0

    out = capsys.readouterr().out
    assert "Home: Home" in out
    assert "Living room" in out


def test_status_without_tokens(fake_tado, cli, capsys):
    assert cli("status") == 1

    out = capsys.readouterr().out
    assert "Authentication error" in out
    assert "tado_tokens.json" in out


def test_refresh(seeded, cli, token_file, capsys):
    assert cli("refresh") == 0

    assert "Access token refreshed" in capsys.readouterr().out
    assert json.loads(token_file.read_text())["access_token"] == "new-access-token"


def test_refresh_without_tokens(fake_tado, cli, capsys):
    assert cli("refresh") == 1
    assert "Authentication error" in capsys.readouterr().out


def test_raw_zone_state(seeded, cli, capsys):
    assert cli("raw", "zone-state", "1", "0") == 0
    assert json.loads(capsys.readouterr().out) == HOT_WATER["state"]


def test_raw_zones_requires_home(seeded, cli, capsys):
    assert cli("raw", "zones") == 1
    assert "Home ID required" in capsys.readouterr().out


def test_no_command(cli, capsys):
    assert cli() == 0
    assert "usage" in capsys.readouterr().out


def test_bad_interval_env_only_affects_watch(seeded, cli, monkeypatch, capsys):
    monkeypatch.setenv(tado_feed.ENV_UPDATE_INTERVAL, "soon")

    assert cli("status", "--json") == 0
    capsys.readouterr()

    with pytest.raises(SystemExit) as excinfo:
        cli("watch")
    assert excinfo.value.code == 2
    assert "invalid int value: 'soon'" in capsys.readouterr().err
