"""Shared fixtures: a stubbed tado° cloud and seeded token files."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qs

import httpx
import pytest

import tado_feed

AUTH_URL = "https://login.example.test/oauth2/token"
API_URL = "https://api.example.test/api/v2"

NOW_MS = 1_700_000_000_000


class FakeTado:
    """Routes httpx requests to canned tado° responses and records them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Callable[[], httpx.Response]] = {}
        self.unreachable: dict[str, str] = {}
        self.token_reply: Callable[[], httpx.Response] = lambda: httpx.Response(
            200,
            json={"access_token": "new-access-token", "refresh_token": "new-refresh", "expires_in": 600},
        )

    def refuse(self, url: str, message: str = "connection refused") -> None:
        self.unreachable[url] = message

    def add(self, path: str, payload=None, status: int = 200) -> None:
        self.routes[f"{API_URL}{path}"] = lambda: httpx.Response(status, json=payload)

    def add_home(self, home_id: int, name: str, zones: list[dict]) -> None:
        self.add(f"/homes/{home_id}/zones", [{k: z[k] for k in ("id", "name", "type")} for z in zones])
        for zone in zones:
            self.add(f"/homes/{home_id}/zones/{zone['id']}/state", zone["state"])

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == AUTH_URL]

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(API_URL)]

    def form(self, request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.unreachable:
            raise httpx.ConnectError(self.unreachable[url], request=request)
        if url == AUTH_URL:
            return self.token_reply()
        if url in self.routes:
            return self.routes[url]()
        return httpx.Response(404, json={"errors": [{"code": "notFound", "title": url}]})


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(tado_feed.ENV_TOKEN_FILE, raising=False)
    monkeypatch.setattr(tado_feed, "_now_ms", lambda: NOW_MS)


@pytest.fixture()
def fake_tado() -> FakeTado:
    return FakeTado()


@pytest.fixture()
def token_file(tmp_path: Path) -> Path:
    return tmp_path / "config" / "tokens" / "tado_tokens.json"


def write_tokens(path: Path, access: str = "cached-access-token", refresh: str = "cached-refresh",
                 expires_in: int = 600, issued_at: int = NOW_MS) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "issued_at": issued_at,
    }))


@pytest.fixture()
def make_client(fake_tado: FakeTado, token_file: Path):
    clients = []

    def _make_client() -> tado_feed.TadoClient:
        client = tado_feed.TadoClient(
            token_file=token_file,
            http_client=httpx.Client(transport=httpx.MockTransport(fake_tado)),
            auth_url=AUTH_URL,
            api_url=API_URL,
        )
        clients.append(client)
        return client

    yield _make_client

    for client in clients:
        client.close()
