"""
Tado Display Feed

Polls the tado° cloud API on a timer and forwards home/zone/state snapshots
to a display layer. Tokens are cached in a JSON file and refreshed with the
OAuth2 refresh-token grant; the initial authorization has to be done
elsewhere and the resulting tokens placed in the token file.
"""

from dotenv import load_dotenv
load_dotenv()

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import httpx
import os
import socketio


_LOGGER = logging.getLogger(__name__)

TADO_CLIENT_ID = "1bb50063-6b0c-4d11-bd99-387f4a91cc46"
TADO_AUTH_URL = "https://login.tado.com/oauth2/token"
TADO_API_URL = "https://my.tado.com/api/v2"

EXPIRY_BUFFER_MS = 30 * 1000
DEFAULT_UPDATE_INTERVAL_MS = 60 * 1000

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "tado-feed/1.0",
}

TOKEN_FILE = Path(__file__).resolve().parent / "config" / "tokens" / "tado_tokens.json"

# Environment variable names for configuration
ENV_TOKEN_FILE = "TADO_TOKEN_FILE"
ENV_UPDATE_INTERVAL = "TADO_UPDATE_INTERVAL"
ENV_SOCKET_URL = "TADO_SOCKET_URL"

# Notifications exchanged with the display layer
CONFIG = "CONFIG"
NEW_DATA = "NEW_DATA"


def _now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _token_prefix(token: str | None) -> str:
    if not token:
        return "<none>"
    return f"{token[:10]}..."


@dataclass
class TokenInfo:
    """OAuth2 credentials with the instant they were issued.

    ``issued_at`` is epoch milliseconds and ``expires_in`` is seconds, which is
    also the layout of the token file.
    """
    access_token: str
    refresh_token: str
    expires_in: int = 0
    issued_at: int = field(default_factory=_now_ms)

    @property
    def expires_at(self) -> int:
        """Absolute expiry instant in epoch milliseconds."""
        return self.issued_at + self.expires_in * 1000

    @classmethod
    def from_response(cls, data: dict) -> "TokenInfo":
        """Create TokenInfo from a token endpoint response."""
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_in=int(data.get("expires_in", 0)),
            issued_at=_now_ms(),
        )

    def is_valid(self, buffer_ms: int = EXPIRY_BUFFER_MS) -> bool:
        return bool(self.access_token) and _now_ms() + buffer_ms < self.expires_at

    def clear(self) -> None:
        self.access_token = ""
        self.refresh_token = ""
        self.expires_in = 0

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TokenInfo":
        # Without issue time or lifetime the token is treated as already expired
        if data.get("issued_at") and data.get("expires_in"):
            issued_at = int(data["issued_at"])
            expires_in = int(data["expires_in"])
        else:
            issued_at = _now_ms()
            expires_in = 0
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=expires_in,
            issued_at=issued_at,
        )


@dataclass
class Snapshot:
    """Homes, zones and zone states collected in one fetch cycle."""
    me: dict
    homes: list[dict] = field(default_factory=list)

    def to_payload(self) -> dict:
        """Payload of the NEW_DATA notification."""
        return {"tadoMe": self.me, "tadoHomes": self.homes}

    def __str__(self) -> str:
        lines = []
        for home in self.homes:
            lines.append(f"Home: {home['name']}")
            for zone in home["zones"]:
                lines.append(f"  {_describe_zone(zone)}")
        return "\n".join(lines)


def _describe_zone(zone: dict) -> str:
    state = zone.get("state") or {}
    setting = state.get("setting") or {}
    sensors = state.get("sensorDataPoints") or {}
    inside = (sensors.get("insideTemperature") or {}).get("celsius")
    humidity = (sensors.get("humidity") or {}).get("percentage")
    target = (setting.get("temperature") or {}).get("celsius")
    power = setting.get("power", "?")

    temp_info = f" Room: {inside:.1f}C" if inside is not None else ""
    if target is not None:
        temp_info += f" | Set: {target:.1f}C"
    humidity_info = f" | Humidity: {humidity:.0f}%" if humidity is not None else ""
    return f"{str(zone['name']):<16} [{zone['type']} {power}]{temp_info}{humidity_info}"


@dataclass(frozen=True)
class PollerConfig:
    """Configuration sent by the display layer with the CONFIG notification."""
    update_interval: int  # milliseconds

    def __post_init__(self) -> None:
        if self.update_interval <= 0:
            raise ValueError(f"updateInterval must be positive, got {self.update_interval}")

    @classmethod
    def from_payload(cls, payload: dict) -> "PollerConfig":
        if "updateInterval" not in payload:
            raise ValueError("CONFIG payload is missing updateInterval")
        return cls(update_interval=int(payload["updateInterval"]))


class TadoError(Exception):
    """Base exception for tado° API errors."""
    pass


class AuthenticationError(TadoError):
    """Authentication failed."""
    pass


class NoCredentialsError(AuthenticationError):
    """No access or refresh token is available."""
    pass


class RefreshFailedError(AuthenticationError):
    """The identity provider rejected the refresh or could not be reached."""
    pass


class UnauthenticatedError(TadoError):
    """A fetch was aborted because no valid access token was available."""
    pass


class TransportError(TadoError):
    """An HTTP request to the resource API failed."""
    pass


# ========== Token Store ==========

class TokenStore:
    """Reads and writes the token file. Holds no state besides its path."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else TOKEN_FILE

    def load(self) -> TokenInfo | None:
        """Load tokens from file if available."""
        _LOGGER.info("Loading tokens from %s", self.path)
        if not self.path.exists():
            _LOGGER.error("Token file not found at %s", self.path)
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            tokens = TokenInfo.from_dict(data)
        except OSError as err:
            _LOGGER.error("Could not read token file %s: %s", self.path, err)
            return None
        except (ValueError, KeyError, TypeError) as err:
            _LOGGER.error("Malformed token file %s: %s", self.path, err)
            return None

        _LOGGER.info("Tokens loaded, access token %s", _token_prefix(tokens.access_token))
        return tokens

    def save(self, tokens: TokenInfo) -> None:
        """Save tokens to file, creating the directory first if needed."""
        _LOGGER.info("Saving tokens to %s", self.path)
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _LOGGER.info("Created token directory %s", self.path.parent)
        self.path.write_text(json.dumps(tokens.to_dict(), indent=2), encoding="utf-8")
        self.path.chmod(0o600)  # Restrict permissions


# ========== API Client ==========

class TadoClient:
    """
    Client for the tado° cloud API.

    Keeps the access token fresh and walks me -> homes -> zones -> zone state.
    """

    def __init__(
        self,
        token_file: Path | None = None,
        http_client: httpx.Client | None = None,
        auth_url: str = TADO_AUTH_URL,
        api_url: str = TADO_API_URL,
    ):
        """
        Initialize the tado° client.

        Args:
            token_file: Path to token cache file (or set TADO_TOKEN_FILE env var)
            http_client: Preconfigured httpx client, mainly for tests
            auth_url: Token endpoint of the identity provider
            api_url: Base URL of the resource API
        """
        env_token_file = os.environ.get(ENV_TOKEN_FILE)
        self.store = TokenStore(token_file or (Path(env_token_file) if env_token_file else None))
        self.auth_url = auth_url
        self.api_url = api_url.rstrip("/")
        self._client = http_client or httpx.Client(
            headers=DEFAULT_HEADERS,
            http2=True,
            timeout=30.0,
        )
        self._auth_lock = threading.Lock()
        self.tokens: TokenInfo | None = self.store.load()

    @property
    def access_token(self) -> str | None:
        if self.tokens and self.tokens.access_token:
            return self.tokens.access_token
        return None

    # ========== Authentication ==========

    def ensure_valid(self) -> None:
        """Make sure a usable access token is held, refreshing it if needed."""
        with self._auth_lock:
            if self.tokens and self.tokens.is_valid():
                _LOGGER.debug("Using cached access token (still valid)")
                return

            if self.tokens and self.tokens.refresh_token:
                _LOGGER.info("Access token expired or about to expire, refreshing")
                self._refresh()
                return

            raise NoCredentialsError(
                f"No valid tokens available. Obtain tokens manually and place them in {self.store.path}"
            )

    def refresh(self) -> None:
        """Exchange the refresh token for a new access token."""
        with self._auth_lock:
            self._refresh()

    def _refresh(self) -> None:
        if not self.tokens or not self.tokens.refresh_token:
            raise NoCredentialsError("No refresh token available.")

        try:
            response = self._client.post(
                self.auth_url,
                data={
                    "client_id": TADO_CLIENT_ID,
                    "grant_type": "refresh_token",
                    "refresh_token": self.tokens.refresh_token,
                },
            )
        except httpx.HTTPError as err:
            self.tokens.clear()
            _LOGGER.error("Failed to refresh access token: %s", err)
            raise RefreshFailedError(f"Token refresh failed: {err}") from err

        if not response.is_success:
            self.tokens.clear()
            _LOGGER.error("Failed to refresh access token: %s %s", response.status_code, response.text)
            raise RefreshFailedError(f"Token refresh failed ({response.status_code}): {response.text}")

        try:
            tokens = TokenInfo.from_response(response.json())
        except (ValueError, TypeError, AttributeError) as err:
            self.tokens.clear()
            _LOGGER.error("Unreadable token response: %s", err)
            raise RefreshFailedError(f"Token refresh returned an unreadable response: {err}") from err
        if not tokens.access_token or not tokens.refresh_token:
            # Keep the token file; it still holds the last usable refresh token
            self.tokens.clear()
            _LOGGER.error("Token response without access or refresh token: %s", response.text)
            raise RefreshFailedError(f"Token refresh returned no tokens: {response.text}")
        self.tokens = tokens
        _LOGGER.info(
            "Access token refreshed (%s), valid until %s",
            _token_prefix(self.tokens.access_token),
            datetime.fromtimestamp(self.tokens.expires_at / 1000).isoformat(timespec="seconds"),
        )
        try:
            self.store.save(self.tokens)
        except OSError as err:
            _LOGGER.error("Could not save tokens to %s: %s", self.store.path, err)

    # ========== Requests ==========

    def _request(self, endpoint: str) -> Any:
        """GET a resource with the current bearer token."""
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        _LOGGER.debug("GET %s", url)
        try:
            response = self._client.get(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as err:
            raise TransportError(f"GET {url} failed: {err}") from err

        if response.status_code >= 400:
            raise TransportError(f"API error {response.status_code} for {url}: {response.text}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as err:
            raise TransportError(f"Invalid JSON from {url}: {err}") from err

    def get_me(self) -> dict:
        """Get the user profile, including the list of homes."""
        return self._request("/me")

    def get_zones(self, home_id: int) -> list[dict]:
        return self._request(f"/homes/{home_id}/zones")

    def get_zone_state(self, home_id: int, zone_id: int) -> dict:
        """
        Get the live state of a zone.

        Contains the current setting, sensor data points (temperature,
        humidity), heating power and overlay information.
        """
        return self._request(f"/homes/{home_id}/zones/{zone_id}/state")

    # ========== Snapshot ==========

    def fetch_snapshot(self) -> Snapshot:
        """
        Run one fetch cycle.

        Every request has to succeed; the first failure aborts the cycle and
        no partial snapshot is returned.

        Raises:
            UnauthenticatedError: no valid access token could be obtained
            TransportError: any request in the walk failed
        """
        _LOGGER.info("Fetching tado data")
        try:
            self.ensure_valid()
        except AuthenticationError as err:
            raise UnauthenticatedError(str(err)) from err
        if not self.access_token:
            raise UnauthenticatedError("No valid access token available after authentication")

        me = self.get_me()
        try:
            snapshot = self._walk_homes(me)
        except (KeyError, TypeError, AttributeError) as err:
            raise TransportError(f"Unexpected response layout: {err!r}") from err

        _LOGGER.info(
            "Fetched %d home(s), %d zone(s)",
            len(snapshot.homes),
            sum(len(h["zones"]) for h in snapshot.homes),
        )
        return snapshot

    def _walk_homes(self, me: dict) -> Snapshot:
        snapshot = Snapshot(me=me)

        for home in me.get("homes", []):
            _LOGGER.debug("Processing home %s (%s)", home.get("name"), home["id"])
            home_info = {"id": home["id"], "name": home.get("name"), "zones": []}
            snapshot.homes.append(home_info)

            for zone in self.get_zones(home["id"]):
                _LOGGER.debug("Processing zone %s (%s)", zone.get("name"), zone["id"])
                home_info["zones"].append({
                    "id": zone["id"],
                    "name": zone.get("name"),
                    "type": zone.get("type"),
                    "state": self.get_zone_state(home["id"], zone["id"]),
                })
        return snapshot

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "TadoClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()


# ========== Scheduler ==========

Consumer = Callable[[str, dict], None]


class TadoPoller:
    """
    Runs fetch cycles on a fixed interval and hands snapshots to a consumer.

    The consumer is called as ``consumer(NEW_DATA, payload)`` after every
    successful cycle. Failed cycles are logged and emit nothing.
    """

    def __init__(self, client: TadoClient, consumer: Consumer):
        self.client = client
        self.consumer = consumer
        self.config: PollerConfig | None = None
        self.last_snapshot: Snapshot | None = None
        self._cycle_lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def on_notification(self, notification: str, payload: dict) -> None:
        _LOGGER.info("Received notification %s", notification)
        if notification == CONFIG:
            self.on_config(PollerConfig.from_payload(payload))
        else:
            _LOGGER.debug("Ignoring notification %s", notification)

    def on_config(self, config: PollerConfig) -> None:
        """Store the configuration and (re)start polling."""
        self.config = config
        self.stop()

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._run,
            args=(config.update_interval / 1000, stop_event),
            name="tado-poller",
            daemon=True,
        )
        self._thread.start()
        _LOGGER.info("Polling every %d ms", config.update_interval)

    def _run(self, interval: float, stop_event: threading.Event) -> None:
        self._guarded_cycle()
        while not stop_event.wait(interval):
            _LOGGER.debug("Scheduled data fetch")
            self._guarded_cycle()

    def _guarded_cycle(self) -> None:
        # The timer keeps running whatever a single cycle raises
        try:
            self.run_cycle()
        except Exception:
            _LOGGER.exception("Unexpected error in fetch cycle")

    def run_cycle(self) -> Snapshot | None:
        """Fetch once and emit NEW_DATA. Skipped if a cycle is still running."""
        if not self._cycle_lock.acquire(blocking=False):
            _LOGGER.warning("Previous fetch still in progress, skipping this cycle")
            return None
        try:
            try:
                snapshot = self.client.fetch_snapshot()
            except TadoError as err:
                _LOGGER.error("Failed to fetch tado data: %s", err)
                return None
            self.last_snapshot = snapshot
            self.consumer(NEW_DATA, snapshot.to_payload())
            return snapshot
        finally:
            self._cycle_lock.release()

    def stop(self) -> None:
        """Cancel the running timer, if any."""
        if self._stop_event is not None:
            self._stop_event.set()
            self._stop_event = None

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


# ========== Socket.IO Bridge ==========

class SocketIONotifier:
    """
    Connects a poller to a display host over Socket.IO.

    Inbound CONFIG events start polling, snapshots go out as NEW_DATA events.
    """

    def __init__(self, url: str, client: TadoClient):
        self.url = url
        self._sio = socketio.Client(logger=False, engineio_logger=False)
        self.poller = TadoPoller(client, self.emit)

        @self._sio.on(CONFIG)
        def on_config(data):
            try:
                self.poller.on_notification(CONFIG, data or {})
            except ValueError as err:
                _LOGGER.error("Invalid CONFIG payload %r: %s", data, err)

        @self._sio.on("connect")
        def on_connect():
            _LOGGER.info("Connected to display host at %s", self.url)

        @self._sio.on("disconnect")
        def on_disconnect():
            _LOGGER.warning("Disconnected from display host at %s", self.url)

    def emit(self, notification: str, payload: dict) -> None:
        if not self._sio.connected:
            _LOGGER.warning("Not connected, dropping %s", notification)
            return
        self._sio.emit(notification, payload)

    def connect(self) -> None:
        self._sio.connect(self.url, transports=["websocket", "polling"])

    def wait(self) -> None:
        """Block until the connection is closed."""
        self._sio.wait()

    def close(self) -> None:
        self.poller.stop()
        if self._sio.connected:
            self._sio.disconnect()


# ========== CLI Interface ==========

def _print_new_data(notification: str, payload: dict) -> None:
    print(json.dumps({"notification": notification, "payload": payload}), flush=True)


def main(argv: list[str] | None = None) -> int:
    """Command-line interface for the tado° feed."""
    import argparse

    parser = argparse.ArgumentParser(
        description="tado° display feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status                      Show state of all zones
  %(prog)s status --json               Print the NEW_DATA payload
  %(prog)s refresh                     Force an access token refresh
  %(prog)s watch -i 30000              Poll every 30s, print JSON lines
  %(prog)s watch --socket-url URL      Serve a display host over Socket.IO
  %(prog)s raw me                      Show raw user profile
  %(prog)s raw zones HOME_ID           Show raw zones of a home
  %(prog)s raw zone-state HOME ZONE    Show raw state of a zone

Note: tokens must be seeded manually in the token file; this tool only
      refreshes them.
        """,
    )

    parser.add_argument(
        "--token-file",
        help="Path to token cache file (or set TADO_TOKEN_FILE env var)",
        type=Path,
        default=Path(os.environ[ENV_TOKEN_FILE]) if os.environ.get(ENV_TOKEN_FILE) else TOKEN_FILE,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    status_parser = subparsers.add_parser("status", help="Fetch once and show zone state")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output the NEW_DATA payload as JSON",
    )

    subparsers.add_parser("refresh", help="Force an access token refresh")

    watch_parser = subparsers.add_parser("watch", help="Poll on an interval")
    watch_parser.add_argument(
        "-i", "--interval",
        type=int,
        help="Update interval in milliseconds (or set TADO_UPDATE_INTERVAL env var)",
        default=os.environ.get(ENV_UPDATE_INTERVAL, str(DEFAULT_UPDATE_INTERVAL_MS)),
    )
    watch_parser.add_argument(
        "--socket-url",
        help="Socket.IO URL of the display host (or set TADO_SOCKET_URL env var)",
        default=os.environ.get(ENV_SOCKET_URL),
    )

    raw_parser = subparsers.add_parser("raw", help="Raw API calls")
    raw_parser.add_argument(
        "endpoint",
        choices=["me", "zones", "zone-state"],
        help="API endpoint to call",
    )
    raw_parser.add_argument("home_id", nargs="?", help="Home ID")
    raw_parser.add_argument("zone_id", nargs="?", help="Zone ID")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    try:
        with TadoClient(token_file=args.token_file) as client:

            if args.command == "status":
                snapshot = client.fetch_snapshot()
                if args.json:
                    print(json.dumps(snapshot.to_payload(), indent=2))
                else:
                    print(snapshot)

            elif args.command == "refresh":
                client.refresh()
                expiry = datetime.fromtimestamp(client.tokens.expires_at / 1000)
                print(f"Access token refreshed, valid until {expiry.isoformat(timespec='seconds')}")
                print(f"Tokens cached to: {client.store.path}")

            elif args.command == "watch":
                if args.socket_url:
                    notifier = SocketIONotifier(args.socket_url, client)
                    try:
                        notifier.connect()
                        notifier.wait()
                    except KeyboardInterrupt:
                        pass
                    finally:
                        notifier.close()
                else:
                    poller = TadoPoller(client, _print_new_data)
                    poller.on_config(PollerConfig(update_interval=args.interval))
                    try:
                        while True:
                            poller.join(timeout=1.0)
                    except KeyboardInterrupt:
                        poller.stop()

            elif args.command == "raw":
                client.ensure_valid()
                if args.endpoint == "me":
                    result = client.get_me()
                elif args.endpoint == "zones":
                    if not args.home_id:
                        print("Error: Home ID required for zones endpoint")
                        return 1
                    result = client.get_zones(args.home_id)
                else:
                    if not args.home_id or not args.zone_id:
                        print("Error: Home ID and zone ID required for zone-state endpoint")
                        return 1
                    result = client.get_zone_state(args.home_id, args.zone_id)

                print(json.dumps(result, indent=2))

    except (AuthenticationError, UnauthenticatedError) as e:
        print(f"Authentication error: {e}")
        print(f"Place valid tokens in: {args.token_file}")
        return 1
    except TadoError as e:
        print(f"API error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
