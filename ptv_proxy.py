#!/usr/bin/env python3
# PTV departures proxy for the bus arrival display.

import datetime
from dataclasses import dataclass, field
import hashlib
import hmac
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypedDict, Union, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("ptv_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def env_timezone(name: str, default: str) -> datetime.tzinfo:
    value = os.getenv(name) or default
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown time zone %r in %s, falling back to %s", value, name, default)
        return ZoneInfo(default)


def utc_now_iso() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


PTV_BASE = os.getenv("PTV_BASE_URL", "https://timetableapi.ptv.vic.gov.au")

PTV_USER_ID = os.getenv("PTV_USER_ID", "")
PTV_API_KEY = os.getenv("PTV_API_KEY", "")
STOP_ID = os.getenv("STOP_ID", "")

ROUTE_TYPE_BUS = 2
MAX_RESULTS = env_int("MAX_RESULTS", 5)
ARRIVALS_LIMIT = env_int("ARRIVALS_LIMIT", 3)

# Only buses heading to these destinations are shown.
DESTINATION_FILTER = frozenset(env_csv("DESTINATION_FILTER", "Mitcham"))

CACHE_TTL_MS = env_int("CACHE_TTL_MS", 25000)

PTV_CONNECT_TIMEOUT_SEC = env_float("PTV_CONNECT_TIMEOUT_SEC", 3.0)
PTV_READ_TIMEOUT_SEC = env_float("PTV_READ_TIMEOUT_SEC", 5.0)

DISPLAY_TZ = env_timezone("DISPLAY_TIMEZONE", "Australia/Melbourne")
CLOCK_24H = env_bool("CLOCK_24H", False)

CORS_ALLOWED_ORIGINS = set(
    env_csv(
        "CORS_ALLOWED_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
    )
)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("PORT", 3000)

JsonDict = Dict[str, Any]

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
_MINUTE_MS = 60000


class RawRoute(TypedDict, total=False):
    route_id: int
    route_number: str
    route_name: str


class RawDirection(TypedDict, total=False):
    direction_id: int
    direction_name: str


class RawDeparture(TypedDict, total=False):
    stop_id: int
    route_id: int
    direction_id: int
    scheduled_departure_utc: Optional[str]
    estimated_departure_utc: Optional[str]
    at_platform: bool


class RawDeparturesPayload(TypedDict, total=False):
    departures: List[RawDeparture]
    routes: Dict[str, RawRoute]
    directions: Dict[str, RawDirection]


class Arrival(TypedDict):
    routeLabel: str
    destination: str
    arrivalTimeUtc: str
    arrivalTimeFormatted: str
    minutesUntil: int
    delayMinutes: int
    atPlatform: bool


@dataclass(frozen=True)
class Credentials:
    user_id: str = field(repr=False)
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class StopQuery:
    stop_id: str
    route_type: int = ROUTE_TYPE_BUS
    max_results: int = MAX_RESULTS


@dataclass
class CacheEntry:
    payload: Optional[RawDeparturesPayload]
    fetched_at_ms: int


class ConfigurationError(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class UpstreamError(Exception):
    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status


class TransformError(Exception):
    pass


# Signed requests


def sign(path: str, api_key: str) -> str:
    digest = hmac.new(api_key.encode("utf-8"), path.encode("utf-8"), hashlib.sha1)
    return digest.hexdigest().upper()


def build_signed_url(request_path: str, credentials: Credentials, base_url: str = PTV_BASE) -> str:
    separator = "&" if "?" in request_path else "?"
    path_with_devid = f"{request_path}{separator}devid={credentials.user_id}"
    signature = sign(path_with_devid, credentials.api_key)
    return f"{base_url}{path_with_devid}&signature={signature}"


# Upstream client


class DeparturesCache:
    def __init__(self, ttl_ms: int = CACHE_TTL_MS) -> None:
        self.ttl_ms = max(0, ttl_ms)
        self.entry = CacheEntry(payload=None, fetched_at_ms=0)
        self.lock = threading.Lock()

    def fresh(self, now: int) -> Optional[RawDeparturesPayload]:
        entry = self.entry
        if entry.payload is not None and now - entry.fetched_at_ms < self.ttl_ms:
            return entry.payload
        return None

    def store(self, payload: RawDeparturesPayload, now: int) -> None:
        self.entry = CacheEntry(payload=payload, fetched_at_ms=now)

    def remaining_ms(self, now: int) -> int:
        entry = self.entry
        if entry.payload is None:
            return 0
        return max(0, self.ttl_ms - (now - entry.fetched_at_ms))


class PtvClient:
    def __init__(
        self,
        credentials: Credentials,
        query: StopQuery,
        *,
        base_url: str = PTV_BASE,
        cache: Optional[DeparturesCache] = None,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (PTV_CONNECT_TIMEOUT_SEC, PTV_READ_TIMEOUT_SEC),
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.credentials = credentials
        self.query = query
        self.base_url = base_url.rstrip("/")
        self.cache = cache if cache is not None else DeparturesCache()
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.clock = clock

    def departures_path(self) -> str:
        q = self.query
        return (
            f"/v3/departures/route_type/{q.route_type}/stop/{q.stop_id}"
            f"?max_results={q.max_results}&expand=route&expand=direction"
        )

    def fetch_departures(self) -> RawDeparturesPayload:
        # Held across the request so concurrent misses wait for one fetch.
        with self.cache.lock:
            cached = self.cache.fresh(self.clock())
            if cached is not None:
                log.debug("Serving PTV departures from cache")
                return cached
            payload = self._request_departures()
            self.cache.store(payload, self.clock())
            return payload

    def _request_departures(self) -> RawDeparturesPayload:
        url = build_signed_url(self.departures_path(), self.credentials, self.base_url)
        try:
            resp = self.session.get(
                url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        except requests.Timeout as exc:
            log.warning("PTV request timed out for stop %s", self.query.stop_id)
            raise UpstreamError(None, "PTV API request timed out") from exc
        except requests.RequestException as exc:
            # The exception text embeds the signed URL; log only its type.
            log.warning("PTV request failed for stop %s: %s", self.query.stop_id, type(exc).__name__)
            raise UpstreamError(None, "PTV API request failed") from exc

        if not 200 <= resp.status_code <= 299:
            raise UpstreamError(resp.status_code, f"PTV API error: {resp.status_code} - {resp.text}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamError(resp.status_code, "PTV API returned invalid JSON") from exc

        count = len(data.get("departures") or []) if isinstance(data, dict) else 0
        log.info("Fetched PTV departures for stop %s (%d departures)", self.query.stop_id, count)
        return cast(RawDeparturesPayload, data)


# Arrival transform


def parse_utc_ms(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise TransformError(f"timestamp is not a string: {value!r}")
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise TransformError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return (parsed - _EPOCH) // datetime.timedelta(milliseconds=1)


def round_minutes(delta_ms: int) -> int:
    minutes = (abs(delta_ms) + _MINUTE_MS // 2) // _MINUTE_MS
    return minutes if delta_ms >= 0 else -minutes


def format_local_time(epoch_ms: int, tz: datetime.tzinfo, clock_24h: bool = False) -> str:
    local = datetime.datetime.fromtimestamp(epoch_ms / 1000, tz)
    if clock_24h:
        return f"{local.hour:02d}:{local.minute:02d}"
    hour = local.hour % 12 or 12
    suffix = "am" if local.hour < 12 else "pm"
    return f"{hour:02d}:{local.minute:02d} {suffix}"


def _lookup(mapping: Any, key: Any) -> JsonDict:
    # Upstream keys these mappings by the id as a JSON string.
    if not isinstance(mapping, dict) or key is None:
        return {}
    item = mapping.get(str(key))
    return item if isinstance(item, dict) else {}


def route_label(routes: Any, route_id: Any) -> str:
    route = _lookup(routes, route_id)
    label = route.get("route_number") or route.get("route_name")
    return str(label) if label else f"Route {route_id}"


def destination_name(directions: Any, direction_id: Any) -> str:
    name = _lookup(directions, direction_id).get("direction_name")
    return str(name) if name else ""


def build_arrival(
    departure: Any,
    routes: Any,
    directions: Any,
    now: int,
    destinations: frozenset,
    tz: datetime.tzinfo,
    clock_24h: bool,
) -> Optional[Tuple[int, Arrival]]:
    if not isinstance(departure, dict):
        raise TransformError(f"departure is not an object: {type(departure).__name__}")

    scheduled_raw = departure.get("scheduled_departure_utc")
    estimated_raw = departure.get("estimated_departure_utc")
    scheduled = parse_utc_ms(scheduled_raw)
    estimated = parse_utc_ms(estimated_raw)

    if estimated is not None:
        arrival_ms, arrival_raw = estimated, estimated_raw
    elif scheduled is not None:
        arrival_ms, arrival_raw = scheduled, scheduled_raw
    else:
        return None

    if arrival_ms < now:
        return None

    label = route_label(routes, departure.get("route_id"))
    destination = destination_name(directions, departure.get("direction_id"))
    if destination not in destinations:
        return None

    delay = 0
    if estimated is not None and scheduled is not None:
        delay = round_minutes(estimated - scheduled)

    try:
        formatted = format_local_time(arrival_ms, tz, clock_24h)
    except (OverflowError, ValueError, OSError) as exc:
        raise TransformError(f"arrival time out of range: {arrival_raw!r}") from exc

    arrival: Arrival = {
        "routeLabel": label,
        "destination": destination,
        "arrivalTimeUtc": cast(str, arrival_raw),
        "arrivalTimeFormatted": formatted,
        "minutesUntil": round_minutes(arrival_ms - now),
        "delayMinutes": delay,
        "atPlatform": bool(departure.get("at_platform") or False),
    }
    return arrival_ms, arrival


def transform_departures(
    payload: Any,
    now: int,
    destinations: Union[str, Iterable[str]] = DESTINATION_FILTER,
    *,
    tz: datetime.tzinfo = DISPLAY_TZ,
    clock_24h: bool = CLOCK_24H,
    limit: int = ARRIVALS_LIMIT,
) -> List[Arrival]:
    if not isinstance(payload, dict):
        raise TransformError("PTV payload is not a JSON object")
    departures = payload.get("departures") or []
    if not isinstance(departures, list):
        raise TransformError("PTV payload 'departures' is not a list")

    accepted = frozenset([destinations]) if isinstance(destinations, str) else frozenset(destinations)
    routes = payload.get("routes")
    directions = payload.get("directions")

    ranked: List[Tuple[int, Arrival]] = []
    for departure in departures:
        try:
            item = build_arrival(departure, routes, directions, now, accepted, tz, clock_24h)
        except TransformError as exc:
            log.debug("Skipping malformed departure: %s", exc)
            continue
        if item is not None:
            ranked.append(item)

    ranked.sort(key=lambda item: item[0])
    return [arrival for _, arrival in ranked[: max(0, limit)]]


# Config gate

_REQUIRED_SETTINGS = ("PTV_USER_ID", "PTV_API_KEY", "STOP_ID")


def missing_settings(credentials: Credentials, query: StopQuery) -> List[str]:
    values = (credentials.user_id, credentials.api_key, query.stop_id)
    return [name for name, value in zip(_REQUIRED_SETTINGS, values) if not value]


def check_config(credentials: Credentials, query: StopQuery) -> None:
    missing = missing_settings(credentials, query)
    if missing:
        raise ConfigurationError(f"Missing configuration. Please set {', '.join(missing)} in .env")


# HTTP layer

app = Flask(__name__)
app.config.update(
    DESTINATION_FILTER=DESTINATION_FILTER,
    DISPLAY_TZ=DISPLAY_TZ,
    CLOCK_24H=CLOCK_24H,
    ARRIVALS_LIMIT=ARRIVALS_LIMIT,
)
app.extensions["ptv_client"] = PtvClient(
    Credentials(user_id=PTV_USER_ID, api_key=PTV_API_KEY),
    StopQuery(stop_id=STOP_ID),
)


def get_client() -> PtvClient:
    return cast(PtvClient, current_app.extensions["ptv_client"])


def add_cache_headers(resp: Response, remaining_ms: int) -> Response:
    max_age = remaining_ms // 1000
    resp.headers["Cache-Control"] = f"max-age={max_age}"
    return resp


def error_response(status: int, message: str) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if origin and origin in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.route("/api/arrivals", methods=["GET", "OPTIONS"])
def arrivals() -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    client = get_client()
    try:
        check_config(client.credentials, client.query)
    except ConfigurationError as exc:
        log.warning("Arrivals requested without configuration: %s", exc)
        return error_response(500, str(exc))

    try:
        payload = client.fetch_departures()
        upcoming = transform_departures(
            payload,
            now_ms(),
            current_app.config["DESTINATION_FILTER"],
            tz=current_app.config["DISPLAY_TZ"],
            clock_24h=current_app.config["CLOCK_24H"],
            limit=current_app.config["ARRIVALS_LIMIT"],
        )
    except UpstreamError as exc:
        log.error("Error fetching arrivals: %s", exc)
        return error_response(500, str(exc))
    except TransformError as exc:
        log.error("Unusable PTV payload: %s", exc)
        return error_response(500, str(exc))
    except Exception:
        log.exception("Unexpected error building arrivals")
        return error_response(500, "Unexpected error")

    resp = jsonify(
        {
            "stopId": client.query.stop_id,
            "arrivals": upcoming,
            "lastUpdated": utc_now_iso(),
        }
    )
    return add_cache_headers(resp, client.cache.remaining_ms(client.clock()))


@app.route("/api/config", methods=["GET", "OPTIONS"])
def config_status() -> Response:
    if request.method == "OPTIONS":
        return make_response("", 204)

    client = get_client()
    return jsonify(
        {
            "stopId": client.query.stop_id or None,
            "configured": not missing_settings(client.credentials, client.query),
        }
    )


def main() -> None:
    client = app.extensions["ptv_client"]
    missing = missing_settings(client.credentials, client.query)
    if missing:
        log.warning("%s not set; /api/arrivals will report a configuration error", ", ".join(missing))
    log.info("Bus arrival display running at http://%s:%d", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)


if __name__ == "__main__":
    main()
