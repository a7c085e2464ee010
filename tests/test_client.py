import json
import threading
import time

import pytest
import requests

import ptv_proxy


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


PAYLOAD = {"departures": [], "routes": {}, "directions": {}}


def make_client(session, clock=None, ttl_ms=25000):
    return ptv_proxy.PtvClient(
        ptv_proxy.Credentials(user_id="1000123", api_key="abc-key"),
        ptv_proxy.StopQuery(stop_id="21470", route_type=2, max_results=5),
        base_url="https://ptv.test",
        cache=ptv_proxy.DeparturesCache(ttl_ms=ttl_ms),
        session=session,
        timeout=(1.0, 2.0),
        clock=clock or FakeClock(),
    )


def test_request_url_and_timeout():
    session = FakeSession(FakeResponse(200, PAYLOAD))
    client = make_client(session)

    assert client.fetch_departures() == PAYLOAD
    url, kwargs = session.calls[0]
    path = "/v3/departures/route_type/2/stop/21470?max_results=5&expand=route&expand=direction&devid=1000123"
    assert url == f"https://ptv.test{path}&signature={ptv_proxy.sign(path, 'abc-key')}"
    assert kwargs["timeout"] == (1.0, 2.0)
    assert kwargs["headers"]["Accept"] == "application/json"


def test_cache_hit_within_ttl():
    session = FakeSession(FakeResponse(200, PAYLOAD))
    clock = FakeClock()
    client = make_client(session, clock)

    client.fetch_departures()
    clock.now += 24_999
    assert client.fetch_departures() == PAYLOAD
    assert len(session.calls) == 1


def test_refetch_after_ttl():
    session = FakeSession(FakeResponse(200, PAYLOAD))
    clock = FakeClock()
    client = make_client(session, clock)

    client.fetch_departures()
    first_fetch = client.cache.entry.fetched_at_ms
    clock.now += 25_000
    client.fetch_departures()
    assert len(session.calls) == 2
    assert client.cache.entry.fetched_at_ms == first_fetch + 25_000

    client.fetch_departures()
    assert len(session.calls) == 2


def test_http_error_status():
    session = FakeSession(FakeResponse(403, text="Forbidden: invalid signature"))
    client = make_client(session)

    with pytest.raises(ptv_proxy.UpstreamError) as excinfo:
        client.fetch_departures()
    assert excinfo.value.status == 403
    assert str(excinfo.value) == "PTV API error: 403 - Forbidden: invalid signature"
    assert client.cache.entry.payload is None


def test_failed_fetch_is_not_cached():
    session = FakeSession(FakeResponse(500, text="oops"))
    client = make_client(session)

    for _ in range(2):
        with pytest.raises(ptv_proxy.UpstreamError):
            client.fetch_departures()
    assert len(session.calls) == 2


def test_timeout():
    client = make_client(FakeSession(error=requests.Timeout("read timed out")))

    with pytest.raises(ptv_proxy.UpstreamError, match="timed out") as excinfo:
        client.fetch_departures()
    assert excinfo.value.status is None


def test_transport_error_hides_url():
    error = requests.ConnectionError("url: /v3/departures?devid=1000123&signature=DEADBEEF")
    client = make_client(FakeSession(error=error))

    with pytest.raises(ptv_proxy.UpstreamError) as excinfo:
        client.fetch_departures()
    assert str(excinfo.value) == "PTV API request failed"
    assert "1000123" not in str(excinfo.value)


def test_invalid_json():
    client = make_client(FakeSession(FakeResponse(200, text="not json")))

    with pytest.raises(ptv_proxy.UpstreamError, match="invalid JSON"):
        client.fetch_departures()
    assert client.cache.entry.payload is None


def test_concurrent_misses_share_one_fetch():
    session = FakeSession(FakeResponse(200, PAYLOAD), delay=0.05)
    client = make_client(session)
    results = []

    def worker():
        results.append(client.fetch_departures())

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(session.calls) == 1
    assert results == [PAYLOAD] * 5


def test_remaining_ms():
    cache = ptv_proxy.DeparturesCache(ttl_ms=25000)
    assert cache.remaining_ms(1000) == 0
    cache.store(PAYLOAD, 1000)
    assert cache.remaining_ms(11000) == 15000
    assert cache.remaining_ms(60000) == 0
    assert cache.fresh(25999) == PAYLOAD
    assert cache.fresh(26000) is None


def test_credentials_repr_hides_values():
    creds = ptv_proxy.Credentials(user_id="1000123", api_key="abc-key")
    assert "abc-key" not in repr(creds)
    assert "1000123" not in repr(creds)
