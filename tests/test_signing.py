import ptv_proxy


CREDS = ptv_proxy.Credentials(user_id="1000123", api_key="9c132d31-6a30-4cac-8d8b-8a1970834799")


def test_sign_known_vector():
    # Widely published HMAC-SHA1 example.
    signature = ptv_proxy.sign("The quick brown fox jumps over the lazy dog", "key")
    assert signature == "DE7C9B85B8B78AA6BC8A7A36F70A90701C9DB4D9"


def test_sign_is_deterministic_and_uppercase():
    path = "/v3/routes?devid=1000123"
    first = ptv_proxy.sign(path, CREDS.api_key)
    assert first == ptv_proxy.sign(path, CREDS.api_key)
    assert first == first.upper()
    assert len(first) == 40


def test_sign_changes_with_path_or_key():
    path = "/v3/routes?devid=1000123"
    base = ptv_proxy.sign(path, "abc")
    assert ptv_proxy.sign(path.replace("1000123", "1000124"), "abc") != base
    assert ptv_proxy.sign(path, "abd") != base


def test_signed_url_without_query():
    url = ptv_proxy.build_signed_url("/v3/route_types", CREDS, "https://ptv.test")
    expected_signature = ptv_proxy.sign("/v3/route_types?devid=1000123", CREDS.api_key)
    assert url == f"https://ptv.test/v3/route_types?devid=1000123&signature={expected_signature}"


def test_signed_url_with_existing_query():
    path = "/v3/departures/route_type/2/stop/21470?max_results=5&expand=route&expand=direction"
    url = ptv_proxy.build_signed_url(path, CREDS, "https://ptv.test")
    signed_path = f"{path}&devid=1000123"
    assert url == f"https://ptv.test{signed_path}&signature={ptv_proxy.sign(signed_path, CREDS.api_key)}"
    assert url.count("?") == 1
