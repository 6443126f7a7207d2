import asyncio
from unittest.mock import MagicMock

import pytest
import requests

import filmweb_export as fe


def fake_response(status, text="", headers=None):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.headers = headers or {}
    return response


def client(session, retries=3):
    return fe.HTTPClient(
        session=session,
        base_url="https://fw.test/",
        timeout_seconds=5,
        max_retries=retries,
        name="test",
        backoff_seconds=0,
    )


def test_returns_first_good_response_after_server_errors():
    session = MagicMock()
    session.get.side_effect = [fake_response(503), fake_response(200, "ok", {"Content-Type": "text/html"})]
    response = asyncio.run(client(session).get("https://fw.test/x", params={"page": 1}))

    assert response.ok
    assert response.text == "ok"
    assert response.headers["content-type"] == "text/html"
    assert session.get.call_count == 2
    session.get.assert_called_with("https://fw.test/x", params={"page": 1}, timeout=5)


def test_auth_statuses_are_returned_to_the_caller():
    session = MagicMock()
    session.get.return_value = fake_response(403)
    response = asyncio.run(client(session).get("https://fw.test/settings"))
    assert response.status == 403
    assert session.get.call_count == 1


def test_gives_up_after_retries():
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("network is unreachable")
    with pytest.raises(fe.TransportError):
        asyncio.run(client(session, retries=2).get("https://fw.test/x"))
    assert session.get.call_count == 2


def test_rate_limited_until_exhausted():
    session = MagicMock()
    session.get.return_value = fake_response(429, headers={"Retry-After": "1"})
    with pytest.raises(fe.TransportError) as excinfo:
        asyncio.run(client(session, retries=2).get("https://fw.test/x"))
    assert excinfo.value.status == 429


def test_json_body():
    page = fe.PageResponse(status=200, url="u", text='{"rate": 7}')
    assert page.json() == {"rate": 7}
    with pytest.raises(ValueError):
        fe.PageResponse(status=200, url="u", text="<html>").json()


def test_client_pool_round_robin():
    pool = fe.ClientPool(["a", "b", "c"])
    assert len(pool) == 3
    assert [pool.get() for _ in range(5)] == ["a", "b", "c", "a", "b"]
    with pytest.raises(ValueError):
        fe.ClientPool([])


def test_build_client_pool(config):
    pool = fe.build_client_pool(
        name="filmweb",
        section_cfg=config["filmweb"],
        session_factory=fe.build_filmweb_session,
    )
    try:
        assert len(pool) == 3
        session = pool.get().session
        assert session.cookies.get("_fwuser_token") == "tok"
        assert session.cookies.get("_fwuser_sessionId") == "sess"
        assert session.cookies.get("JWT") == "jwt"
        assert session.headers["User-Agent"] == fe.USER_AGENT
    finally:
        pool.close()


def test_sanitize_url_for_logs():
    assert fe.sanitize_url_for_logs("https://x.test/a?token=abc&page=2") == "https://x.test/a?token=%2A%2A%2A&page=2"
