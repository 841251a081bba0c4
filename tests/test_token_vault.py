"""
Tests for the Exact Online token vault.

Covers the credential lifecycle (connect, expiry, refresh-token rotation)
and the guarantee that concurrent callers share a single refresh.
"""

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from src.core.exceptions import AccountingError, ErrorKind, NotConnected, TokenExchangeFailed
from src.services.token_vault import TokenVault

EXACT_BASE = "https://exact.test"
TOKEN_URL = f"{EXACT_BASE}/api/oauth2/token"
ME_URL = f"{EXACT_BASE}/api/v1/current/Me"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault(clock):
    return TokenVault(
        base_url=EXACT_BASE,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://127.0.0.1:8000/auth/exact/callback",
        clock=clock,
    )


def token_response(access="access-1", refresh="refresh-1", expires_in="600"):
    # Exact returns expires_in as a string
    return httpx.Response(
        200,
        json={"access_token": access, "refresh_token": refresh, "expires_in": expires_in, "token_type": "bearer"},
    )


def division_response(division=123456):
    return httpx.Response(200, json={"d": {"results": [{"CurrentDivision": division}]}})


def form_of(request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


async def connect(vault, access="access-1", refresh="refresh-1", expires_in="600", division=123456):
    with respx.mock:
        respx.post(TOKEN_URL).mock(return_value=token_response(access, refresh, expires_in))
        respx.get(ME_URL).mock(return_value=division_response(division))
        return await vault.connect("auth-code")


@pytest.mark.asyncio
async def test_not_connected_before_authorization(vault):
    assert vault.status() == {"connected": False, "division": None, "state": "disconnected"}
    with pytest.raises(NotConnected):
        await vault.get_access_token()


@pytest.mark.asyncio
async def test_connect_exchanges_code_and_fetches_division(vault):
    with respx.mock:
        token_route = respx.post(TOKEN_URL).mock(return_value=token_response())
        me_route = respx.get(ME_URL).mock(return_value=division_response(987))

        division = await vault.connect("auth-code-xyz")

    assert division == 987
    assert vault.status() == {"connected": True, "division": 987, "state": "connected"}

    form = form_of(token_route.calls.last.request)
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code-xyz"
    assert form["client_id"] == "client-id"
    assert form["client_secret"] == "client-secret"
    assert form["redirect_uri"] == "http://127.0.0.1:8000/auth/exact/callback"

    me_request = me_route.calls.last.request
    assert me_request.headers["authorization"] == "Bearer access-1"
    assert me_request.url.params["$select"] == "CurrentDivision"

    assert await vault.get_access_token() == "access-1"


@pytest.mark.asyncio
async def test_connect_rejected_raises_token_exchange_failed(vault):
    with respx.mock:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, text='{"error":"invalid_grant"}'))
        with pytest.raises(TokenExchangeFailed) as exc_info:
            await vault.connect("bad-code")

    assert exc_info.value.upstream_status == 400
    assert "invalid_grant" in exc_info.value.body
    assert vault.status()["connected"] is False


@pytest.mark.asyncio
async def test_failed_division_lookup_keeps_tokens(vault):
    with respx.mock:
        respx.post(TOKEN_URL).mock(return_value=token_response())
        respx.get(ME_URL).mock(return_value=httpx.Response(500, text="boom"))
        with pytest.raises(AccountingError) as exc_info:
            await vault.connect("auth-code")

    assert exc_info.value.kind is ErrorKind.UPSTREAM_REJECTED
    assert vault.status() == {"connected": True, "division": None, "state": "connected"}
    assert await vault.get_access_token() == "access-1"


@pytest.mark.asyncio
async def test_token_endpoint_unreachable(vault):
    with respx.mock:
        respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))
        with pytest.raises(AccountingError) as exc_info:
            await vault.connect("auth-code")

    assert exc_info.value.kind is ErrorKind.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_expiry_applies_thirty_second_margin(vault, clock):
    start = clock.now
    await connect(vault, expires_in="600")

    clock.now = start + 569
    with respx.mock:
        route = respx.post(TOKEN_URL).mock(return_value=token_response("access-2", "refresh-2"))
        assert await vault.get_access_token() == "access-1"
        assert route.call_count == 0

        clock.now = start + 570
        assert await vault.get_access_token() == "access-2"
        assert route.call_count == 1


@pytest.mark.asyncio
async def test_refresh_rotates_refresh_token(vault, clock):
    await connect(vault, expires_in="600")

    with respx.mock:
        route = respx.post(TOKEN_URL).mock(
            side_effect=[
                token_response("access-2", "refresh-2"),
                token_response("access-3", "refresh-3"),
            ]
        )

        clock.now += 600
        assert await vault.get_access_token() == "access-2"
        first = form_of(route.calls[0].request)
        assert first["grant_type"] == "refresh_token"
        assert first["refresh_token"] == "refresh-1"

        clock.now += 600
        assert await vault.get_access_token() == "access-3"
        second = form_of(route.calls[1].request)
        assert second["refresh_token"] == "refresh-2"

    # division survives refreshes
    assert vault.status()["division"] == 123456


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(vault, clock):
    await connect(vault, expires_in="600")
    clock.now += 1000

    with respx.mock:
        route = respx.post(TOKEN_URL).mock(return_value=token_response("access-2", "refresh-2"))
        tokens = await asyncio.gather(*(vault.get_access_token() for _ in range(10)))

    assert route.call_count == 1
    assert tokens == ["access-2"] * 10


@pytest.mark.asyncio
async def test_slow_refresh_is_not_duplicated(vault, clock):
    """Callers arriving while a refresh is in flight wait for it instead of starting another"""
    await connect(vault, expires_in="600")
    clock.now += 1000

    calls = []
    states_during_refresh = []

    async def slow_token_request(grant):
        calls.append(grant)
        states_during_refresh.append(vault.status()["state"])
        await asyncio.sleep(0.05)
        return {"access_token": f"access-{len(calls) + 1}", "refresh_token": "refresh-2", "expires_in": 600}

    vault._token_request = slow_token_request

    tokens = await asyncio.gather(*(vault.get_access_token() for _ in range(25)))

    assert len(calls) == 1
    assert calls[0] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
    assert set(tokens) == {"access-2"}
    assert states_during_refresh == ["refreshing"]
    assert vault.status()["state"] == "connected"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_failed_refresh(vault, clock):
    await connect(vault, expires_in="600")
    clock.now += 1000

    with respx.mock:
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, text='{"error":"invalid_grant"}'))
        results = await asyncio.gather(
            *(vault.get_access_token() for _ in range(5)), return_exceptions=True
        )

    assert route.call_count == 1
    assert all(isinstance(r, TokenExchangeFailed) for r in results)
    assert all(r.upstream_status == 400 for r in results)
    assert vault.status()["state"] == "connected"

    # the next caller after the failure starts a fresh attempt
    with respx.mock:
        route = respx.post(TOKEN_URL).mock(return_value=token_response("access-2", "refresh-2"))
        assert await vault.get_access_token() == "access-2"
        assert route.call_count == 1


@pytest.mark.asyncio
async def test_refresh_rejected_keeps_previous_credential(vault, clock):
    await connect(vault, expires_in="600")
    clock.now += 1000

    with respx.mock:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, text="refresh token revoked"))
        with pytest.raises(TokenExchangeFailed) as exc_info:
            await vault.get_access_token()

    assert exc_info.value.upstream_status == 401
    assert vault.status() == {"connected": True, "division": 123456, "state": "connected"}


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauthorization(vault, clock):
    with respx.mock:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-1", "expires_in": 600})
        )
        respx.get(ME_URL).mock(return_value=division_response())
        await vault.connect("auth-code")

    clock.now += 1000
    with pytest.raises(NotConnected):
        await vault.get_access_token()


@pytest.mark.asyncio
async def test_missing_expires_in_defaults_to_ten_minutes(vault, clock):
    start = clock.now
    with respx.mock:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-1", "refresh_token": "refresh-1"})
        )
        respx.get(ME_URL).mock(return_value=division_response())
        await vault.connect("auth-code")

    clock.now = start + 569
    assert await vault.get_access_token() == "access-1"
