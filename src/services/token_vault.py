"""
OAuth credential holder for the Exact Online integration.

One credential set per process, kept in memory only (lost on restart).
Exact rotates refresh tokens: every refresh invalidates the previous
refresh token, so a refresh runs as one shared task (serialized with
connect() behind an asyncio.Lock) and every caller near expiry awaits it,
whether it succeeds or fails.

States:
    disconnected -> connected      authorization-code exchange
    connected -> refreshing -> connected      expired token on get_access_token()
"""

import asyncio
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

import httpx
from loguru import logger

from ..core.exceptions import AccountingError, ErrorKind, NotConnected, TokenExchangeFailed
from .exact_online import TOKEN_PATH, fetch_current_division

EXPIRY_SAFETY_MARGIN_SECONDS = 30
DEFAULT_EXPIRES_IN_SECONDS = 600


class VaultState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class AccessCredential:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: float = 0.0
    division: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TokenVault:
    """
    Usage:
        vault = TokenVault.from_settings(settings)
        division = await vault.connect(code)      # OAuth callback
        token = await vault.get_access_token()    # before every API call
        vault.status()                            # {"connected": True, "division": 123, ...}
    """

    def __init__(
        self,
        base_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self.redirect_uri = redirect_uri or ""
        self.timeout = timeout
        self._clock = clock
        self._credential = AccessCredential()
        self._lock = asyncio.Lock()
        self._refreshing = False
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings) -> "TokenVault":
        return cls(
            base_url=settings.exact_base_url,
            client_id=settings.exact_client_id,
            client_secret=settings.exact_client_secret,
            redirect_uri=settings.exact_redirect_uri,
            timeout=settings.exact_token_timeout_seconds,
        )

    def status(self) -> dict:
        cred = self._credential
        if self._refreshing:
            state = VaultState.REFRESHING
        elif cred.access_token:
            state = VaultState.CONNECTED
        else:
            state = VaultState.DISCONNECTED
        return {
            "connected": bool(cred.access_token),
            "division": cred.division,
            "state": state.value,
        }

    async def connect(self, code: str) -> Optional[int]:
        """
        Exchange an authorization code for tokens and look up the current division.

        Tokens are stored as soon as the exchange succeeds; a failing division
        lookup is raised to the caller but leaves the tokens in place.
        """
        async with self._lock:
            data = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                }
            )
            self._credential = self._credential_from(data, division=None)

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                division = await fetch_current_division(
                    client, self.base_url, self._credential.access_token
                )
            self._credential = replace(self._credential, division=division)

        logger.info("Connected to Exact Online", division=division)
        return division

    async def get_access_token(self) -> str:
        cred = self._credential
        if not cred.access_token:
            raise NotConnected()
        if not cred.is_expired(self._clock()):
            return cred.access_token

        # One refresh per expired credential; waiters share its result or its error
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_expired())
        await asyncio.shield(self._refresh_task)
        return self._credential.access_token

    async def _refresh_expired(self) -> None:
        try:
            async with self._lock:
                # connect() may have replaced the credential while we waited
                cred = self._credential
                if cred.is_expired(self._clock()):
                    await self._refresh(cred)
        finally:
            self._refresh_task = None

    async def _refresh(self, cred: AccessCredential) -> None:
        if not cred.refresh_token:
            raise NotConnected("No refresh token available, re-authorize with Exact Online")

        self._refreshing = True
        try:
            data = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": cred.refresh_token}
            )
        finally:
            self._refreshing = False

        # Access and rotated refresh token are replaced together
        self._credential = self._credential_from(data, division=cred.division)
        logger.info("Exact token refreshed successfully")

    def _credential_from(self, data: dict, division: Optional[int]) -> AccessCredential:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        return AccessCredential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=self._clock() + expires_in - EXPIRY_SAFETY_MARGIN_SECONDS,
            division=division,
        )

    async def _token_request(self, grant: dict) -> dict:
        form = {**grant, "client_id": self.client_id, "client_secret": self.client_secret}
        url = f"{self.base_url}{TOKEN_PATH}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(url, data=form, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {e!r}")
            raise AccountingError(
                ErrorKind.UPSTREAM_UNAVAILABLE, f"Token endpoint unreachable: {e!r}"
            ) from e

        if not r.is_success:
            logger.error(
                "Token request rejected", grant_type=grant["grant_type"], status=r.status_code
            )
            raise TokenExchangeFailed(r.status_code, r.text)

        try:
            data = r.json()
        except ValueError as e:
            raise AccountingError(
                ErrorKind.MALFORMED_RESPONSE, "Token response is not JSON", body=r.text
            ) from e

        if not isinstance(data, dict) or not data.get("access_token"):
            raise AccountingError(
                ErrorKind.MALFORMED_RESPONSE, "Token response has no access_token", body=r.text
            )
        return data
