from urllib.parse import urlencode

import httpx
from loguru import logger

from ..core.exceptions import AccountingError, ErrorKind

# Thin HTTP helpers for the Exact Online REST API.
# Token handling lives in token_vault; these functions take a ready bearer token.

TOKEN_PATH = "/api/oauth2/token"
AUTHORIZE_PATH = "/api/oauth2/auth"
CURRENT_DIVISION_PATH = "/api/v1/current/Me?$select=CurrentDivision"


def build_authorize_url(base_url: str, client_id: str | None, redirect_uri: str | None) -> str:
    if not client_id or not redirect_uri:
        raise AccountingError(
            ErrorKind.NOT_CONFIGURED, "EXACT_CLIENT_ID or EXACT_REDIRECT_URI not configured"
        )
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "force_login": "0",
    }
    return f"{base_url.rstrip('/')}{AUTHORIZE_PATH}?{urlencode(params)}"


def _bearer_headers(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}


async def fetch_current_division(
    client: httpx.AsyncClient, base_url: str, access_token: str
) -> int | None:
    """Read the division the authorized user is currently working in."""
    try:
        r = await client.get(
            f"{base_url.rstrip('/')}{CURRENT_DIVISION_PATH}",
            headers=_bearer_headers(access_token),
        )
    except httpx.HTTPError as e:
        raise AccountingError(
            ErrorKind.UPSTREAM_UNAVAILABLE, f"Division lookup failed: {e!r}"
        ) from e

    if not r.is_success:
        raise AccountingError(
            ErrorKind.UPSTREAM_REJECTED,
            "Failed to fetch division",
            upstream_status=r.status_code,
            body=r.text,
        )

    try:
        results = r.json()["d"]["results"]
    except (ValueError, KeyError, TypeError) as e:
        raise AccountingError(
            ErrorKind.MALFORMED_RESPONSE, "Unexpected division lookup response", body=r.text
        ) from e

    if not results:
        return None
    return results[0].get("CurrentDivision")


async def post_purchase_entry(
    base_url: str,
    division: int,
    access_token: str,
    payload: dict,
    timeout: float = 30.0,
) -> dict:
    """
    Create a purchase entry in the given division.

    Returns:
        The created entity as echoed by Exact (the "d" member of the response)

    Raises:
        AccountingError: UPSTREAM_UNAVAILABLE on transport failure,
            UPSTREAM_REJECTED (provider status and body verbatim) on non-2xx,
            MALFORMED_RESPONSE when a 2xx body is not JSON
    """
    url = f"{base_url.rstrip('/')}/api/v1/{division}/purchaseentry/PurchaseEntries"
    headers = {**_bearer_headers(access_token), "Content-Type": "application/json"}

    logger.info(
        "Posting PurchaseEntry",
        division=division,
        invoice_number=payload.get("InvoiceNumber"),
        lines=len(payload.get("PurchaseEntryLines", [])),
    )

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Exact API unreachable: {e!r}")
        raise AccountingError(ErrorKind.UPSTREAM_UNAVAILABLE, f"Exact API unreachable: {e!r}") from e

    if not r.is_success:
        logger.error("PurchaseEntry POST failed", status=r.status_code, body=r.text)
        raise AccountingError(
            ErrorKind.UPSTREAM_REJECTED,
            "Exact API error",
            upstream_status=r.status_code,
            body=r.text,
        )

    try:
        data = r.json()
    except ValueError as e:
        raise AccountingError(
            ErrorKind.MALFORMED_RESPONSE, "Exact API returned a non-JSON body", body=r.text
        ) from e

    logger.info("PurchaseEntry created successfully", division=division)
    if isinstance(data, dict) and "d" in data:
        return data["d"]
    return data
