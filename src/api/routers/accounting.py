from html import escape

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse, RedirectResponse
from loguru import logger

from ..deps import PushResponse, StatusResponse, get_accounting_pipeline, get_token_vault
from ...core.config import settings
from ...core.exceptions import InvoiceScannerError
from ...models.invoice import PushInvoiceRequest
from ...services.exact_online import build_authorize_url
from ...services.pipeline import AccountingPipeline
from ...services.token_vault import TokenVault

router = APIRouter(tags=["exact-online"])


@router.get("/auth/exact")
async def authorize():
    """Redirect the browser to the Exact Online consent screen"""
    url = build_authorize_url(
        settings.exact_base_url, settings.exact_client_id, settings.exact_redirect_uri
    )
    return RedirectResponse(url)


@router.get("/auth/exact/callback", response_class=HTMLResponse)
async def authorize_callback(code: str | None = None, vault: TokenVault = Depends(get_token_vault)):
    """OAuth callback: exchange the authorization code and show the connected division"""
    if not code:
        return HTMLResponse("Missing authorization code", status_code=400)

    try:
        division = await vault.connect(code)
    except InvoiceScannerError as e:
        logger.error(f"Exact OAuth callback failed: {e}")
        return HTMLResponse(
            f"""
        <html>
            <body style="font-family: Arial; text-align: center; padding: 50px;">
                <h2>❌ Exact Online connection failed</h2>
                <p>{escape(str(e))}</p>
                <p>Please try connecting again.</p>
            </body>
        </html>
        """,
            status_code=e.http_status,
        )

    return f"""
    <html>
        <body style="font-family: Arial; text-align: center; padding: 50px;">
            <h2>✅ Connected to Exact Online</h2>
            <p><strong>Division:</strong> {escape(str(division))}</p>
            <hr>
            <p>You can close this tab and return to the app.</p>
        </body>
    </html>
    """


@router.get("/api/exact/status", response_model=StatusResponse)
async def exact_status(vault: TokenVault = Depends(get_token_vault)):
    return StatusResponse(**vault.status())


@router.post("/api/exact/push-invoice", response_model=PushResponse)
async def push_invoice(
    req: PushInvoiceRequest,
    pipeline: AccountingPipeline = Depends(get_accounting_pipeline),
):
    """
    Post an extracted invoice to Exact Online as a purchase entry.

    Example request:
    {
        "invoiceData": {"invoice_number": "INV-1", "items": [], "totals": {"total": 150.0}},
        "supplierGuid": "5f3c...",
        "glAccountGuid": "a1b2...",
        "journal": "70"
    }
    """
    result = await pipeline.push_invoice(req)
    return PushResponse(result=result)
