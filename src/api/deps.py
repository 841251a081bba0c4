from fastapi import Depends, Request
from pydantic import BaseModel

from ..core.config import settings
from ..models.invoice import InvoiceRecord
from ..services.pipeline import AccountingPipeline, DocumentPipeline
from ..services.token_vault import TokenVault


class ParseResponse(BaseModel):
    ok: bool = True
    result: InvoiceRecord


class PushResponse(BaseModel):
    ok: bool = True
    result: dict | list | None = None


class StatusResponse(BaseModel):
    connected: bool
    division: int | None = None
    state: str


def get_token_vault(request: Request) -> TokenVault:
    return request.app.state.token_vault


def get_document_pipeline(request: Request) -> DocumentPipeline:
    return request.app.state.document_pipeline


def get_accounting_pipeline(vault: TokenVault = Depends(get_token_vault)) -> AccountingPipeline:
    return AccountingPipeline(
        vault, settings.exact_base_url, timeout=settings.exact_api_timeout_seconds
    )
