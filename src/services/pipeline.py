import asyncio
import functools
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from loguru import logger
from pydantic import ValidationError as SchemaValidationError

from ..core.exceptions import ErrorKind, ExtractionError, NotConnected, ValidationError
from ..models.invoice import InvoiceRecord, PushInvoiceRequest
from .accounting_mapper import to_purchase_entry
from .exact_online import post_purchase_entry
from .extraction import ExtractionClient
from .ocr import ocr_workspace, run_tesseract
from .text_triage import DEFAULT_MAX_CHARS, condense
from .token_vault import TokenVault

OcrRunner = Callable[[Path, Path], Awaitable[Path]]


class DocumentPipeline:
    """
    Upload -> OCR -> text triage -> structured extraction.

    Bounds concurrent documents with a semaphore so the OCR process and the
    inference server are not flooded, applies a whole-pipeline timeout, and
    retries the extraction call on transport failures only.
    """

    def __init__(
        self,
        extractor: ExtractionClient,
        ocr_runner: OcrRunner,
        tmp_dir: str | Path = "tmp",
        max_chars: int = DEFAULT_MAX_CHARS,
        keywords: Optional[Iterable[str]] = None,
        timeout: float = 60.0,
        max_concurrent: int = 2,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
    ):
        self.extractor = extractor
        self.ocr_runner = ocr_runner
        self.tmp_dir = tmp_dir
        self.max_chars = max_chars
        self.keywords = list(keywords) if keywords else None
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @classmethod
    def from_settings(cls, settings) -> "DocumentPipeline":
        extractor = ExtractionClient(
            base_url=settings.llama_base_url,
            api_key=settings.llama_api_key,
            model=settings.llama_model,
            timeout=settings.llm_timeout_seconds,
        )
        ocr_runner = functools.partial(
            run_tesseract,
            cmd=settings.tesseract_cmd,
            lang=settings.tesseract_lang,
            oem=settings.tesseract_oem,
            psm=settings.tesseract_psm,
        )
        return cls(
            extractor=extractor,
            ocr_runner=ocr_runner,
            tmp_dir=settings.tmp_dir,
            max_chars=settings.triage_max_chars,
            keywords=settings.triage_keyword_list,
            timeout=settings.document_timeout_seconds,
            max_concurrent=settings.max_concurrent_documents,
            max_retries=settings.llm_max_retries,
            retry_backoff=settings.llm_retry_backoff_seconds,
        )

    async def process(
        self, image_bytes: bytes, mime_type: str | None, filename: str | None = None
    ) -> InvoiceRecord:
        if not image_bytes:
            raise ValidationError("No file uploaded. Use form field 'file'.")

        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._run(image_bytes, mime_type, filename), timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                logger.error("Document pipeline timed out", timeout=self.timeout, filename=filename)
                raise ExtractionError(
                    ErrorKind.UPSTREAM_UNAVAILABLE,
                    f"Document pipeline timed out after {self.timeout:g}s",
                ) from e

    async def _run(self, image_bytes: bytes, mime_type: str | None, filename: str | None) -> InvoiceRecord:
        suffix = Path(filename).suffix.lower() if filename else ""
        with ocr_workspace(self.tmp_dir, suffix) as workspace:
            workspace.upload_path.write_bytes(image_bytes)

            text_path = await self.ocr_runner(workspace.upload_path, workspace.out_base)
            ocr_text = text_path.read_text(encoding="utf-8", errors="replace")
            prompt_text = condense(ocr_text, self.max_chars, self.keywords)

            logger.info(
                "OCR complete",
                filename=filename,
                ocr_chars=len(ocr_text),
                prompt_chars=len(prompt_text),
            )
            return await self._extract_with_retry(image_bytes, mime_type, prompt_text)

    async def _extract_with_retry(
        self, image_bytes: bytes, mime_type: str | None, prompt_text: str
    ) -> InvoiceRecord:
        attempt = 0
        while True:
            try:
                return await self.extractor.extract(image_bytes, mime_type, prompt_text)
            except ExtractionError as e:
                # Rejected or malformed extractions are conclusive
                if e.kind is not ErrorKind.UPSTREAM_UNAVAILABLE or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Inference server unavailable, retrying",
                    attempt=attempt,
                    max_retries=self.max_retries,
                )
                await asyncio.sleep(self.retry_backoff * attempt)


class AccountingPipeline:
    """Token vault -> purchase entry mapping -> POST to Exact Online."""

    def __init__(self, vault: TokenVault, base_url: str, timeout: float = 30.0):
        self.vault = vault
        self.base_url = base_url
        self.timeout = timeout

    @staticmethod
    def validate(request: PushInvoiceRequest) -> InvoiceRecord:
        if not request.invoice_data:
            raise ValidationError("invoiceData is required")
        if not request.supplier_guid:
            raise ValidationError("supplierGuid is required")
        if not request.gl_account_guid:
            raise ValidationError("glAccountGuid is required")
        try:
            return InvoiceRecord.model_validate(request.invoice_data)
        except SchemaValidationError as e:
            raise ValidationError(f"invoiceData is not a valid invoice: {e.error_count()} error(s)") from e

    async def push_invoice(self, request: PushInvoiceRequest) -> dict:
        invoice = self.validate(request)

        access_token = await self.vault.get_access_token()
        division = self.vault.status()["division"]
        if not division:
            raise NotConnected("No Exact division found. Re-connect.")

        entry = to_purchase_entry(
            invoice, request.supplier_guid, request.gl_account_guid, request.journal
        )
        return await post_purchase_entry(
            self.base_url, division, access_token, entry.to_api(), timeout=self.timeout
        )
