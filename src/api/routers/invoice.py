from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger

from ..deps import ParseResponse, get_document_pipeline
from ...core.exceptions import ErrorKind, InvoiceScannerError, ValidationError
from ...services.pipeline import DocumentPipeline

router = APIRouter(prefix="/api/invoice", tags=["invoices"])

NO_FILE_MESSAGE = "No file uploaded. Use form field 'file'."


@router.post("/parse", response_model=ParseResponse)
async def parse_invoice(
    request: Request,
    file: UploadFile = File(None),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
):
    """
    Extract structured invoice fields from a document image.

    Accepts either:
    - multipart/form-data with the image in form field "file" (web UI, camera capture)
    - a raw image body with its Content-Type set (scripts, mail forwarders)

    Returns {"ok": true, "result": <invoice>} where the invoice always carries
    invoice_number, invoice_date, due_date, vendor, totals and items.
    """
    try:
        content_type = request.headers.get("content-type") or ""
        if file:
            content = await file.read()
            mime_type = file.content_type
            filename = file.filename
        elif content_type.startswith("multipart/form-data"):
            # form parsing already consumed the body; the image was not under "file"
            raise ValidationError(NO_FILE_MESSAGE)
        else:
            content = await request.body()
            mime_type = content_type or None
            filename = None
        if not content:
            raise ValidationError(NO_FILE_MESSAGE)

        logger.info(
            "Invoice parse request received",
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(content),
        )
        record = await pipeline.process(content, mime_type, filename)
        return ParseResponse(result=record)
    except InvoiceScannerError:
        raise
    except Exception as e:
        logger.exception(f"Invoice parse failed: {e!r}")
        error = InvoiceScannerError(ErrorKind.INTERNAL, str(e) or type(e).__name__)
        return JSONResponse(status_code=error.http_status, content=error.to_dict())
