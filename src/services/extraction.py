import base64
import json

import httpx
from loguru import logger
from pydantic import ValidationError as SchemaValidationError

from ..core.exceptions import ErrorKind, ExtractionError
from ..models.invoice import InvoiceRecord

ISO_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

# Strict response contract declared to the inference server.
INVOICE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "invoice_number": {"type": ["string", "null"]},
        "invoice_date": {"type": ["string", "null"], "pattern": ISO_DATE_PATTERN},
        "due_date": {"type": ["string", "null"], "pattern": ISO_DATE_PATTERN},
        "vendor": {
            "type": ["object", "null"],
            "additionalProperties": False,
            "properties": {
                "name": {"type": ["string", "null"]},
                "address": {"type": ["string", "null"]},
                "vat_id": {"type": ["string", "null"]},
            },
        },
        "totals": {
            "type": ["object", "null"],
            "additionalProperties": False,
            "properties": {
                "subtotal": {"type": ["number", "null"]},
                "tax": {"type": ["number", "null"]},
                "total": {"type": ["number", "null"]},
                "currency": {"type": ["string", "null"]},
            },
        },
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "description": {"type": ["string", "null"]},
                    "quantity": {"type": ["number", "null"]},
                    "unit_price": {"type": ["number", "null"]},
                    "amount": {"type": "number"},
                },
                "required": ["description", "amount"],
            },
        },
    },
    "required": ["invoice_number", "items", "totals"],
}

SYSTEM_PROMPT = (
    "You extract invoice fields. Return ONLY schema-valid JSON. "
    "Use null when missing. Never guess. Use OCR evidence."
)

EXTRACTION_RULES = (
    "Rules:\n"
    "- totals must be consistent\n"
    "- dates must be YYYY-MM-DD or null\n"
    "- do not add extra keys\n"
)

DEFAULT_MIME_TYPE = "image/png"


def to_data_url(image_bytes: bytes, mime_type: str | None) -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{encoded}"


def build_user_prompt(ocr_text: str) -> str:
    return f"OCR_TEXT:\n{ocr_text}\n\n{EXTRACTION_RULES}"


def build_completion_request(
    image_bytes: bytes,
    mime_type: str | None,
    ocr_text: str,
    schema: dict = INVOICE_SCHEMA,
    model: str = "local",
) -> dict:
    """Build the chat-completions body for one schema-constrained extraction."""
    return {
        "model": model,
        "temperature": 0,
        "response_format": {"type": "json_schema", "schema": schema},
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_user_prompt(ocr_text)},
                    {"type": "image_url", "image_url": {"url": to_data_url(image_bytes, mime_type)}},
                ],
            },
        ],
    }


def parse_completion(raw: str) -> InvoiceRecord:
    """
    Decode a chat-completions response body into an InvoiceRecord.

    The server claims schema conformance; the record is validated again
    here so missing required keys or unexpected keys never reach callers.

    Raises:
        ExtractionError(MALFORMED_RESPONSE): envelope, content JSON or record shape is invalid
    """
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE, f"Inference response is not JSON: {e}", body=raw
        ) from e

    try:
        content = envelope["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE, "Inference response has no message content", body=raw
        ) from e

    if not isinstance(content, str):
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE, "Message content is not a JSON string", body=raw
        )

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE, f"Message content is not valid JSON: {e}", body=content
        ) from e

    if not isinstance(payload, dict):
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE, "Message content is not a JSON object", body=content
        )

    try:
        return InvoiceRecord.model_validate(payload)
    except SchemaValidationError as e:
        raise ExtractionError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Extracted invoice does not match schema: {e.error_count()} error(s)",
            body=content,
        ) from e


class ExtractionClient:
    """
    Schema-constrained invoice extraction against an OpenAI-compatible
    chat-completions endpoint (llama-server or similar).

    Performs exactly one HTTP call per extract(); retry policy belongs to
    the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str = "local",
        timeout: float = 25.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def extract(
        self,
        image_bytes: bytes,
        mime_type: str | None,
        ocr_text: str,
        schema: dict = INVOICE_SCHEMA,
    ) -> InvoiceRecord:
        payload = build_completion_request(image_bytes, mime_type, ocr_text, schema, self.model)

        logger.info(
            "Requesting structured extraction",
            endpoint=self.endpoint,
            image_bytes=len(image_bytes),
            prompt_chars=len(ocr_text),
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(self.endpoint, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Inference server unreachable: {e!r}")
            raise ExtractionError(
                ErrorKind.UPSTREAM_UNAVAILABLE, f"Inference server unreachable: {e!r}"
            ) from e

        if not r.is_success:
            logger.error("Inference server rejected request", status=r.status_code)
            raise ExtractionError(
                ErrorKind.UPSTREAM_REJECTED,
                "llama-server error",
                upstream_status=r.status_code,
                body=r.text,
            )

        record = parse_completion(r.text)
        logger.info(
            "Structured extraction succeeded",
            invoice_number=record.invoice_number,
            items=len(record.items),
        )
        return record
