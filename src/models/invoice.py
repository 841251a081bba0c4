from datetime import date

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt

# JSON numbers only: no numeric strings, ints are echoed as ints
Number = StrictInt | StrictFloat


class Vendor(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    address: str | None = None
    vat_id: str | None = None


class Totals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subtotal: Number | None = None
    tax: Number | None = None
    total: Number | None = None
    currency: str | None = None


class LineItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str | None  # key is required, value may be null
    quantity: Number | None = None
    unit_price: Number | None = None
    amount: Number


class InvoiceRecord(BaseModel):
    """Canonical extracted invoice. Mirrors INVOICE_SCHEMA key for key."""

    model_config = ConfigDict(extra="forbid")

    invoice_number: str | None
    invoice_date: date | None = None
    due_date: date | None = None
    vendor: Vendor | None = None
    totals: Totals | None
    items: list[LineItem]

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json")


class PushInvoiceRequest(BaseModel):
    """Request body for /api/exact/push-invoice (checked by the pipeline, not by FastAPI)"""
    invoice_data: dict | None = Field(default=None, alias="invoiceData")
    supplier_guid: str | None = Field(default=None, alias="supplierGuid")
    gl_account_guid: str | None = Field(default=None, alias="glAccountGuid")
    journal: str | None = Field(default=None)

    model_config = ConfigDict(populate_by_name=True)
