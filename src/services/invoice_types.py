from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PURCHASE_JOURNAL = "70"


class PurchaseEntryLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float = Field(alias="AmountFC")
    description: str = Field("", alias="Description")
    ledger_account: str = Field(alias="GLAccount")


class PurchaseEntry(BaseModel):
    """Exact Online PurchaseEntries payload. Serialize with to_api()."""

    model_config = ConfigDict(populate_by_name=True)

    journal: str = Field(DEFAULT_PURCHASE_JOURNAL, alias="Journal")
    supplier: str = Field(alias="Supplier")
    invoice_number: str | None = Field(default=None, alias="InvoiceNumber")
    invoice_date: str | None = Field(default=None, alias="InvoiceDate")
    due_date: str | None = Field(default=None, alias="DueDate")
    lines: list[PurchaseEntryLine] = Field(default_factory=list, alias="PurchaseEntryLines")

    def to_api(self) -> dict:
        # null fields are omitted, never sent as empty strings
        return self.model_dump(by_alias=True, exclude_none=True)
