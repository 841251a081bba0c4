from datetime import date
from typing import Optional

from .invoice_types import DEFAULT_PURCHASE_JOURNAL, PurchaseEntry, PurchaseEntryLine
from ..models.invoice import InvoiceRecord

TOTAL_LINE_DESCRIPTION = "Invoice total"


def to_exact_datetime(value: Optional[date]) -> Optional[str]:
    """2024-01-15 -> 2024-01-15T00:00:00 (Exact expects midnight-anchored timestamps)"""
    if value is None:
        return None
    return f"{value.isoformat()}T00:00:00"


def to_purchase_entry(
    invoice: InvoiceRecord,
    supplier_ref: str,
    ledger_ref: str,
    journal: Optional[str] = DEFAULT_PURCHASE_JOURNAL,
) -> PurchaseEntry:
    """
    Map an extracted invoice onto an Exact Online purchase entry.

    Every line is booked on the single ledger account supplied by the caller.
    Without line items the invoice total becomes one "Invoice total" line;
    without a total either, the entry has no lines and Exact decides.
    """
    lines = [
        PurchaseEntryLine(
            amount=item.amount,
            description=item.description or "",
            ledger_account=ledger_ref,
        )
        for item in invoice.items
    ]

    if not lines and invoice.totals is not None and invoice.totals.total is not None:
        lines.append(
            PurchaseEntryLine(
                amount=invoice.totals.total,
                description=TOTAL_LINE_DESCRIPTION,
                ledger_account=ledger_ref,
            )
        )

    return PurchaseEntry(
        journal=journal or DEFAULT_PURCHASE_JOURNAL,
        supplier=supplier_ref,
        invoice_number=invoice.invoice_number or None,
        invoice_date=to_exact_datetime(invoice.invoice_date),
        due_date=to_exact_datetime(invoice.due_date),
        lines=lines,
    )
