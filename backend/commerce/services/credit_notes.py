"""Store credit: issuing credit notes and settling invoices from them.

Credits are consumed oldest first and only against invoices in the same
currency. A credit note that has been drawn on can no longer be voided.
"""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal
from typing import Optional

from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone

from commerce.conf import default_currency
from commerce.exceptions import CreditNoteError
from commerce.models import ZERO, CreditNote, Invoice, Refund
from commerce.observability.logging import log_commerce_event

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_reference_number(now=None) -> str:
    """``CN-<YYYYMMDD>-<XXXX>``, unique across all credit notes."""
    stamp = (now or timezone.now()).strftime("%Y%m%d")
    while True:
        suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(4))
        reference = f"CN-{stamp}-{suffix}"
        if not CreditNote.objects.filter(reference_number=reference).exists():
            return reference


def issue(credit_note: CreditNote, issued_by=None) -> CreditNote:
    if credit_note.status != CreditNote.Status.DRAFT:
        raise CreditNoteError(f"Credit note {credit_note.reference_number} is already {credit_note.status}.")
    credit_note.status = CreditNote.Status.ISSUED
    credit_note.issued_at = timezone.now()
    credit_note.issued_by = issued_by
    credit_note.save(update_fields=["status", "issued_at", "issued_by", "updated_at"])
    return credit_note


def create(workspace, amount, reason: str, *, description: str = "", currency: Optional[str] = None,
           subscription=None, refund: Optional[Refund] = None, issued_by=None,
           issue_immediately: bool = True) -> CreditNote:
    amount = Decimal(amount)
    if amount <= 0:
        raise CreditNoteError("Credit note amount must be greater than zero.")

    with transaction.atomic():
        credit_note = CreditNote.objects.create(
            workspace=workspace,
            subscription=subscription,
            refund=refund,
            reference_number=generate_reference_number(),
            amount=amount,
            currency=(currency or default_currency()).upper(),
            reason=reason,
            description=description or "",
        )
        if issue_immediately:
            issue(credit_note, issued_by)

    log_commerce_event(
        message="credit_note.created",
        workspace_id=workspace.pk,
        extra={"reference": credit_note.reference_number, "amount": str(amount), "reason": reason},
    )
    return credit_note


def create_from_refund(refund: Refund, amount, description: str = "", issued_by=None) -> CreditNote:
    """Give part of a refund back as store credit instead of cash."""
    amount = Decimal(amount)
    if amount > refund.amount:
        raise CreditNoteError("Credit note amount cannot exceed the refund amount.")
    payment = refund.payment
    return create(
        payment.workspace,
        amount,
        CreditNote.Reason.PARTIAL_REFUND,
        description=description or f"Credit from refund #{refund.pk}",
        currency=refund.currency,
        refund=refund,
        issued_by=issued_by,
    )


def void(credit_note: CreditNote) -> CreditNote:
    if credit_note.status == CreditNote.Status.VOID:
        raise CreditNoteError("Credit note is already void.")
    if credit_note.amount_used > 0:
        raise CreditNoteError("A credit note that has been used cannot be voided.")
    credit_note.status = CreditNote.Status.VOID
    credit_note.voided_at = timezone.now()
    credit_note.save(update_fields=["status", "voided_at", "updated_at"])
    logger.info("Credit note %s voided", credit_note.reference_number)
    return credit_note


def available_credits(workspace, currency: Optional[str] = None):
    queryset = CreditNote.objects.filter(
        workspace=workspace,
        status__in=CreditNote.USABLE_STATUSES,
        amount_used__lt=F("amount"),
    )
    if currency:
        queryset = queryset.filter(currency=currency.upper())
    return queryset.order_by("created_at", "pk")


def total_credit(workspace, currency: Optional[str] = None) -> Decimal:
    totals = available_credits(workspace, currency).aggregate(amount=Sum("amount"), used=Sum("amount_used"))
    return (totals["amount"] or ZERO) - (totals["used"] or ZERO)


def apply_to_invoice(credit_note: CreditNote, invoice: Invoice, amount=None) -> Decimal:
    """Settle up to ``amount`` of the invoice from the credit note; returns what was applied."""
    with transaction.atomic():
        note = CreditNote.objects.select_for_update().get(pk=credit_note.pk)
        locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
        if not note.is_usable:
            raise CreditNoteError(f"Credit note {note.reference_number} has no usable balance.")
        if note.currency != locked.currency:
            raise CreditNoteError("Credit note currency does not match the invoice.")
        if locked.status not in Invoice.UNPAID_STATUSES:
            raise CreditNoteError(f"Invoice {locked.invoice_number} is not awaiting payment.")

        applied = min(note.remaining_amount, locked.amount_due)
        if amount is not None:
            applied = min(applied, Decimal(amount))
        if applied <= 0:
            return ZERO

        now = timezone.now()
        note.amount_used += applied
        note.applied_to_invoice = locked
        if note.amount_used >= note.amount:
            note.status = CreditNote.Status.APPLIED
            note.applied_at = now
        else:
            note.status = CreditNote.Status.PARTIALLY_APPLIED
        note.save(update_fields=["amount_used", "applied_to_invoice", "status", "applied_at", "updated_at"])

        locked.credit_applied += applied
        metadata = dict(locked.metadata or {})
        metadata["credits_applied"] = [
            *metadata.get("credits_applied", []),
            {"reference": note.reference_number, "amount": str(applied), "applied_at": now.isoformat()},
        ]
        locked.metadata = metadata
        update_fields = ["credit_applied", "metadata", "updated_at"]
        if locked.total - locked.amount_paid - locked.credit_applied <= 0:
            locked.status = Invoice.Status.PAID
            locked.paid_at = now
            locked.next_charge_attempt = None
            update_fields += ["status", "paid_at", "next_charge_attempt"]
        locked.save(update_fields=update_fields)

    invoice.refresh_from_db()
    log_commerce_event(
        message="credit_note.applied",
        workspace_id=invoice.workspace_id,
        extra={"reference": note.reference_number, "invoice": invoice.invoice_number, "amount": str(applied)},
    )
    return applied


def auto_apply_credits(invoice: Invoice) -> Decimal:
    """Draw down the workspace's credits, oldest first, until the invoice is settled."""
    total_applied = ZERO
    for credit_note in available_credits(invoice.workspace, invoice.currency):
        if invoice.amount_due <= 0:
            break
        total_applied += apply_to_invoice(credit_note, invoice)
    return total_applied
