"""Invoice creation, numbering and the default tax calculator."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from commerce.conf import billing_settings, default_currency, tax_rate
from commerce.models import ZERO, Invoice, InvoiceItem, Order, Payment
from commerce.services import credit_notes

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class TaxResult:
    tax_amount: Decimal
    tax_rate: Decimal
    jurisdiction: str = ""


class FlatRateTaxCalculator:
    """Applies ``COMMERCE_BILLING['tax_rate']`` (a percentage) to every amount."""

    def __init__(self, rate: Optional[Decimal] = None, jurisdiction: Optional[str] = None):
        self.rate = Decimal(rate) if rate is not None else tax_rate()
        self.jurisdiction = jurisdiction if jurisdiction is not None else billing_settings().get("tax_country", "")

    def calculate(self, workspace, amount: Decimal) -> TaxResult:
        tax_amount = (Decimal(amount) * self.rate / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)
        return TaxResult(tax_amount=tax_amount, tax_rate=self.rate, jurisdiction=self.jurisdiction or "")


def generate_invoice_number(now=None) -> str:
    """Next ``<prefix>-<YYYY>-<000001>`` number; the sequence restarts every year."""
    prefix = billing_settings().get("invoice_prefix", "INV").rstrip("-")
    year = (now or timezone.now()).year
    stem = f"{prefix}-{year}-"
    last = (
        Invoice.objects.filter(invoice_number__startswith=stem)
        .order_by("-invoice_number")
        .values_list("invoice_number", flat=True)
        .first()
    )
    sequence = 1
    if last:
        try:
            sequence = int(last[len(stem):]) + 1
        except ValueError:
            logger.warning("Unparseable invoice number %s, restarting sequence", last)
    return f"{stem}{sequence:06d}"


def _due_date():
    return timezone.localdate() + timedelta(days=int(billing_settings().get("invoice_due_days", 14)))


def _create_numbered(**fields) -> Invoice:
    """Insert an invoice, retrying when a concurrent writer took the same number."""
    for attempt in range(NUMBER_ATTEMPTS):
        try:
            with transaction.atomic():
                return Invoice.objects.create(invoice_number=generate_invoice_number(), **fields)
        except IntegrityError:
            if attempt == NUMBER_ATTEMPTS - 1:
                raise
            logger.info("Invoice number collision, retrying (attempt %s)", attempt + 1)


class InvoiceService:
    def __init__(self, tax_calculator=None):
        self.tax_calculator = tax_calculator or FlatRateTaxCalculator()

    def create_from_order(self, order: Order, payment: Optional[Payment] = None) -> Invoice:
        paid = payment is not None
        invoice = _create_numbered(
            workspace=order.workspace,
            order=order,
            payment=payment,
            status=Invoice.Status.PAID if paid else Invoice.Status.PENDING,
            currency=order.currency,
            subtotal=order.subtotal,
            discount_amount=order.discount_amount or ZERO,
            tax_amount=order.tax_amount or ZERO,
            tax_rate=order.tax_rate or ZERO,
            tax_country=order.tax_country,
            total=order.total,
            amount_paid=order.total if paid else ZERO,
            due_date=_due_date(),
            paid_at=timezone.now() if paid else None,
            billing_name=order.billing_name or order.workspace.billing_name,
            billing_email=order.billing_email or order.workspace.billing_contact_email,
            auto_charge=False,
        )
        for item in order.items.all():
            InvoiceItem.objects.create(
                invoice=invoice,
                order_item=item,
                description=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
                tax_rate=order.tax_rate or ZERO,
            )
        if payment is not None and payment.invoice_id is None:
            payment.invoice = invoice
            payment.save(update_fields=["invoice"])
        return invoice

    def create_for_renewal(self, workspace, amount: Decimal, description: str, payment: Optional[Payment] = None,
                           subscription=None, currency: Optional[str] = None) -> Invoice:
        amount = Decimal(amount)
        tax = self.tax_calculator.calculate(workspace, amount)
        total = amount + tax.tax_amount
        paid = payment is not None
        invoice = _create_numbered(
            workspace=workspace,
            subscription=subscription,
            payment=payment,
            status=Invoice.Status.PAID if paid else Invoice.Status.PENDING,
            currency=(currency or getattr(payment, "currency", None) or default_currency()).upper(),
            subtotal=amount,
            tax_amount=tax.tax_amount,
            tax_rate=tax.tax_rate,
            tax_country=(tax.jurisdiction or "")[:2],
            total=total,
            amount_paid=total if paid else ZERO,
            due_date=_due_date(),
            paid_at=timezone.now() if paid else None,
            billing_name=workspace.billing_name,
            billing_email=workspace.billing_contact_email,
        )
        InvoiceItem.objects.create(
            invoice=invoice,
            description=description,
            quantity=1,
            unit_price=amount,
            line_total=total,
            tax_rate=tax.tax_rate,
            tax_amount=tax.tax_amount,
        )
        if payment is None:
            credit_notes.auto_apply_credits(invoice)
        elif payment.invoice_id is None:
            payment.invoice = invoice
            payment.save(update_fields=["invoice"])
        return invoice

    def mark_paid(self, invoice: Invoice, payment: Optional[Payment] = None) -> Invoice:
        invoice.status = Invoice.Status.PAID
        invoice.paid_at = timezone.now()
        invoice.amount_paid = invoice.total - invoice.credit_applied
        invoice.next_charge_attempt = None
        update_fields = ["status", "paid_at", "amount_paid", "next_charge_attempt", "updated_at"]
        if payment is not None:
            invoice.payment = payment
            update_fields.append("payment")
        invoice.save(update_fields=update_fields)
        return invoice

    def void(self, invoice: Invoice) -> Invoice:
        invoice.status = Invoice.Status.VOID
        invoice.next_charge_attempt = None
        invoice.save(update_fields=["status", "next_charge_attempt", "updated_at"])
        return invoice

    @staticmethod
    def overdue_for_workspace(workspace):
        return Invoice.objects.filter(
            workspace=workspace,
            status__in=Invoice.UNPAID_STATUSES,
            due_date__lt=timezone.localdate(),
        )
