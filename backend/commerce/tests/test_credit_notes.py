from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from commerce.exceptions import CreditNoteError
from commerce.models import CreditNote, Invoice, Payment, Refund
from commerce.services import credit_notes
from commerce.services.invoices import InvoiceService

from .conftest import auth_client
from .test_dunning import make_card, make_invoice, service_with


def pending_invoice(workspace, total="20.00", currency="GBP"):
    return make_invoice(
        workspace,
        status=Invoice.Status.PENDING,
        currency=currency,
        subtotal=Decimal(total),
        total=Decimal(total),
        charge_attempts=0,
        last_charge_attempt=None,
        next_charge_attempt=None,
    )


@pytest.mark.django_db
def test_partial_credit_reduces_amount_due(workspace):
    note = credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    invoice = pending_invoice(workspace)

    applied = credit_notes.apply_to_invoice(note, invoice)

    assert applied == Decimal("5.00")
    assert invoice.status == Invoice.Status.PENDING
    assert invoice.credit_applied == Decimal("5.00")
    assert invoice.amount_due == Decimal("15.00")
    assert invoice.metadata["credits_applied"][0]["reference"] == note.reference_number
    note.refresh_from_db()
    assert note.status == CreditNote.Status.APPLIED
    assert note.applied_at is not None
    assert not note.is_usable


@pytest.mark.django_db
def test_large_credit_settles_invoice_and_keeps_remainder(workspace):
    note = credit_notes.create(workspace, "50.00", CreditNote.Reason.GOODWILL, currency="GBP")
    invoice = pending_invoice(workspace)

    credit_notes.apply_to_invoice(note, invoice)

    assert invoice.status == Invoice.Status.PAID
    assert invoice.amount_due == Decimal("0.00")
    assert invoice.paid_at is not None
    note.refresh_from_db()
    assert note.status == CreditNote.Status.PARTIALLY_APPLIED
    assert note.remaining_amount == Decimal("30.00")
    assert credit_notes.total_credit(workspace) == Decimal("30.00")


@pytest.mark.django_db
def test_auto_apply_uses_oldest_credit_in_matching_currency(workspace):
    older = credit_notes.create(workspace, "4.00", CreditNote.Reason.GOODWILL, currency="GBP")
    dollars = credit_notes.create(workspace, "100.00", CreditNote.Reason.GOODWILL, currency="USD")
    newer = credit_notes.create(workspace, "10.00", CreditNote.Reason.GOODWILL, currency="GBP")
    invoice = pending_invoice(workspace)

    assert credit_notes.auto_apply_credits(invoice) == Decimal("14.00")

    assert invoice.amount_due == Decimal("6.00")
    for note in (older, dollars, newer):
        note.refresh_from_db()
    assert older.status == newer.status == CreditNote.Status.APPLIED
    assert dollars.amount_used == Decimal("0.00")
    with pytest.raises(CreditNoteError):
        credit_notes.apply_to_invoice(dollars, invoice)


@pytest.mark.django_db
def test_renewal_invoice_draws_on_credit(workspace):
    credit_notes.create(workspace, "3.00", CreditNote.Reason.PLAN_DOWNGRADE, currency="GBP")

    invoice = InvoiceService().create_for_renewal(workspace, Decimal("20.00"), "Pro renewal", currency="GBP")

    assert invoice.credit_applied == Decimal("3.00")
    assert invoice.amount_due == invoice.total - Decimal("3.00")


@pytest.mark.django_db
def test_paid_invoice_cannot_take_credit(workspace):
    note = credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    invoice = pending_invoice(workspace)
    invoice.status = Invoice.Status.PAID
    invoice.save(update_fields=["status"])

    with pytest.raises(CreditNoteError):
        credit_notes.apply_to_invoice(note, invoice)


@pytest.mark.django_db
def test_used_credit_note_cannot_be_voided(workspace):
    unused = credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    used = credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    credit_notes.apply_to_invoice(used, pending_invoice(workspace), amount="1.00")

    credit_notes.void(unused)

    assert unused.status == CreditNote.Status.VOID
    assert unused.voided_at is not None
    with pytest.raises(CreditNoteError):
        credit_notes.void(unused)
    with pytest.raises(CreditNoteError):
        credit_notes.void(used)
    assert credit_notes.total_credit(workspace) == Decimal("4.00")


@pytest.mark.django_db
def test_non_positive_amount_is_rejected(workspace):
    with pytest.raises(CreditNoteError):
        credit_notes.create(workspace, "0.00", CreditNote.Reason.GOODWILL)


@pytest.mark.django_db
def test_draft_credit_is_not_usable_until_issued(workspace, owner):
    note = credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP",
                               issue_immediately=False)

    assert credit_notes.total_credit(workspace) == Decimal("0.00")
    credit_notes.issue(note, issued_by=owner)

    assert note.status == CreditNote.Status.ISSUED
    assert note.issued_by == owner
    assert credit_notes.total_credit(workspace) == Decimal("5.00")
    with pytest.raises(CreditNoteError):
        credit_notes.issue(note)


@pytest.mark.django_db
def test_refund_credit_cannot_exceed_refund(workspace):
    payment = Payment.objects.create(workspace=workspace, gateway="stripe", gateway_payment_id="pi_refunded",
                                     amount=Decimal("30.00"), currency="GBP", status=Payment.Status.SUCCEEDED)
    refund = Refund.objects.create(payment=payment, amount=Decimal("10.00"), currency="GBP")

    with pytest.raises(CreditNoteError):
        credit_notes.create_from_refund(refund, "10.01")
    note = credit_notes.create_from_refund(refund, "10.00")

    assert note.reason == CreditNote.Reason.PARTIAL_REFUND
    assert note.refund == refund
    assert note.workspace == workspace
    assert note.currency == "GBP"


@pytest.mark.django_db
def test_dunning_retry_charges_only_the_uncredited_balance(workspace, card_gateway):
    invoice = make_invoice(workspace)
    make_card(workspace)
    credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    credit_notes.auto_apply_credits(invoice)

    report = service_with(card_gateway).run_stage("retry")

    assert report.succeeded == 1
    assert card_gateway.charges[0][1] == Decimal("15.00")
    invoice.refresh_from_db()
    assert invoice.status == Invoice.Status.PAID
    assert invoice.amount_due == Decimal("0.00")


@pytest.mark.django_db
def test_credit_notes_api_lists_balance(workspace, owner):
    credit_notes.create(workspace, "5.00", CreditNote.Reason.GOODWILL, currency="GBP")
    spent = credit_notes.create(workspace, "2.00", CreditNote.Reason.GOODWILL, currency="GBP")
    credit_notes.apply_to_invoice(spent, pending_invoice(workspace))

    body = auth_client(owner).get(f"/api/commerce/workspaces/{workspace.pk}/credit-notes/").json()

    assert body["count"] == 2
    assert body["available_credit"] == "5.00"
    assert {row["remaining_amount"] for row in body["results"]} == {"5.00", "0.00"}


@pytest.mark.django_db
def test_credit_applied_to_overdue_invoice_stops_retries(workspace):
    invoice = make_invoice(workspace, next_charge_attempt=timezone.now() + timedelta(days=1))
    note = credit_notes.create(workspace, "20.00", CreditNote.Reason.GOODWILL, currency="GBP")

    credit_notes.apply_to_invoice(note, invoice)

    assert invoice.status == Invoice.Status.PAID
    assert invoice.next_charge_attempt is None
