from datetime import datetime, timezone

import pytest

from src.domain.events import (
    Channel,
    MalformedEventError,
    order_link_natural_key,
    parse_payment_event,
    payment_external_event,
    payment_natural_key,
)
from src.domain.transitions import (
    CompletePaymentRequest,
    CreateCreditNote,
    CreatePaymentAttempt,
    CreatePaymentRequest,
    CreateReceipt,
    FailPaymentRequest,
    GuestOrderSnapshot,
    IncrementCampaignOpens,
    IncrementOpenCount,
    InvoiceSnapshot,
    LinkGuestOrder,
    MarkInvoicePaid,
    MarkInvoiceRefunded,
    MarkRecipientOpened,
    Outcome,
    PaymentRequestSnapshot,
    PaymentTarget,
    RecordPaymentRequestEvent,
    RecordUrgentAudit,
    plan_email_open,
    plan_first_open_followup,
    plan_invoice_payment,
    plan_order_link,
    plan_payment_event,
)


INVOICE_ID = "5b0a6a8e-4a44-4a4e-9a57-6a2f1f0c9d11"
USER_ID = "9a1f0c55-3f5e-4d3c-b6a2-1e2d3c4b5a69"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(event_type: str, **extra):
    payload = {"eventType": event_type, "transactionReference": "INV-abc"}
    payload.update(extra)
    return parse_payment_event(payload)


def _unpaid_invoice(**overrides):
    values = {"id": INVOICE_ID, "status": "unpaid", "user_id": "user-1", "total": 49.99, "currency": "GBP"}
    values.update(overrides)
    return InvoiceSnapshot(**values)


def test_parse_payment_event_reads_structured_fields():
    event = parse_payment_event(
        {
            "eventType": "payment.settled",
            "eventId": "evt-1",
            "eventTimestamp": "2026-03-01T12:00:00Z",
            "transactionReference": "INV-abc",
            "instruction": {"value": {"amount": 4999, "currency": "GBP"}},
            "metadata": {"invoiceId": INVOICE_ID, "userId": USER_ID},
        }
    )
    assert event.event_type == "payment.settled"
    assert event.event_id == "evt-1"
    assert event.amount == 49.99
    assert event.invoice_id == INVOICE_ID
    assert event.user_id == USER_ID


def test_parse_payment_event_drops_non_uuid_invoice_metadata():
    event = _event("payment.settled", metadata={"invoiceId": "INV-not-a-uuid"})
    assert event.invoice_id is None


def test_parse_payment_event_drops_non_uuid_user_metadata():
    event = _event("payment.refused", metadata={"invoiceId": INVOICE_ID, "userId": "not-a-uuid"})
    assert event.user_id is None
    assert event.invoice_id == INVOICE_ID


@pytest.mark.parametrize("payload", [[], "text", {"transactionReference": "INV-abc"}, {"eventType": "  "}])
def test_parse_payment_event_rejects_malformed_payloads(payload):
    with pytest.raises(MalformedEventError):
        parse_payment_event(payload)


def test_success_natural_key_ignores_event_id():
    first = _event("payment.settled", eventId="evt-1")
    retry = _event("payment.settled", eventId="evt-2")
    assert payment_natural_key(first, b"a") == payment_natural_key(retry, b"b") == "payment:INV-abc:payment.settled"


def test_refund_natural_key_distinguishes_partial_refunds():
    first = _event("refund.completed", eventId="evt-1")
    second = _event("refund.completed", eventId="evt-2")
    assert payment_natural_key(first, b"") != payment_natural_key(second, b"")


def test_natural_key_falls_back_to_body_hash():
    event = parse_payment_event({"eventType": "payment.settled"})
    external = payment_external_event(event, b'{"eventType":"payment.settled"}')
    assert external.channel is Channel.PAYMENT_WEBHOOK
    assert external.natural_key.startswith("payment:body:")


def test_order_link_natural_key_is_case_insensitive_on_email():
    assert order_link_natural_key("ORD-12345", "Shopper@Example.com ") == order_link_natural_key(
        "ORD-12345", "shopper@example.com"
    )


def test_success_on_unpaid_invoice_marks_paid_and_issues_receipt():
    target = PaymentTarget(
        invoice=_unpaid_invoice(),
        payment_request=PaymentRequestSnapshot(id="pr-1", status="pending", invoice_id=INVOICE_ID, amount=49.99),
    )
    transition = plan_payment_event(_event("payment.settled"), target, provider="worldpay")

    assert transition.outcome is Outcome.APPLIED
    assert transition.next_status == "paid"
    kinds = [type(effect) for effect in transition.effects]
    assert kinds == [CompletePaymentRequest, RecordPaymentRequestEvent, MarkInvoicePaid, CreateReceipt]
    receipt = transition.effects[-1]
    assert receipt.reference == "RCP-INV-abc"
    assert receipt.amount == 49.99
    assert receipt.user_id == "user-1"


def test_success_on_paid_invoice_is_noop():
    target = PaymentTarget(invoice=_unpaid_invoice(status="paid"))
    transition = plan_payment_event(_event("payment.authorized"), target, provider="worldpay")
    assert transition.outcome is Outcome.NOOP
    assert transition.effects == ()
    assert transition.reason == "already_settled"


def test_success_on_invoice_paid_by_own_request_reissues_receipt():
    target = PaymentTarget(
        invoice=_unpaid_invoice(status="paid"),
        payment_request=PaymentRequestSnapshot(id="pr-1", status="completed", invoice_id=INVOICE_ID, amount=49.99),
    )
    transition = plan_payment_event(_event("payment.settled"), target, provider="worldpay")

    assert transition.outcome is Outcome.APPLIED
    (receipt,) = transition.effects
    assert isinstance(receipt, CreateReceipt)
    assert receipt.reference == "RCP-INV-abc"
    assert receipt.requires_settlement is False


def test_resumed_success_reissues_receipt_without_payment_request():
    target = PaymentTarget(invoice=_unpaid_invoice(status="paid"))
    transition = plan_payment_event(_event("payment.settled"), target, provider="worldpay", resumed=True)

    (receipt,) = transition.effects
    assert isinstance(receipt, CreateReceipt)
    assert receipt.amount == 49.99
    assert receipt.requires_settlement is False


def test_success_for_other_request_only_settles_through_invoice():
    target = PaymentTarget(
        invoice=_unpaid_invoice(),
        payment_request=PaymentRequestSnapshot(id="pr-2", status="pending", invoice_id="another-invoice"),
    )
    transition = plan_payment_event(_event("payment.settled"), target, provider="worldpay")

    assert transition.effects[-1].requires_settlement is True


def test_success_without_correlation_is_unresolved():
    transition = plan_payment_event(_event("payment.settled"), PaymentTarget(), provider="worldpay")
    assert transition.outcome is Outcome.UNRESOLVED
    assert transition.reason == "correlation_not_found"


def test_failure_records_attempt_and_fails_pending_request():
    target = PaymentTarget(
        invoice=_unpaid_invoice(),
        payment_request=PaymentRequestSnapshot(id="pr-1", status="pending", invoice_id=INVOICE_ID, amount=49.99),
    )
    event = _event("payment.refused", eventId="evt-9", outcome={"reason": "Insufficient funds"})
    transition = plan_payment_event(event, target, provider="worldpay")

    attempt, failed, recorded = transition.effects
    assert isinstance(attempt, CreatePaymentAttempt)
    assert attempt.provider_ref == "evt-9"
    assert attempt.reason == "Insufficient funds"
    assert attempt.amount == 49.99
    assert attempt.user_id == "user-1"
    assert failed == FailPaymentRequest("pr-1")
    assert recorded.event_type == "failed_via_webhook"


def test_failure_reason_defaults():
    target = PaymentTarget(invoice=_unpaid_invoice())
    transition = plan_payment_event(_event("payment.failed"), target, provider="worldpay")
    (attempt,) = transition.effects
    assert attempt.reason == "Payment refused"
    assert attempt.provider_ref == "INV-abc:payment.failed"


def test_full_refund_on_paid_invoice_marks_refunded():
    target = PaymentTarget(invoice=_unpaid_invoice(status="paid"))
    event = _event("refund.completed", eventId="evt-r1", instruction={"value": {"amount": 4999}})
    transition = plan_payment_event(event, target, provider="worldpay")

    note, refunded = transition.effects
    assert isinstance(note, CreateCreditNote)
    assert note.reason == "Worldpay refund - evt-r1"
    assert note.amount == 49.99
    assert refunded == MarkInvoiceRefunded(INVOICE_ID)
    assert transition.next_status == "refunded"


def test_partial_refund_only_issues_credit_note():
    target = PaymentTarget(invoice=_unpaid_invoice(status="paid"))
    event = _event("refund.completed", eventId="evt-r2", instruction={"value": {"amount": 1000}})
    transition = plan_payment_event(event, target, provider="worldpay")
    assert [type(effect) for effect in transition.effects] == [CreateCreditNote]
    assert transition.next_status == "paid"


def test_refund_without_invoice_is_unresolved():
    transition = plan_payment_event(_event("refund.requested"), PaymentTarget(), provider="worldpay")
    assert transition.outcome is Outcome.UNRESOLVED
    assert transition.reason == "invoice_not_found"


def test_dispute_plans_urgent_audit():
    transition = plan_payment_event(_event("chargeback.received"), PaymentTarget(), provider="worldpay")
    (audit,) = transition.effects
    assert isinstance(audit, RecordUrgentAudit)
    assert audit.entity_id == "INV-abc"


def test_unknown_event_type_is_ignored():
    transition = plan_payment_event(_event("payment.sentForSettlement"), PaymentTarget(), provider="worldpay")
    assert transition.outcome is Outcome.IGNORED
    assert transition.effects == ()


def test_plan_invoice_payment_refuses_paid_invoice():
    transition = plan_invoice_payment(_unpaid_invoice(status="paid"), user_id="user-1", provider_reference="INV-x")
    assert transition.outcome is Outcome.REJECTED
    assert transition.reason == "invoice_already_paid"


def test_plan_invoice_payment_hides_other_users_invoice():
    transition = plan_invoice_payment(_unpaid_invoice(), user_id="user-2", provider_reference="INV-x")
    assert transition.reason == "invoice_not_found"


def test_plan_invoice_payment_creates_pending_request():
    transition = plan_invoice_payment(_unpaid_invoice(), user_id="user-1", provider_reference="INV-x")
    assert transition.effects == (
        CreatePaymentRequest(
            invoice_id=INVOICE_ID, user_id="user-1", amount=49.99, currency="GBP", provider_reference="INV-x"
        ),
    )


@pytest.mark.parametrize(
    "order,email,reason",
    [
        (None, "a@example.com", "order_not_found"),
        (GuestOrderSnapshot(id="o-1", order_number="ORD-12345", email="a@example.com"), "b@example.com", "email_mismatch"),
        (
            GuestOrderSnapshot(id="o-1", order_number="ORD-12345", email="a@example.com", user_id="other"),
            "a@example.com",
            "already_linked",
        ),
    ],
)
def test_plan_order_link_rejections(order, email, reason):
    transition = plan_order_link(order, email=email, user_id="user-1", now=NOW)
    assert transition.outcome is Outcome.REJECTED
    assert transition.reason == reason


def test_plan_order_link_matches_email_case_insensitively():
    order = GuestOrderSnapshot(id="o-1", order_number="ORD-12345", email="Shopper@Example.com")
    transition = plan_order_link(order, email="shopper@example.com", user_id="user-1", now=NOW)
    assert transition.effects == (LinkGuestOrder(order_id="o-1", user_id="user-1", linked_at=NOW.isoformat()),)


def test_plan_email_open_touches_every_trackable_table():
    transition = plan_email_open("trk-1", now=NOW)
    assert [(type(effect), effect.table) for effect in transition.effects] == [
        (MarkRecipientOpened, "campaign_recipients"),
        (IncrementOpenCount, "campaign_recipients"),
        (MarkRecipientOpened, "communications_log"),
        (IncrementOpenCount, "communications_log"),
    ]


def test_first_open_followup_only_for_campaign_recipients():
    assert plan_first_open_followup("campaign_recipients", {"campaign_id": "c-1"}).effects == (
        IncrementCampaignOpens("c-1"),
    )
    assert plan_first_open_followup("communications_log", {"campaign_id": "c-1"}).effects == ()
