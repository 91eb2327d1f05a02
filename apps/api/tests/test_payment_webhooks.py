import asyncio

import pytest
from sqlalchemy.future import select

from models.purchase import Purchase, PurchaseStatus
from services.credits import CreditLedger
from services.errors import NotFoundError, ValidationError
from services.webhooks import PaymentWebhookHandler, parse_stripe_event


BUYER_ID = "buyer-user"


def _checkout_event(event_id: str, *, event_type: str = "checkout.session.completed", payment_status: str = "paid"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "payment_intent": "pi_test_1",
                "payment_status": payment_status,
                "amount_total": 1000,
                "client_reference_id": BUYER_ID,
                "metadata": {"user_id": BUYER_ID, "credits": "10"},
            }
        },
    }


async def _handle(services, *args, **kwargs):
    async with services.session_maker() as db:
        return await services.webhooks(db).handle_event(*args, **kwargs)


async def _purchases(services):
    async with services.session_maker() as db:
        result = await db.execute(select(Purchase).order_by(Purchase.created_at))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_duplicate_event_grants_credits_once(services, make_user, load_user):
    await make_user(BUYER_ID)

    first = await _handle(services, "evt_1", BUYER_ID, 10, 10.0, "COMPLETED")
    second = await _handle(services, "evt_1", BUYER_ID, 10, 10.0, "COMPLETED")

    assert first.duplicate is False
    assert first.credits_applied == 10
    assert first.balance_after == 10
    assert second.duplicate is True
    assert second.purchase_id == first.purchase_id
    assert (await load_user(BUYER_ID)).credits == 10
    assert len(await _purchases(services)) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_grant_once(services, make_user, load_user):
    await make_user(BUYER_ID)

    outcomes = await asyncio.gather(
        _handle(services, "evt_race", BUYER_ID, 10, 10.0, "COMPLETED"),
        _handle(services, "evt_race", BUYER_ID, 10, 10.0, "COMPLETED"),
    )

    assert sorted(outcome.duplicate for outcome in outcomes) == [False, True]
    assert (await load_user(BUYER_ID)).credits == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["FAILED", "REFUNDED", "PENDING"])
async def test_non_completed_events_are_recorded_without_balance_change(services, make_user, load_user, status):
    await make_user(BUYER_ID, credits=4)

    outcome = await _handle(services, f"evt_{status.lower()}", BUYER_ID, 10, 10.0, status)

    assert outcome.duplicate is False
    assert outcome.credits_applied == 0
    assert (await load_user(BUYER_ID)).credits == 4
    purchases = await _purchases(services)
    assert [purchase.status for purchase in purchases] == [status]


@pytest.mark.asyncio
async def test_refund_with_clawback_policy_is_clamped_at_zero(services, make_user, load_user):
    await make_user(BUYER_ID)
    services.settings.CHARGEBACK_POLICY = "clawback"

    await _handle(services, "evt_paid", BUYER_ID, 10, 10.0, "COMPLETED", payment_reference="pi_1")
    async with services.session_maker() as db:
        await services.ledger(db).reserve(BUYER_ID)
        await services.ledger(db).reserve(BUYER_ID)
        await db.commit()

    outcome = await _handle(services, "evt_refund", None, 0, 10.0, "REFUNDED", payment_reference="pi_1")

    assert outcome.credits_applied == -8
    assert outcome.balance_after == 0
    assert (await load_user(BUYER_ID)).credits == 0


@pytest.mark.asyncio
async def test_partial_refunds_claw_back_only_the_refunded_share(services, make_user, load_user):
    await make_user(BUYER_ID)
    services.settings.CHARGEBACK_POLICY = "clawback"
    await _handle(services, "evt_buy_a", BUYER_ID, 10, 10.0, "COMPLETED", payment_reference="pi_a")
    await _handle(services, "evt_buy_b", BUYER_ID, 10, 10.0, "COMPLETED", payment_reference="pi_b")

    # Refunded amounts are cumulative for the payment.
    applied = []
    for event_id, refunded in [("evt_r1", 2.0), ("evt_r2", 6.0), ("evt_r3", 10.0), ("evt_r4", 10.0)]:
        outcome = await _handle(services, event_id, None, 0, refunded, "REFUNDED", payment_reference="pi_a")
        applied.append(outcome.credits_applied)

    assert applied == [-2, -4, -4, 0]
    assert (await load_user(BUYER_ID)).credits == 10
    refunds = [purchase for purchase in await _purchases(services) if purchase.status == "REFUNDED"]
    assert sum(purchase.credits_granted for purchase in refunds) == 10


@pytest.mark.asyncio
async def test_pending_event_after_settlement_is_stored_settled(services, make_user, load_user):
    await make_user(BUYER_ID)
    services.settings.CHARGEBACK_POLICY = "clawback"

    await _handle(services, "evt_succeeded", BUYER_ID, 10, 10.0, "COMPLETED", payment_reference="pi_late")
    late = await _handle(services, "evt_unpaid", BUYER_ID, 10, 10.0, "PENDING", payment_reference="pi_late")

    assert late.duplicate is False
    assert late.status == "COMPLETED"
    assert late.credits_applied == 0
    statuses = {purchase.provider_event_id: purchase.status for purchase in await _purchases(services)}
    assert statuses == {"evt_succeeded": "COMPLETED", "evt_unpaid": "COMPLETED"}
    assert (await load_user(BUYER_ID)).credits == 10

    refund = await _handle(services, "evt_refund_late", None, 0, 10.0, "REFUNDED", payment_reference="pi_late")
    assert refund.credits_applied == -10


@pytest.mark.asyncio
async def test_refund_settles_pending_purchase_as_paid(services, make_user):
    await make_user(BUYER_ID, credits=10)

    await _handle(services, "evt_wait", BUYER_ID, 10, 10.0, "PENDING", payment_reference="pi_wait")
    await _handle(services, "evt_refunded", None, 0, 10.0, "REFUNDED", payment_reference="pi_wait")

    statuses = {purchase.provider_event_id: purchase.status for purchase in await _purchases(services)}
    assert statuses == {"evt_wait": "COMPLETED", "evt_refunded": "REFUNDED"}


@pytest.mark.asyncio
async def test_later_event_settles_pending_purchase_of_same_payment(services, make_user, load_user):
    await make_user(BUYER_ID)

    await _handle(services, "evt_pending", BUYER_ID, 10, 10.0, "PENDING", payment_reference="pi_async")
    settled = await _handle(services, "evt_settled", BUYER_ID, 10, 10.0, "COMPLETED", payment_reference="pi_async")

    assert settled.credits_applied == 10
    statuses = {purchase.provider_event_id: purchase.status for purchase in await _purchases(services)}
    assert statuses == {"evt_pending": "COMPLETED", "evt_settled": "COMPLETED"}
    assert (await load_user(BUYER_ID)).credits == 10


@pytest.mark.asyncio
async def test_event_for_unknown_user_or_status_is_rejected(services, make_user):
    await make_user(BUYER_ID)
    with pytest.raises(NotFoundError):
        await _handle(services, "evt_ghost", "ghost-user", 5, 5.0, "COMPLETED")
    with pytest.raises(ValidationError):
        await _handle(services, "evt_weird", BUYER_ID, 5, 5.0, "CHARGED")
    with pytest.raises(ValidationError):
        await _handle(services, "evt_anonymous", None, 5, 5.0, "COMPLETED")


def test_parse_paid_checkout_session():
    event = parse_stripe_event(_checkout_event("evt_cs"))

    assert event.provider_event_id == "evt_cs"
    assert event.user_id == BUYER_ID
    assert event.credits_granted == 10
    assert event.amount_paid == 10.0
    assert event.status is PurchaseStatus.COMPLETED
    assert event.payment_reference == "pi_test_1"


def test_parse_maps_async_and_refund_events():
    unpaid = parse_stripe_event(_checkout_event("evt_a", payment_status="unpaid"))
    succeeded = parse_stripe_event(_checkout_event("evt_b", event_type="checkout.session.async_payment_succeeded"))
    failed = parse_stripe_event(_checkout_event("evt_c", event_type="checkout.session.async_payment_failed"))
    refunded = parse_stripe_event(
        {
            "id": "evt_d",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_test_1", "amount_refunded": 500, "metadata": {}}},
        }
    )

    assert unpaid.status is PurchaseStatus.PENDING
    assert succeeded.status is PurchaseStatus.COMPLETED
    assert failed.status is PurchaseStatus.FAILED
    assert refunded.status is PurchaseStatus.REFUNDED
    assert refunded.user_id is None
    assert refunded.amount_paid == 5.0
    assert refunded.payment_reference == "pi_test_1"


def test_parse_ignores_unrelated_events_and_rejects_bad_metadata():
    assert parse_stripe_event({"id": "evt_x", "type": "customer.created", "data": {"object": {}}}) is None

    bad = _checkout_event("evt_bad")
    bad["data"]["object"]["metadata"]["credits"] = "ten"
    with pytest.raises(ValidationError):
        parse_stripe_event(bad)


@pytest.mark.asyncio
async def test_handler_accepts_parsed_stripe_event(session_maker, make_user, load_user):
    await make_user(BUYER_ID)
    async with session_maker() as db:
        handler = PaymentWebhookHandler(db, CreditLedger(db))
        outcome = await handler.handle(parse_stripe_event(_checkout_event("evt_parsed")))

    assert outcome.credits_applied == 10
    assert (await load_user(BUYER_ID)).credits == 10
