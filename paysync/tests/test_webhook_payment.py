import asyncio
import logging
import pytest
from sqlalchemy import func, select
from paysync.core.exceptions import ProviderAPIError
from paysync.crud.mapping import payment_mappings, subscription_mappings
from paysync.crud.order import crud_order
from paysync.db.models.order import Order, OrderStatus, OrderType
from paysync.db.models.webhook_event import WebhookEvent, WebhookOutcome
from paysync.services.inventory import inventory_service
from paysync.tests.utils import load_notes, load_order


def payment_event(status, payment_id="pay_1", order_id=42, **data):
    data["payment_id"] = payment_id
    if order_id is not None:
        data["metadata"] = {"wc_order_id": str(order_id)}
    return {"type": f"payment.{status}", "data": data}


async def outcome_of(session_factory, event_id):
    async with session_factory() as session:
        event = await session.scalar(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        return event.outcome, event.detail


async def renewals_of(session_factory, subscription_id):
    async with session_factory() as session:
        result = await session.scalars(
            select(Order)
            .where(Order.parent_id == subscription_id)
            .where(Order.order_type == OrderType.RENEWAL)
        )
        return list(result.all())


async def test_payment_succeeded_completes_the_order(seeded, deliver, db_session_factory, redis_client):
    status = await deliver(payment_event("succeeded"), msg_id="msg_1")

    assert status == 200
    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.COMPLETED
    assert order.transaction_id == "pay_1"
    assert order.is_paid
    assert order.stock_reduced

    async with db_session_factory() as session:
        assert await payment_mappings.get_local_id(session, "pay_1") == 42

    notes = await load_notes(db_session_factory, 42)
    assert "Dodo Payments payment received. Payment ID: pay_1" in notes
    assert "Payment completed by Dodo Payments. Status changed from pending-payment to completed." in notes
    assert await inventory_service.get_stock(1, redis_client) == 8
    assert await outcome_of(db_session_factory, "msg_1") == (WebhookOutcome.PROCESSED, "order #42")


async def test_redelivered_payment_is_applied_once(seeded, deliver, db_session_factory, redis_client):
    for _ in range(3):
        assert await deliver(payment_event("succeeded")) == 200

    assert await inventory_service.get_stock(1, redis_client) == 8
    notes = await load_notes(db_session_factory, 42)
    assert notes.count("Dodo Payments payment received. Payment ID: pay_1") == 1
    assert len([n for n in notes if "Status changed" in n]) == 1


async def test_same_webhook_id_is_handled_once(seeded, deliver, db_session_factory, redis_client):
    assert await deliver(payment_event("succeeded"), msg_id="msg_dup") == 200
    assert await deliver(payment_event("failed"), msg_id="msg_dup") == 200

    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.COMPLETED
    assert await inventory_service.get_stock(1, redis_client) == 8
    async with db_session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(WebhookEvent))
    assert count == 1


async def test_failed_payment_restores_stock_once(seeded, deliver, db_session_factory, redis_client):
    async with db_session_factory() as session:
        assert await crud_order.mark_stock_reduced(session, 43)
    await inventory_service.set_stock(1, 9, redis_client)

    event = {"type": "payment.failed", "data": {"checkout_session_id": "cs_43"}}
    assert await deliver(event) == 200
    assert await deliver(event) == 200

    order = await load_order(db_session_factory, 43)
    assert order.status == OrderStatus.FAILED
    assert not order.stock_reduced
    assert await inventory_service.get_stock(1, redis_client) == 10
    notes = await load_notes(db_session_factory, 43)
    assert notes.count("Stock levels restored.") == 1
    assert notes.count("Payment failed by Dodo Payments. Status changed from pending-payment to failed.") == 1


async def test_cancelled_payment_after_success_restores_stock(seeded, deliver, db_session_factory, redis_client):
    await deliver(payment_event("succeeded"))
    assert await inventory_service.get_stock(1, redis_client) == 8

    await deliver(payment_event("cancelled"))

    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.CANCELLED
    assert await inventory_service.get_stock(1, redis_client) == 10


async def test_failed_payment_without_held_stock_leaves_counters_alone(seeded, deliver, redis_client):
    await deliver(payment_event("failed"))
    assert await inventory_service.get_stock(1, redis_client) == 10


@pytest.mark.parametrize("status", ["processing", "requires_customer_action"])
async def test_processing_and_unknown_statuses_mark_processing(seeded, deliver, db_session_factory, status):
    await deliver(payment_event(status))

    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.PROCESSING
    assert not order.is_paid


async def test_payment_never_completes_a_subscription(seeded, deliver, db_session_factory):
    await deliver(payment_event("succeeded", payment_id="pay_s", order_id=7), msg_id="msg_sub")

    subscription = await load_order(db_session_factory, 7)
    assert subscription.status == OrderStatus.ACTIVE
    assert not subscription.is_paid
    assert (await outcome_of(db_session_factory, "msg_sub"))[0] == WebhookOutcome.UNRESOLVED


async def test_null_metadata_falls_back_to_checkout_session(seeded, deliver, db_session_factory):
    event = {"type": "payment.succeeded",
             "data": {"payment_id": "pay_n", "metadata": None, "checkout_session_id": "cs_43"}}

    assert await deliver(event) == 200

    order = await load_order(db_session_factory, 43)
    assert order.status == OrderStatus.COMPLETED
    assert order.transaction_id == "pay_n"


async def test_unresolvable_payment_is_acknowledged(seeded, deliver, db_session_factory):
    status = await deliver(payment_event("succeeded", payment_id="pay_ghost", order_id=None), msg_id="msg_ghost")

    assert status == 200
    outcome, detail = await outcome_of(db_session_factory, "msg_ghost")
    assert outcome == WebhookOutcome.UNRESOLVED
    assert "pay_ghost" in detail
    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.PENDING_PAYMENT


async def test_initial_subscription_payment_creates_no_renewal(seeded, deliver, db_session_factory, stub_client):
    await deliver(payment_event("succeeded", subscription_id="sub_9"))

    assert await renewals_of(db_session_factory, 7) == []
    assert stub_client.calls == []
    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.COMPLETED


async def test_initial_payment_before_subscription_is_mapped(seeded, deliver, db_session_factory, caplog):
    """The webhook usually beats the return URL that maps the new subscription."""
    caplog.set_level(logging.INFO, logger="paysync.services.webhook")
    async with db_session_factory() as session:
        await subscription_mappings.delete_mapping(session, 7)

    await deliver(payment_event("succeeded", payment_id="pay_first", subscription_id="sub_new"))

    assert "RENEWAL_DROPPED" not in caplog.text
    assert "pay_first is the initial payment of order #42" in caplog.text
    order = await load_order(db_session_factory, 42)
    assert order.status == OrderStatus.COMPLETED
    assert await renewals_of(db_session_factory, 7) == []


async def test_renewal_payment_creates_one_renewal_order(seeded, deliver, db_session_factory, redis_client):
    await deliver(payment_event("succeeded", subscription_id="sub_9"))

    for _ in range(2):
        assert await deliver(payment_event("succeeded", payment_id="pay_2", subscription_id="sub_9")) == 200

    renewals = await renewals_of(db_session_factory, 7)
    assert len(renewals) == 1, f"Expected 1 renewal, got {len(renewals)}"
    renewal = renewals[0]
    assert renewal.status == OrderStatus.COMPLETED
    assert renewal.transaction_id == "pay_2"
    assert renewal.is_paid
    assert [(i.product_id, i.quantity) for i in renewal.items] == [(2, 1)]
    assert await inventory_service.get_stock(2, redis_client) == 99

    # the renewal leaves the original order and its payment mapping alone
    order = await load_order(db_session_factory, 42)
    assert order.transaction_id == "pay_1"
    async with db_session_factory() as session:
        assert await payment_mappings.get_remote_id(session, 42) == "pay_1"

    subscription_notes = await load_notes(db_session_factory, 7)
    assert f"Renewal order #{renewal.id} created for payment pay_2." in subscription_notes


async def test_renewal_survives_subscription_lookup_failure(seeded, deliver, db_session_factory, stub_client):
    await deliver(payment_event("succeeded", subscription_id="sub_9"))
    stub_client.subscription_error = ProviderAPIError("upstream down", status_code=503)

    assert await deliver(payment_event("succeeded", payment_id="pay_2", subscription_id="sub_9")) == 200

    assert len(await renewals_of(db_session_factory, 7)) == 1


async def test_unmatched_renewal_is_logged_loudly(seeded, deliver, db_session_factory, caplog):
    caplog.set_level(logging.ERROR, logger="paysync.services.webhook")

    await deliver(payment_event("succeeded", payment_id="pay_3", order_id=None, subscription_id="sub_9"))

    assert "RENEWAL_DROPPED" in caplog.text
    assert "pay_3" in caplog.text
    assert await renewals_of(db_session_factory, 7) == []


async def test_renewal_for_unknown_subscription_is_logged_loudly(seeded, deliver, db_session_factory, caplog):
    caplog.set_level(logging.ERROR, logger="paysync.services.webhook")

    await deliver(payment_event("succeeded", payment_id="pay_4", order_id=43))
    await deliver(payment_event("succeeded", payment_id="pay_5", order_id=43, subscription_id="sub_unknown"))

    assert "RENEWAL_DROPPED: no local subscription for sub_unknown" in caplog.text
    order = await load_order(db_session_factory, 43)
    assert order.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries(seeded, deliver, db_session_factory, redis_client):
    """The same event delivered several times at once reduces stock exactly once."""
    num_of_concurrent_requests = 3

    async def make_request(request_num, msg_id):
        try:
            status = await deliver(payment_event("succeeded"), msg_id=msg_id)
            return {"success": status == 200, "status": status, "request": request_num}
        except Exception as e:
            return {"success": False, "error": str(e), "request": request_num}

    same_id = [make_request(i, "msg_same") for i in range(num_of_concurrent_requests)]
    new_ids = [make_request(i, None) for i in range(num_of_concurrent_requests)]
    results = await asyncio.gather(*same_id, *new_ids)

    failed = [r for r in results if not r["success"]]
    assert not failed, f"Expected every delivery to be acknowledged. Results: {failed}"
    assert await inventory_service.get_stock(1, redis_client) == 8

    notes = await load_notes(db_session_factory, 42)
    received = notes.count("Dodo Payments payment received. Payment ID: pay_1")
    assert received == 1, f"Expected the payment to be recorded once, got {received}. Notes: {notes}"
