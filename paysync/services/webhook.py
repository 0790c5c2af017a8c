import logging
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple
from pydantic import ValidationError
from redis.asyncio import Redis
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from paysync.core.config import Settings
from paysync.core.exceptions import DownstreamLookupError, MalformedPayloadError, ProviderAPIError, VerificationError
from paysync.crud.order import crud_order
from paysync.db.models.order import Order, OrderStatus
from paysync.db.models.webhook_event import WebhookEvent, WebhookOutcome
from paysync.schemas.webhook import WebhookPayload
from paysync.services.inventory import inventory_service
from paysync.services.resolver import EventResolver
from paysync.services.verifier import HEADER_ID, WebhookVerifier

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    # status to set, None for note-only events
    target: Optional[OrderStatus]
    # written with the status change, only when the status actually changes
    status_note: str = ""
    # always written
    note: str = ""
    before: Optional[str] = None
    after: Optional[str] = None


TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    ("payment", "succeeded"): Transition(OrderStatus.COMPLETED, "Payment completed by Dodo Payments.",
                                         before="mark_paid", after="record_renewal"),
    ("payment", "failed"): Transition(OrderStatus.FAILED, "Payment failed by Dodo Payments.", after="restock"),
    ("payment", "cancelled"): Transition(OrderStatus.CANCELLED, "Payment cancelled by Dodo Payments.", after="restock"),
    ("payment", "processing"): Transition(OrderStatus.PROCESSING, "Payment processing by Dodo Payments."),

    ("refund", "succeeded"): Transition(
        OrderStatus.REFUNDED, "Payment refunded by Dodo Payments.",
        note="Refunded payment in Dodo Payments. Payment ID: {payment_id}, Refund ID: {refund_id}"),
    ("refund", "failed"): Transition(
        None, note="Refund failed in Dodo Payments. Payment ID: {payment_id}, Refund ID: {refund_id}"),

    ("subscription", "active"): Transition(OrderStatus.ACTIVE, "Subscription activated by Dodo Payments: {subscription_id}"),
    # renewals are created from payment.succeeded
    ("subscription", "renewed"): Transition(None, note="Subscription renewed by Dodo Payments."),
    ("subscription", "on_hold"): Transition(OrderStatus.ON_HOLD, "Subscription paused by Dodo Payments."),
    ("subscription", "paused"): Transition(OrderStatus.ON_HOLD, "Subscription paused by Dodo Payments."),
    ("subscription", "cancelled"): Transition(OrderStatus.CANCELLED, "Subscription cancelled by Dodo Payments."),
    ("subscription", "failed"): Transition(OrderStatus.ON_HOLD, "Subscription payment failed in Dodo Payments."),
    ("subscription", "expired"): Transition(OrderStatus.EXPIRED, "Subscription expired in Dodo Payments."),
}

# used when the status has no row of its own
DEFAULT_TRANSITIONS: Dict[str, Transition] = {
    "payment": TRANSITIONS[("payment", "processing")],
    "refund": Transition(None),
    "subscription": Transition(None, note="Subscription webhook received from Dodo Payments: {type}"),
}

# written before the transition for every event of the kind
KIND_NOTES: Dict[str, str] = {
    "refund": "Refund webhook received from Dodo Payments: {type}",
}


class WebhookService:
    """
    Verifies, resolves and applies inbound provider webhooks.

    handle() never raises. It answers 200 for anything that passed
    verification, including events that resolve to nothing or whose handler
    failed, so the provider does not retry forever. In test mode verification
    failures answer 401 and malformed event types 400, in live mode both are
    swallowed into 200.
    """

    def __init__(self, verifier: Optional[WebhookVerifier], session_factory: async_sessionmaker,
                 redis: Redis, client: Any, settings: Settings, resolver: Optional[EventResolver] = None):
        self.verifier = verifier
        self.session_factory = session_factory
        self.redis = redis
        self.client = client
        self.settings = settings
        self.resolver = resolver or EventResolver(settings.GATEWAY_ID)

    def _reject(self, status_code: int) -> int:
        return status_code if self.settings.DODO_TEST_MODE else 200

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> int:
        if self.verifier is None:
            logger.error("webhook received but the webhook key is not configured")
            return self._reject(401)

        try:
            raw_payload = self.verifier.verify(raw_body, headers)
        except VerificationError as e:
            logger.warning("could not verify webhook event: %s", e.message)
            return self._reject(401)
        except MalformedPayloadError as e:
            logger.error("malformed webhook body: %s", e.message)
            return self._reject(400)

        try:
            payload = WebhookPayload.model_validate(raw_payload)
            kind, status = payload.split_type()
        except ValidationError as e:
            logger.error("malformed webhook payload: %s", e.errors())
            return self._reject(400)
        except MalformedPayloadError as e:
            logger.error("%s", e.message)
            return self._reject(400)

        event_id = {k.lower(): v for k, v in headers.items()}[HEADER_ID]
        try:
            if not await self._register_delivery(event_id, payload.type):
                return 200
        except SQLAlchemyError:
            logger.exception("could not record webhook %s, dropping it", event_id)
            return 200

        try:
            outcome, detail = await self.dispatch(payload, kind, status)
        except Exception as e:
            logger.exception("webhook %s (%s) failed", event_id, payload.type)
            outcome, detail = WebhookOutcome.FAILED, str(e)[:500]
        await self._record_outcome(event_id, outcome, detail)
        return 200

    async def dispatch(self, payload: WebhookPayload, kind: str, status: str) -> Tuple[WebhookOutcome, str]:
        transition = TRANSITIONS.get((kind, status)) or DEFAULT_TRANSITIONS.get(kind)
        if transition is None:
            logger.info("ignoring webhook of kind %r", kind)
            return WebhookOutcome.IGNORED, f"unhandled kind {kind}"

        data = payload.data
        async with self.session_factory() as session:
            order = await self.resolver.resolve(session, data, kind)
            if order is None:
                if (kind, status) == ("payment", "succeeded") and data.subscription_id:
                    logger.error("RENEWAL_DROPPED: payment %s for subscription %s matched no local order",
                                 data.payment_id, data.subscription_id)
                return WebhookOutcome.UNRESOLVED, (
                    f"payment_id={data.payment_id} subscription_id={data.subscription_id} "
                    f"checkout_session_id={data.checkout_session_id}")

            await self.apply(session, order, payload, transition, kind)
            return WebhookOutcome.PROCESSED, f"{order.order_type.value} #{order.id}"

    async def apply(self, session: AsyncSession, order: Order, payload: WebhookPayload, transition: Transition, kind: str) -> None:
        data = payload.data
        context = {
            "type": payload.type,
            "payment_id": data.payment_id or "",
            "refund_id": data.refund_id or "",
            "subscription_id": data.subscription_id or "",
        }
        if kind in KIND_NOTES:
            await crud_order.add_note(session, order.id, KIND_NOTES[kind].format(**context))
        if transition.before:
            await getattr(self, transition.before)(session, order, payload)
        if transition.target is not None:
            await crud_order.update_status(session, order, transition.target, transition.status_note.format(**context))
        if transition.note:
            await crud_order.add_note(session, order.id, transition.note.format(**context))
        if transition.after:
            await getattr(self, transition.after)(session, order, payload)

    async def mark_paid(self, session: AsyncSession, order: Order, payload: WebhookPayload) -> None:
        payment_id = payload.data.payment_id
        if not await crud_order.payment_complete(session, order, payment_id):
            logger.info("order %s already paid (%s), not marking again", order.id, order.transaction_id)
            return
        if await crud_order.mark_stock_reduced(session, order.id):
            await inventory_service.reduce_stock(order.items, self.redis)
        await crud_order.add_note(session, order.id, f"Dodo Payments payment received. Payment ID: {payment_id}")

    async def restock(self, session: AsyncSession, order: Order, payload: WebhookPayload) -> None:
        # the flag flip is the guard, a second failed/cancelled delivery finds it already false
        if not await crud_order.mark_stock_restored(session, order.id):
            logger.info("stock for order %s not held, nothing to restore", order.id)
            return
        try:
            await inventory_service.restore_stock(order.items, self.redis)
        except Exception as e:
            raise DownstreamLookupError(f"Could not restore stock for order {order.id}: {e}")
        await crud_order.add_note(session, order.id, "Stock levels restored.")

    async def record_renewal(self, session: AsyncSession, order: Order, payload: WebhookPayload) -> None:
        """
        A succeeded payment that carries a subscription_id is a subscription
        payment. Unless it is the payment that paid the order in the first
        place, it becomes a completed renewal order of that subscription.
        """
        data = payload.data
        if not data.subscription_id:
            return

        if order.transaction_id == data.payment_id:
            logger.info("payment %s is the initial payment of order #%s, no renewal", data.payment_id, order.id)
            return

        subscription = await self.resolver.resolve_subscription(session, data.subscription_id)
        if subscription is None:
            logger.error("RENEWAL_DROPPED: no local subscription for %s (payment_id=%s, order #%s)",
                         data.subscription_id, data.payment_id, order.id)
            return

        if self.client is not None:
            try:
                await self.client.get_subscription(data.subscription_id)
            except ProviderAPIError as e:
                logger.warning("%s", DownstreamLookupError(
                    f"get_subscription({data.subscription_id}) failed with {e.status_code}: {e.message}"))

        try:
            renewal = await crud_order.create_renewal_order(session, subscription, data.payment_id)
        except SQLAlchemyError as e:
            raise DownstreamLookupError(f"Could not create renewal order for subscription {subscription.id}: {e}")
        if renewal is None:
            logger.info("renewal for subscription #%s and payment %s already recorded", subscription.id, data.payment_id)
            return

        await self.mark_paid(session, renewal, payload)
        await crud_order.update_status(session, renewal, OrderStatus.COMPLETED, "Renewal payment completed by Dodo Payments.")
        await crud_order.add_note(session, subscription.id,
                                  f"Renewal order #{renewal.id} created for payment {data.payment_id}.")
        logger.info("created renewal order %s for subscription %s", renewal.id, subscription.id)

    async def _register_delivery(self, event_id: str, event_type: str) -> bool:
        async with self.session_factory() as session:
            try:
                session.add(WebhookEvent(event_id=event_id, event_type=event_type))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("webhook %s already received, skipping", event_id)
                return False
        logger.info("received webhook %s (id: %s)", event_type, event_id)
        return True

    async def _record_outcome(self, event_id: str, outcome: WebhookOutcome, detail: str) -> None:
        async with self.session_factory() as session:
            try:
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.event_id == event_id)
                    .values(outcome=outcome, detail=detail[:512])
                )
                await session.commit()
            except SQLAlchemyError:
                logger.exception("could not record outcome %s for webhook %s", outcome.value, event_id)
