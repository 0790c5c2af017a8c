import logging
from typing import Dict, NamedTuple, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.core.config import Settings
from paysync.core.exceptions import ProviderAPIError
from paysync.crud.mapping import subscription_mappings
from paysync.crud.order import crud_order
from paysync.db.models.order import Order, OrderStatus
from paysync.services.dodo_client import DodoPaymentsClient

logger = logging.getLogger(__name__)


class RemoteAction(NamedTuple):
    method: str
    purpose: str
    done: str
    failed: str


ACTIONS: Dict[OrderStatus, RemoteAction] = {
    OrderStatus.ON_HOLD: RemoteAction(
        "pause_subscription", "suspension",
        "Subscription paused in Dodo Payments: {id}",
        "Failed to pause subscription in Dodo Payments: {error}"),
    OrderStatus.PENDING_CANCEL: RemoteAction(
        "cancel_subscription_at_next_billing_date", "cancellation",
        "Subscription scheduled for cancellation at next billing date in Dodo Payments: {id}",
        "Failed to cancel subscription in Dodo Payments: {error}"),
    OrderStatus.CANCELLED: RemoteAction(
        "cancel_subscription", "cancellation",
        "Subscription cancelled in Dodo Payments: {id}",
        "Failed to cancel subscription in Dodo Payments: {error}"),
    # an expired local subscription must stop billing remotely too
    OrderStatus.EXPIRED: RemoteAction(
        "cancel_subscription", "cancellation",
        "Subscription cancelled in Dodo Payments: {id}",
        "Failed to cancel subscription in Dodo Payments: {error}"),
    OrderStatus.ACTIVE: RemoteAction(
        "resume_subscription", "reactivation",
        "Subscription resumed in Dodo Payments: {id}",
        "Failed to resume subscription in Dodo Payments: {error}"),
}


class SubscriptionSync:
    """Forwards local subscription status changes to the provider."""

    def __init__(self, client: Optional[DodoPaymentsClient], settings: Settings):
        self.client = client
        self.settings = settings

    async def on_status_updated(self, session: AsyncSession, subscription: Order,
                                new_status: OrderStatus, old_status: Optional[OrderStatus]) -> Optional[str]:
        """Returns the client method that was called, None if nothing was sent."""
        if subscription.payment_method != self.settings.GATEWAY_ID:
            return None
        action = ACTIONS.get(new_status)
        if action is None:
            return None
        # only a subscription coming back from on-hold is resumed
        if new_status == OrderStatus.ACTIVE and old_status != OrderStatus.ON_HOLD:
            return None

        remote_id = await subscription_mappings.get_remote_id(session, subscription.id)
        if not remote_id:
            await crud_order.add_note(session, subscription.id,
                                      f"No Dodo Payments subscription ID found for {action.purpose}.")
            return None
        if self.client is None:
            await crud_order.add_note(session, subscription.id,
                                      action.failed.format(error="API key is not configured"))
            return None

        try:
            await getattr(self.client, action.method)(remote_id)
        except ProviderAPIError as e:
            logger.error("%s(%s) failed: %s", action.method, remote_id, e.message)
            await crud_order.add_note(session, subscription.id, action.failed.format(error=e.message))
            return None
        await crud_order.add_note(session, subscription.id, action.done.format(id=remote_id))
        return action.method
