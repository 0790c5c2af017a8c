from fastapi import Request
from paysync.services.checkout import CheckoutService
from paysync.services.subscription import SubscriptionSync
from paysync.services.webhook import WebhookService

# built once in the app lifespan, see paysync.app.build_services


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout_service


def get_subscription_sync(request: Request) -> SubscriptionSync:
    return request.app.state.subscription_sync
