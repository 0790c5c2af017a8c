import base64
import json
import time
import uuid
import httpx
from paysync.core.config import Settings
from paysync.crud.order import crud_order
from paysync.services.dodo_client import DodoPaymentsClient
from paysync.services.verifier import WebhookVerifier

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"paysync-test-webhook-secret").decode()
GATEWAY_ID = "dodo_payments"


def make_settings(test_mode: bool = True, **overrides) -> Settings:
    values = dict(
        DODO_TEST_MODE=test_mode,
        DODO_TEST_WEBHOOK_KEY=WEBHOOK_SECRET,
        DODO_LIVE_WEBHOOK_KEY=WEBHOOK_SECRET,
        DODO_TEST_API_KEY="sk_test",
        DODO_LIVE_API_KEY="sk_live",
        GATEWAY_ID=GATEWAY_ID,
        SITE_URL="http://shop.test",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def signed_headers(verifier: WebhookVerifier, body: bytes, msg_id: str = None, timestamp: int = None) -> dict:
    msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": verifier.sign(msg_id, timestamp, body),
    }


class StubDodoClient:
    """Stands in for DodoPaymentsClient where only get_subscription is used."""

    def __init__(self):
        self.calls = []
        self.subscription_error = None

    async def get_subscription(self, subscription_id):
        self.calls.append(("get_subscription", subscription_id))
        if self.subscription_error is not None:
            raise self.subscription_error
        return {"subscription_id": subscription_id, "status": "active"}


async def load_order(session_factory, order_id):
    async with session_factory() as session:
        return await crud_order.get(session, order_id)


async def load_notes(session_factory, order_id):
    async with session_factory() as session:
        return await crud_order.get_notes(session, order_id)


class Recorder:
    """httpx.MockTransport handler that records requests and replays canned responses."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(200, json={})
        response = self.routes[key]
        if isinstance(response, Exception):
            raise response
        # canned responses are replayed, hand out a fresh copy each time
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def make_client(recorder: Recorder, settings: Settings = None) -> DodoPaymentsClient:
    return DodoPaymentsClient.from_settings(settings or make_settings(), transport=httpx.MockTransport(recorder))
