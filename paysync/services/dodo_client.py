"""
Async client for the Dodo Payments REST API.

Lookups (get_*) return None when the remote entity does not exist or the
request never reached the provider, callers treat that as "not synced".
Mutating calls raise ProviderAPIError on any non-2xx answer.
"""
import html
import logging
import re
from typing import Any, Dict, List, Optional
import httpx
from paysync.core.config import Settings
from paysync.core.exceptions import ConfigError, ProviderAPIError
from paysync.db.models.catalog import BillingPeriod, Product
from paysync.db.models.order import Order

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 999

PERIODS = {
    BillingPeriod.DAY: "Day",
    BillingPeriod.WEEK: "Week",
    BillingPeriod.MONTH: "Month",
    BillingPeriod.YEAR: "Year",
}

# used when a subscription product bills until cancelled: ten years
DEFAULT_SUBSCRIPTION_LENGTH = {
    BillingPeriod.DAY: 3650,
    BillingPeriod.WEEK: 520,
    BillingPeriod.MONTH: 120,
    BillingPeriod.YEAR: 10,
}

_TAG_RE = re.compile(r"<[^>]+>")


def to_cents(amount) -> int:
    return int(round(float(amount) * 100))


def convert_period(period: Optional[BillingPeriod]) -> str:
    return PERIODS.get(period, "Month")


def clean_description(description: Optional[str]) -> str:
    text = html.unescape(_TAG_RE.sub("", description or "")).strip()
    return text[:MAX_DESCRIPTION_LENGTH]


class DodoPaymentsClient:
    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0,
                 tax_category: str = "digital_products", tax_inclusive: bool = False,
                 currency: str = "USD", transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key:
            raise ConfigError("Dodo Payments API key is not set")
        self.tax_category = tax_category
        self.tax_inclusive = tax_inclusive
        self.currency = currency
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "DodoPaymentsClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.dodo_base_url,
            timeout=settings.DODO_HTTP_TIMEOUT,
            tax_category=settings.GLOBAL_TAX_CATEGORY,
            tax_inclusive=settings.GLOBAL_TAX_INCLUSIVE,
            currency=settings.DEFAULT_CURRENCY,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _lookup(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._http.get(path)
        except httpx.HTTPError as e:
            logger.error("GET %s failed: %s", path, e)
            return None
        if response.status_code == 404:
            logger.info("GET %s: not found", path)
            return None
        if response.is_error:
            raise ProviderAPIError(f"GET {path} failed", status_code=response.status_code, response_body=response.text)
        return response.json()

    async def _send(self, method: str, path: str, body: Optional[Dict[str, Any]], action: str) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"Failed to {action}: {e}")
        if response.is_error:
            logger.error("%s %s -> %s: %s", method, path, response.status_code, response.text)
            raise ProviderAPIError(f"Failed to {action} (HTTP {response.status_code})",
                                   status_code=response.status_code, response_body=response.text)
        if not response.content:
            return {}
        return response.json()

    # products

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return await self._lookup(f"/products/{product_id}")

    def _one_time_price(self, product: Product, remote: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        # an existing remote product keeps the tax and discount settings made in the dashboard
        remote_price = (remote or {}).get("price") or {}
        return {
            "type": "one_time_price",
            "currency": self.currency,
            "price": to_cents(product.price),
            "discount": remote_price.get("discount", 0),
            "purchasing_power_parity": remote_price.get("purchasing_power_parity", False),
            "tax_inclusive": remote_price.get("tax_inclusive", self.tax_inclusive),
        }

    def _recurring_price(self, product: Product, remote: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        remote_price = (remote or {}).get("price") or {}
        period = product.billing_period or BillingPeriod.MONTH
        length = product.subscription_length or DEFAULT_SUBSCRIPTION_LENGTH[period]
        return {
            "type": "recurring_price",
            "currency": self.currency,
            "price": to_cents(product.price),
            "discount": remote_price.get("discount", 0),
            "purchasing_power_parity": remote_price.get("purchasing_power_parity", False),
            "tax_inclusive": remote_price.get("tax_inclusive", self.tax_inclusive),
            "payment_frequency_count": product.billing_interval or 1,
            "payment_frequency_interval": convert_period(period),
            "subscription_period_count": length,
            "subscription_period_interval": convert_period(period),
            "trial_period_days": product.trial_days or 0,
        }

    def _product_body(self, product: Product, price: Dict[str, Any], remote: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "name": product.name,
            "description": clean_description(product.description),
            "price": price,
            "tax_category": (remote or {}).get("tax_category", self.tax_category),
        }

    async def create_product(self, product: Product) -> Dict[str, Any]:
        body = self._product_body(product, self._one_time_price(product))
        return await self._send("POST", "/products", body, "create product")

    async def update_product(self, product_id: str, product: Product) -> None:
        remote = await self.get_product(product_id)
        if remote is None:
            raise ProviderAPIError(f"Product ({product_id}) not found", status_code=404)
        body = self._product_body(product, self._one_time_price(product, remote), remote)
        await self._send("PATCH", f"/products/{product_id}", body, "update product")

    async def create_subscription_product(self, product: Product) -> Dict[str, Any]:
        body = self._product_body(product, self._recurring_price(product))
        return await self._send("POST", "/products", body, "create subscription product")

    async def update_subscription_product(self, product_id: str, product: Product) -> None:
        remote = await self.get_product(product_id)
        if remote is None:
            raise ProviderAPIError(f"Product ({product_id}) not found", status_code=404)
        body = self._product_body(product, self._recurring_price(product, remote), remote)
        await self._send("PATCH", f"/products/{product_id}", body, "update subscription product")

    # discounts

    async def get_discount(self, discount_id: str) -> Optional[Dict[str, Any]]:
        return await self._lookup(f"/discounts/{discount_id}")

    async def create_discount(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("POST", "/discounts", body, "create discount code")

    async def update_discount(self, discount_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("PATCH", f"/discounts/{discount_id}", body, "update discount code")

    # payments, subscriptions, checkout sessions

    def _customer(self, order: Order) -> Dict[str, Any]:
        return {"email": order.customer_email, "name": (order.customer_name or "").strip()}

    def _billing(self, order: Order) -> Dict[str, Any]:
        return {"country": order.billing_country}

    def _metadata(self, order: Order) -> Dict[str, str]:
        return {"wc_order_id": str(order.id)}

    async def create_payment(self, order: Order, product_cart: List[Dict[str, Any]],
                             discount_code: Optional[str], return_url: str) -> Dict[str, Any]:
        body = {
            "billing": self._billing(order),
            "customer": self._customer(order),
            "product_cart": product_cart,
            "discount_code": discount_code,
            "payment_link": True,
            "return_url": return_url,
            "metadata": self._metadata(order),
        }
        return await self._send("POST", "/payments", body, "create payment")

    async def create_subscription(self, order: Order, product_cart: List[Dict[str, Any]],
                                  discount_code: Optional[str], return_url: Optional[str],
                                  mandate_only: bool = False) -> Dict[str, Any]:
        # subscriptions carry a single product
        first = product_cart[0]
        body: Dict[str, Any] = {
            "billing": self._billing(order),
            "customer": self._customer(order),
            "product_id": first["product_id"],
            "quantity": first["quantity"],
            "metadata": self._metadata(order),
        }
        if discount_code:
            body["discount_code"] = discount_code
        if return_url:
            body["payment_link"] = True
            body["return_url"] = return_url
        if mandate_only:
            body["on_demand"] = {"mandate_only": True}
        return await self._send("POST", "/subscriptions", body, "create subscription")

    async def create_checkout_session(self, order: Order, product_cart: List[Dict[str, Any]],
                                      discount_code: Optional[str], return_url: str,
                                      enable_tax_id_collection: bool = False) -> Dict[str, Any]:
        feature_flags = {"allow_phone_number_collection": True}
        if enable_tax_id_collection:
            feature_flags["allow_tax_id"] = True
        body: Dict[str, Any] = {
            "product_cart": product_cart,
            "customer": self._customer(order),
            "billing_address": self._billing(order),
            "return_url": return_url,
            "feature_flags": feature_flags,
            "metadata": self._metadata(order),
        }
        if discount_code:
            body["discount_code"] = discount_code
        return await self._send("POST", "/checkouts", body, "create checkout session")

    async def get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        return await self._lookup(f"/subscriptions/{subscription_id}")

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._send("PATCH", f"/subscriptions/{subscription_id}", {"status": "cancelled"}, "cancel subscription")

    async def cancel_subscription_at_next_billing_date(self, subscription_id: str) -> None:
        await self._send("PATCH", f"/subscriptions/{subscription_id}",
                         {"cancel_at_next_billing_date": True}, "cancel subscription")

    async def pause_subscription(self, subscription_id: str) -> None:
        await self._send("PATCH", f"/subscriptions/{subscription_id}", {"status": "on_hold"}, "pause subscription")

    async def resume_subscription(self, subscription_id: str) -> None:
        await self._send("PATCH", f"/subscriptions/{subscription_id}",
                         {"cancel_at_next_billing_date": False, "status": "active"}, "resume subscription")
