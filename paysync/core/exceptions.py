class GatewayError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ConfigError(GatewayError):
    """Webhook secret or API key is missing or malformed."""

    def __init__(self, message: str = "Gateway is not configured"):
        super().__init__(message, status_code=500)


class VerificationError(GatewayError):
    def __init__(self, message: str = "Webhook verification failed"):
        super().__init__(message, status_code=401)


class MalformedPayloadError(GatewayError):
    def __init__(self, message: str = "Malformed webhook payload"):
        super().__init__(message, status_code=400)


class DownstreamLookupError(GatewayError):
    """A secondary lookup or bookkeeping step failed after the primary transition was applied."""

    def __init__(self, message: str):
        super().__init__(message, status_code=502)


class ProviderAPIError(GatewayError):
    def __init__(self, message: str, status_code: int = 502, response_body: str = ""):
        self.response_body = response_body
        super().__init__(message, status_code=status_code)


class CartError(GatewayError):
    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class OrderNotFoundError(GatewayError):
    def __init__(self, order_id=None):
        super().__init__(f"Order {order_id} not found" if order_id is not None else "Order not found",
                         status_code=404)
