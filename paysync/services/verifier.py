"""
Standard Webhooks signature verification.

The provider signs "{webhook-id}.{webhook-timestamp}.{body}" with
HMAC-SHA256 and sends base64 signatures as space separated "v1,<sig>"
entries in the webhook-signature header. More than one entry is present
while a secret is being rotated.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional
from paysync.core.exceptions import ConfigError, MalformedPayloadError, VerificationError

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"

HEADER_ID = "webhook-id"
HEADER_TIMESTAMP = "webhook-timestamp"
HEADER_SIGNATURE = "webhook-signature"


class WebhookVerifier:
    def __init__(self, secret: Optional[str], tolerance: int = 300):
        if not secret:
            raise ConfigError("Webhook secret is not set")
        if secret.startswith(SECRET_PREFIX):
            secret = secret[len(SECRET_PREFIX):]
        try:
            self._key = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError(f"Webhook secret is not valid base64: {e}")
        if not self._key:
            raise ConfigError("Webhook secret is empty")
        self.tolerance = tolerance

    def sign(self, msg_id: str, timestamp: int, body: bytes) -> str:
        to_sign = f"{msg_id}.{timestamp}.".encode("utf-8") + body
        digest = hmac.new(self._key, to_sign, hashlib.sha256).digest()
        return f"{SIGNATURE_VERSION},{base64.b64encode(digest).decode('utf-8')}"

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Check the envelope and return the decoded payload.

        Raises VerificationError for missing headers, a timestamp outside the
        tolerance window or no matching signature, and MalformedPayloadError
        when a correctly signed body is not a JSON object.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        msg_id = lowered.get(HEADER_ID)
        timestamp_header = lowered.get(HEADER_TIMESTAMP)
        signature_header = lowered.get(HEADER_SIGNATURE)
        if not msg_id or not timestamp_header or not signature_header:
            raise VerificationError("Missing required webhook headers")

        try:
            timestamp = int(timestamp_header)
        except (TypeError, ValueError):
            raise VerificationError("Invalid webhook-timestamp header")

        now = int(time.time())
        if abs(now - timestamp) > self.tolerance:
            raise VerificationError(f"Message timestamp outside tolerance ({timestamp} vs {now})")

        expected = self.sign(msg_id, timestamp, raw_body).split(",", 1)[1]
        for entry in signature_header.split(" "):
            version, _, signature = entry.partition(",")
            if version != SIGNATURE_VERSION or not signature:
                continue
            if hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
                break
        else:
            raise VerificationError("No matching signature found")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise MalformedPayloadError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body is not a JSON object")
        return payload
