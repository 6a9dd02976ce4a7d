import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Dict, Optional, Tuple

from .. import config
from ..errors import ProviderError, WebhookError
from .base import TERMINAL_STATUSES, IntentResult, PaymentProvider

SIGNATURE_HEADER = "x-mockpay-signature"


def sign(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProvider):
    """
    In-process stand-in for the real provider. Keeps intents and customers in
    memory and treats a repeated idempotency key for a still-live intent as
    the same attempt.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret if secret is not None else config.MOCK_SECRET
        self.intents: Dict[str, dict] = {}
        self.customers: Dict[str, dict] = {}
        self._by_key: Dict[Tuple[str, int], str] = {}

    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        if amount <= 0:
            raise ProviderError("amount must be positive")
        known = self._by_key.get((idempotency_key, amount))
        if known and self.intents[known]["status"] not in TERMINAL_STATUSES:
            intent = self.intents[known]
            return {"id": intent["id"], "client_secret": intent["client_secret"]}

        intent_id = f"pi_mock_{uuid.uuid4().hex}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
            "amount": amount,
            "currency": currency,
            "customer": customer_id,
            "metadata": dict(metadata or {}),
            "status": "requires_payment_method",
            "created_at": time.time(),
        }
        self.intents[intent_id] = intent
        self._by_key[(idempotency_key, amount)] = intent_id
        return {"id": intent_id, "client_secret": intent["client_secret"]}

    def _intent(self, intent_id: str) -> dict:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ProviderError(f"No such payment intent: {intent_id}")
        return intent

    async def retrieve_intent(self, intent_id: str) -> str:
        return self._intent(intent_id)["status"]

    async def cancel_intent(self, intent_id: str) -> None:
        intent = self._intent(intent_id)
        if intent["status"] == "succeeded":
            raise ProviderError("Cannot cancel a succeeded payment intent")
        intent["status"] = "canceled"

    async def create_customer(
        self, member_id: str, email: Optional[str] = None
    ) -> str:
        customer_id = f"cus_mock_{uuid.uuid4().hex[:14]}"
        self.customers[customer_id] = {
            "id": customer_id, "member_id": member_id, "email": email,
            "deleted": False,
        }
        return customer_id

    async def retrieve_customer(self, customer_id: str) -> Optional[str]:
        c = self.customers.get(customer_id)
        if c is None or c["deleted"]:
            return None
        return c["id"]

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------
    def build_event(self, intent_id: str, kind: str) -> Tuple[bytes, dict]:
        """
        Settle `intent_id` as succeeded|failed|canceled and return the signed
        webhook (payload, headers) announcing it.
        """
        intent = self._intent(intent_id)
        intent["status"] = {
            "succeeded": "succeeded",
            "failed": "requires_payment_method",
            "canceled": "canceled",
        }[kind]
        event = {
            "type": f"payment_intent.{kind}",
            "intent_id": intent_id,
            "amount": intent["amount"],
            "currency": intent["currency"],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        headers = {
            SIGNATURE_HEADER: sign(payload, self.secret),
            "content-type": "application/json",
        }
        return payload, headers

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise WebhookError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise WebhookError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_intent_id(self, event: dict) -> str:
        return event.get("intent_id", "")
