# ticketshop/payments/stripe.py
"""
Stripe over its REST API, using the app's shared httpx client.

Only the handful of calls the shop needs: payment intents, customers and
webhook signature verification.
"""
from __future__ import annotations
import hashlib
import hmac
import json
import time
from typing import Dict, Optional

import httpx

from .. import config
from ..errors import ProviderError, WebhookError
from .base import IntentResult, PaymentProvider

API_BASE = "https://api.stripe.com/v1"
SIGNATURE_HEADER = "stripe-signature"
WEBHOOK_TOLERANCE_SECONDS = 300

_EVENT_KINDS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}


class StripeProvider(PaymentProvider):
    def __init__(
        self,
        http: httpx.AsyncClient,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: str = API_BASE,
    ) -> None:
        self.http = http
        self.secret_key = secret_key or config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or config.STRIPE_WEBHOOK_SECRET
        self.api_base = api_base.rstrip("/")

    async def _request(
        self, method: str, path: str,
        data: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key
        try:
            return await self.http.request(
                method, f"{self.api_base}{path}", data=data, headers=headers,
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Payment provider unreachable: {e}") from e

    @staticmethod
    def _json(r: httpx.Response) -> dict:
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code >= 400:
            msg = (body.get("error") or {}).get("message") or r.reason_phrase
            raise ProviderError(f"Payment provider error: {msg}")
        return body

    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        data = {
            "amount": str(amount),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        if customer_id:
            data["customer"] = customer_id
        for k, v in (metadata or {}).items():
            data[f"metadata[{k}]"] = v
        body = self._json(await self._request(
            "POST", "/payment_intents", data, idempotency_key
        ))
        return {"id": body["id"], "client_secret": body["client_secret"]}

    async def retrieve_intent(self, intent_id: str) -> str:
        body = self._json(
            await self._request("GET", f"/payment_intents/{intent_id}")
        )
        return body["status"]

    async def cancel_intent(self, intent_id: str) -> None:
        self._json(
            await self._request("POST", f"/payment_intents/{intent_id}/cancel")
        )

    async def create_customer(
        self, member_id: str, email: Optional[str] = None
    ) -> str:
        data = {"metadata[member_id]": member_id}
        if email:
            data["email"] = email
        body = self._json(await self._request("POST", "/customers", data))
        return body["id"]

    async def retrieve_customer(self, customer_id: str) -> Optional[str]:
        r = await self._request("GET", f"/customers/{customer_id}")
        if r.status_code == 404:
            return None
        body = self._json(r)
        if body.get("deleted"):
            return None
        return body["id"]

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------
    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        header = headers.get(SIGNATURE_HEADER, "")
        parts: Dict[str, list] = {}
        for item in header.split(","):
            k, _, v = item.strip().partition("=")
            parts.setdefault(k, []).append(v)
        ts = (parts.get("t") or [""])[0]
        if not ts.isdigit() or not parts.get("v1"):
            raise WebhookError("Invalid signature header")
        if abs(time.time() - int(ts)) > WEBHOOK_TOLERANCE_SECONDS:
            raise WebhookError("Signature timestamp outside tolerance")

        signed = ts.encode() + b"." + payload
        expected = hmac.new(
            self.webhook_secret.encode(), signed, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, s) for s in parts["v1"]):
            raise WebhookError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise WebhookError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return _EVENT_KINDS.get(event.get("type", ""), "")

    def event_intent_id(self, event: dict) -> str:
        return ((event.get("data") or {}).get("object") or {}).get("id", "")
