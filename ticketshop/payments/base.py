from abc import ABC, abstractmethod
from typing import Dict, Optional, TypedDict

# intent statuses that can no longer be paid or canceled
TERMINAL_STATUSES = ("succeeded", "canceled")


# ----------------------------
# Payment Provider Interface
# ----------------------------
class IntentResult(TypedDict):
    id: str
    client_secret: str


class PaymentProvider(ABC):
    """
    Every call raises ProviderError when the provider fails or rejects it.
    """

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult: ...

    # provider status string, e.g. "requires_payment_method" | "succeeded"
    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> str: ...

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> None: ...

    @abstractmethod
    async def create_customer(
        self, member_id: str, email: Optional[str] = None
    ) -> str: ...

    # None if the customer is unknown or deleted at the provider
    @abstractmethod
    async def retrieve_customer(self, customer_id: str) -> Optional[str]: ...

    # raises WebhookError
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | anything else is ignored
    @abstractmethod
    def event_kind(self, event: dict) -> str: ...

    @abstractmethod
    def event_intent_id(self, event: dict) -> str: ...
