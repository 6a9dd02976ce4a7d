# payments/__init__.py
import os
from typing import Optional

import httpx

from .base import PaymentProvider, IntentResult, TERMINAL_STATUSES

BACKEND = os.getenv("PAYMENT_PROVIDER", "mock").lower()  # 'mock' | 'stripe'

if BACKEND == "stripe":
    from .stripe import StripeProvider as _Provider
else:
    from .mockpay import MockPay as _Provider


# Factory keeps server.py simple and constructor-agnostic:
def new_provider(*, http: Optional[httpx.AsyncClient] = None):
    if BACKEND == "stripe":
        if http is None:
            raise RuntimeError("StripeProvider requires http=httpx.AsyncClient")
        return _Provider(http=http)
    return _Provider()


# Optional: also export the selected class name for typing/imports
Provider = _Provider
__all__ = [
    "PaymentProvider", "IntentResult", "TERMINAL_STATUSES",
    "Provider", "new_provider", "BACKEND",
]
