# ticketshop/notify.py
"""
Buyer notifications about ticket availability.

Notifications are collected inside ledger transactions and only handed to a
Notifier after the transaction committed. Delivery is fire-and-forget: a
failing notifier is logged and never affects the shop state.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

import httpx

from .model.identification import ShopIdentification

log = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    QUEUE_PROMOTED = "queue_promoted"
    LOTTERY_WON = "lottery_won"
    LOTTERY_LOST = "lottery_lost"


@dataclass(frozen=True)
class Notification:
    identification: ShopIdentification
    shoppable_id: str
    kind: NotificationKind

    def as_dict(self) -> dict:
        return {
            **self.identification.as_dict(),
            "shoppable_id": self.shoppable_id,
            "kind": self.kind.value,
        }


class Notifier(ABC):
    @abstractmethod
    async def notify(self, notifications: List[Notification]) -> None: ...


class LogNotifier(Notifier):
    async def notify(self, notifications: List[Notification]) -> None:
        for n in notifications:
            log.info("notify %s: %s", n.kind.value, n.as_dict())


class WebhookNotifier(Notifier):
    """
    POSTs {"notifications": [...]} to a delivery service which owns
    email/push.
    """

    def __init__(self, url: str, http: Optional[httpx.AsyncClient] = None,
                 timeout: float = 5.0) -> None:
        self.url = url
        self.http = http
        self.timeout = timeout

    async def notify(self, notifications: List[Notification]) -> None:
        body = {"notifications": [n.as_dict() for n in notifications]}
        if self.http is not None:
            r = await self.http.post(self.url, json=body)
            r.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(self.url, json=body)
            r.raise_for_status()


async def dispatch_notifications(
    notifier: Optional[Notifier], notifications: Iterable[Notification]
) -> None:
    """
    Call only after the transaction that produced `notifications` committed.
    """
    items = list(notifications)
    if not items or notifier is None:
        return
    try:
        await notifier.notify(items)
    except Exception:
        log.exception("failed to deliver %d notification(s)", len(items))
