from __future__ import annotations
import logging
import os
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .errors import (
    ConcurrencyConflict, ProviderError, ShopError, ValidationError
)
from .helpers import ct_equal, new_id
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import snapshot, timeit
from .model import gracetimers
from .model.cart import add_ticket_to_cart, cart_load
from .model.db import Base
from .model.identification import ShopIdentification
from .model.purchase import (
    on_payment_canceled, on_payment_success, purchase_cart
)
from .model.scheduler import GraceScheduler
from .model.tickets import get_ticket, get_tickets
from .notify import LogNotifier, Notifier, WebhookNotifier
from .payments import BACKEND as PAYMENT_BACKEND
from .payments import PaymentProvider, new_provider
from .payments.mockpay import MockPay

log = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (ConcurrencyConflict, 409),
    (ProviderError, 502),
)


def _status_for(err: ShopError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(err, cls):
            return status
    return 500


def create_app(
    database_url: Optional[str] = None,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    engine, SessionAsync, _, gated = make_async_engine(
        database_url or config.DATABASE_URL
    )

    app = FastAPI(
        title="Ticketshop",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)

    async def get_db() -> GatedAsyncSession:
        async with SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=gated)

    def identification(request: Request) -> ShopIdentification:
        member_id = request.session.get("member_id")
        if member_id:
            return ShopIdentification(member_id=member_id)
        code = request.session.get("external_code")
        if not code:
            code = new_id()
            request.session["external_code"] = code
        return ShopIdentification(external_code=code)

    def require_admin(request: Request) -> None:
        token = request.headers.get("x-admin-token", "")
        if not config.ADMIN_TOKEN or not ct_equal(token, config.ADMIN_TOKEN):
            raise HTTPException(403, detail="forbidden")

    @app.exception_handler(ShopError)
    async def _shop_error(request: Request, err: ShopError):
        return ORJSONResponse(
            status_code=_status_for(err),
            content={"code": err.code.value, "message": err.message},
        )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        log.info("Ticketshop is starting up (payments: %s, grace timers: %s)",
                 PAYMENT_BACKEND, gracetimers.BACKEND)

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=512, max_keepalive_connections=512
            ),
        )
        app.state.provider = provider or new_provider(http=app.state.http)
        if notifier is not None:
            app.state.notifier = notifier
        elif config.NOTIFY_WEBHOOK_URL:
            app.state.notifier = WebhookNotifier(config.NOTIFY_WEBHOOK_URL,
                                                 http=app.state.http)
        else:
            app.state.notifier = LogNotifier()

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if gracetimers.BACKEND == "redis":
            app.state.redis = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _scheduler_start():
        registry = gracetimers.new_registry(r=app.state.redis)
        scheduler = GraceScheduler(SessionAsync, gated, registry,
                                   notifier=app.state.notifier)
        app.state.scheduler = scheduler
        await scheduler.recover()
        scheduler.start_periodic_sweep(config.EXPIRY_SWEEP_INTERVAL)

    @app.on_event("shutdown")
    async def _scheduler_stop():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            await scheduler.close()
            app.state.scheduler = None

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    # ----------------------------
    # API: tickets
    # ----------------------------
    @app.get("/api/tickets")
    async def api_tickets(
        db: GatedAsyncSession = Depends(get_db),
        ident: ShopIdentification = Depends(identification),
    ):
        async with timeit("tickets.list"):
            items = await get_tickets(db, ident)
        return {"items": items}

    @app.get("/api/tickets/{shoppable_id}")
    async def api_ticket(
        shoppable_id: str,
        db: GatedAsyncSession = Depends(get_db),
        ident: ShopIdentification = Depends(identification),
    ):
        async with timeit("tickets.get"):
            ticket = await get_ticket(db, shoppable_id, ident)
        if ticket is None:
            raise HTTPException(404, detail="ticket not found")
        return ticket

    # ----------------------------
    # API: cart
    # ----------------------------
    @app.post("/api/cart/purchase")
    async def api_purchase(
        payload: dict,
        db: GatedAsyncSession = Depends(get_db),
        ident: ShopIdentification = Depends(identification),
    ):
        key = (payload.get("idempotency_key") or "").strip() or new_id()
        async with timeit("cart.purchase"):
            result = await purchase_cart(db, app.state.provider, ident, key)
        return {
            "client_secret": result.client_secret,
            "amount": result.amount,
            "currency": config.CURRENCY,
            "intent_id": result.intent_id,
            "message": result.message,
        }

    @app.post("/api/cart/{shoppable_id}")
    async def api_add_to_cart(
        shoppable_id: str,
        db: GatedAsyncSession = Depends(get_db),
        ident: ShopIdentification = Depends(identification),
    ):
        async with timeit("cart.add"):
            result = await add_ticket_to_cart(
                db, shoppable_id, ident,
                scheduler=app.state.scheduler,
                notifier=app.state.notifier,
            )
        return result.as_dict()

    @app.get("/api/cart")
    async def api_cart(
        db: GatedAsyncSession = Depends(get_db),
        ident: ShopIdentification = Depends(identification),
    ):
        async with timeit("cart.load"):
            return await cart_load(db, ident, notifier=app.state.notifier)

    # ----------------------------
    # Webhook endpoint (shared for Mock/Stripe)
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(
        request: Request,
        db: GatedAsyncSession = Depends(get_db),
    ):
        payload = await request.body()
        headers = dict(request.headers)

        pay: PaymentProvider = app.state.provider
        event = pay.verify_webhook(payload, headers)
        kind = pay.event_kind(event)  # succeeded | failed | canceled
        intent_id = pay.event_intent_id(event)
        if not intent_id:
            raise HTTPException(400, detail="missing payment intent id")

        if kind == "succeeded":
            async with timeit("payments.succeeded"):
                marked = await on_payment_success(db, intent_id)
        elif kind in ("failed", "canceled"):
            async with timeit("payments.canceled"):
                marked = await on_payment_canceled(db, intent_id)
        else:
            # event types we did not subscribe to
            return {"ok": True, "ignored": True}
        return {"ok": True, "kind": kind, "updated": marked}

    # ----------------------------
    # MockPay: settle an intent and deliver its webhook
    # ----------------------------
    @app.post("/mockpay/{intent_id}/emit")
    async def mockpay_emit(intent_id: str, t: str = Form(...)):
        pay = app.state.provider
        if not isinstance(pay, MockPay):
            raise HTTPException(404, detail="mock payments disabled")
        if t not in {"succeeded", "failed", "canceled"}:
            raise HTTPException(400, detail="invalid kind")

        payload, headers = pay.build_event(intent_id, t)
        client_http: httpx.AsyncClient = app.state.http
        try:
            r = await client_http.post(config.MOCK_WEBHOOK_URL,
                                       content=payload, headers=headers)
            delivered = r.status_code < 400
        except httpx.HTTPError as e:
            # the intent is settled either way; the webhook can be re-emitted
            log.warning("mock webhook delivery failed: %s", e)
            delivered = False
        return {"ok": True, "intent_id": intent_id, "delivered": delivered}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def api_admin_timings(reset: bool = False):
        return {"items": snapshot(reset=reset)}

    return app


app = create_app()
