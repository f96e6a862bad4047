from __future__ import annotations
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy import text
from starlette.middleware.sessions import SessionMiddleware

from .config import (
    DATABASE_URL, HOST, PORT, REDIS_URL, REDIS_MAX_CONN, NOTIFY_URL,
    SWEEP_INTERVAL_SECONDS, SESSION_SECRET, ADMIN_USERNAME, ADMIN_PASSWORD,
)
from .errors import DomainError, ValidationError
from .gateway import WebhookGateway
from .helpers import ct_equal, to_iso
from .infra import timings
from .infra.log import setup_logging
from .infra.sql import GatedAsyncSession, make_async_engine, open_session
from .infra.timings import timeit
from .model import (
    cash, inventory, orders, platformdebt, refunds, retry, staff,
)
from .model.db import Base
from .model.webhookevents import (
    WebhookEventStore, new_store, BACKEND as WEBHOOK_BACKEND,
)
from .providers import PaymentAdapter, StripeAdapter, PayPalAdapter, MockPay
from .sweeper import Sweeper

setup_logging()
log = logger.bind(component="server")

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncIterator[GatedAsyncSession]:
    async with open_session(SessionAsync, gated) as db:
        yield db


stripe_adapter: PaymentAdapter = StripeAdapter()
paypal_adapter: PaymentAdapter = PayPalAdapter()
mock_adapter: PaymentAdapter = MockPay()

app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def webhook_events() -> WebhookEventStore:
    if WEBHOOK_BACKEND == "redis":
        return new_store(r=app.state.redis)
    return new_store()


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    W = 'Redis' if WEBHOOK_BACKEND == 'redis' else 'SQL (same transaction)'
    log.info("BoxOffice is starting up...")
    log.info(f"   - Database: {engine.url.render_as_string(hide_password=True)}")
    log.info(f"   - Webhook key store: {W}")


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if WEBHOOK_BACKEND == 'redis':
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweeper = Sweeper(
        SessionAsync, gated, webhook_events(),
        http=app.state.http, notify_url=NOTIFY_URL,
        interval=SWEEP_INTERVAL_SECONDS,
    )
    app.state.sweeper.start()


@app.on_event("shutdown")
async def _sweeper_stop():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
        app.state.sweeper = None


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


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path}: {exc}")
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code.value},
    )


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    user = request.session.get("admin_user")
    if not user:
        raise HTTPException(status_code=401, detail="admin login required")
    return user


def _str(payload: dict, key: str, required: bool = True) -> Optional[str]:
    v = payload.get(key)
    if v is None or (isinstance(v, str) and not v.strip()):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(v, str):
        raise ValidationError(f"{key} must be a string")
    return v.strip()


def _int(payload: dict, key: str, required: bool = True) -> Optional[int]:
    v = payload.get(key)
    if v is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValidationError(f"{key} must be an integer")
    return v


def _buyer(payload: dict) -> Dict[str, Any]:
    buyer = payload.get("buyer")
    if not isinstance(buyer, dict):
        raise ValidationError("buyer is required")
    return buyer


def _tickets(payload: dict) -> list:
    tickets = payload.get("tickets")
    if not isinstance(tickets, list) or not all(
            isinstance(t, dict) for t in tickets):
        raise ValidationError("tickets must be a list of objects")
    return tickets


# ----------------------------
# Webhooks
# ----------------------------
async def _handle_webhook(adapter: PaymentAdapter, request: Request,
                          db: GatedAsyncSession,
                          events: WebhookEventStore) -> Dict[str, Any]:
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    event_id, event_type = adapter.event_ids(event)
    if not event_id:
        raise ValidationError("missing event id")

    gw = WebhookGateway(db, events)
    res = await gw.handle(adapter.provider, event_id, event_type, event)
    return res.to_dict()


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    events: WebhookEventStore = Depends(webhook_events),
):
    return await _handle_webhook(stripe_adapter, request, db, events)


@app.post("/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    events: WebhookEventStore = Depends(webhook_events),
):
    return await _handle_webhook(paypal_adapter, request, db, events)


@app.post("/payments/webhook")
async def mockpay_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    events: WebhookEventStore = Depends(webhook_events),
):
    return await _handle_webhook(mock_adapter, request, db, events)


# ----------------------------
# API: digital orders
# ----------------------------
@app.post("/api/orders")
async def create_order(payload: dict, db: GatedAsyncSession = Depends(get_db)):
    kw = {}
    if payload.get("max_retries") is not None:
        kw["max_retries"] = _int(payload, "max_retries")
    return await orders.create_order(
        db,
        _str(payload, "event_id"),
        _buyer(payload),
        _tickets(payload),
        payment_method=_str(payload, "payment_method", False) or "STRIPE",
        **kw,
    )


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: GatedAsyncSession = Depends(get_db)):
    return await orders.get_order(db, order_id)


@app.post("/api/orders/{order_id}/paid")
async def mark_paid(
    order_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await orders.mark_order_paid(
        db, order_id,
        _str(payload, "payment_intent_id", False),
        _str(payload, "provider", False) or "stripe",
        _int(payload, "settlement_cents", False),
    )


@app.post("/api/orders/{order_id}/failed")
async def mark_failed(
    order_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await orders.mark_order_failed(db, order_id,
                                          _str(payload, "reason", False))


@app.post("/api/orders/{order_id}/retry")
async def prepare_retry(order_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
    async with timeit("retry.prepare"):
        return await retry.prepare_order_for_retry(db, order_id)


@app.post("/api/orders/{order_id}/retry-failed")
async def retry_failed(
    order_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await retry.mark_retry_failed(db, order_id,
                                         _str(payload, "reason", False))


@app.post("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, payload: dict,
                       db: GatedAsyncSession = Depends(get_db)):
    return await orders.cancel_order(db, order_id,
                                     _str(payload, "reason", False))


@app.post("/api/refunds")
async def refund(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    amount = _int(payload, "amount_cents", False)
    reason = _str(payload, "reason", False)
    order_id = _str(payload, "order_id", False)
    if order_id:
        return await refunds.refund_order(db, order_id, amount, reason)
    return await orders.mark_order_refunded(
        db, _str(payload, "payment_intent_id"), amount, reason,
        _str(payload, "provider", False) or "stripe",
    )


# ----------------------------
# API: cash orders
# ----------------------------
@app.post("/api/cash-orders")
async def create_cash_order(payload: dict,
                            db: GatedAsyncSession = Depends(get_db)):
    return await cash.create_cash_order(
        db, _str(payload, "event_id"), _buyer(payload), _tickets(payload))


@app.post("/api/cash-orders/{order_id}/approve")
async def approve_cash_order(order_id: str, payload: dict,
                             db: GatedAsyncSession = Depends(get_db)):
    return await cash.approve_cash_order(db, order_id,
                                         _str(payload, "staff_id"))


@app.post("/api/cash-orders/{order_id}/organizer-approve")
async def organizer_approve_cash_order(
    order_id: str, request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    # organizer identity is asserted by the upstream auth layer
    return await cash.organizer_approve_cash_order(
        db, order_id, request.headers.get("x-organizer-id"),
        is_admin=is_admin(request),
    )


@app.post("/api/cash-orders/{order_id}/activation-code")
async def activation_code(order_id: str, payload: dict,
                          db: GatedAsyncSession = Depends(get_db)):
    return await cash.generate_cash_activation_code(
        db, order_id, _str(payload, "staff_id"))


@app.post("/api/tickets/activate")
async def activate_tickets(payload: dict,
                           db: GatedAsyncSession = Depends(get_db)):
    return await cash.activate_tickets(
        db, _str(payload, "code"),
        _str(payload, "email", False), _str(payload, "name", False))


@app.get("/api/tiers/{tier_id}/availability")
async def tier_availability(tier_id: str,
                            db: GatedAsyncSession = Depends(get_db)):
    async with timeit("inventory.availability"):
        async with db.gated():
            async with db.session.begin():
                return await inventory.availability(db.session, tier_id)


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login(request: Request, payload: dict):
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if ct_equal(username, ADMIN_USERNAME) and \
            ct_equal(password, ADMIN_PASSWORD):
        request.session["admin_user"] = username
        return {"ok": True, "user": username}
    log.warning(f"failed admin login for {username!r}")
    raise HTTPException(status_code=401, detail="Invalid credentials.")


@app.post("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.post("/api/admin/staff")
async def add_staff(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    value = payload.get("commission_value")
    parent_pct = payload.get("parent_commission_percent")
    for k, v in (("commission_value", value),
                 ("parent_commission_percent", parent_pct)):
        if v is not None and (not isinstance(v, (int, float))
                              or isinstance(v, bool)):
            raise ValidationError(f"{k} must be a number")
    staff_id = await staff.add_staff(
        db,
        organizer_id=_str(payload, "organizer_id"),
        staff_user_id=_str(payload, "staff_user_id"),
        name=_str(payload, "name"),
        event_id=_str(payload, "event_id", False),
        role=_str(payload, "role", False) or staff.ROLE_SELLER,
        assigned_by_staff_id=_str(payload, "assigned_by_staff_id", False),
        commission_type=_str(payload, "commission_type", False),
        commission_value=value,
        parent_commission_percent=parent_pct,
        can_assign_sub_sellers=bool(payload.get("can_assign_sub_sellers")),
        max_sub_sellers=_int(payload, "max_sub_sellers", False),
        accept_cash_in_person=bool(payload.get("accept_cash_in_person")),
    )
    return {"staff_id": staff_id}


@app.post("/api/admin/orders/{order_id}/max-retries")
async def admin_max_retries(
    order_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await retry.set_order_max_retries(db, order_id,
                                             _int(payload, "max_retries"))


@app.post("/api/admin/orders/{order_id}/cancel-retry")
async def admin_cancel_retry(
    order_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await retry.cancel_retry_eligibility(
        db, order_id, _str(payload, "reason", False))


@app.post("/api/admin/disputes/{dispute_id}/resolve")
async def admin_resolve_dispute(
    dispute_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await orders.resolve_dispute(db, dispute_id,
                                        _str(payload, "outcome_code"))


@app.get("/api/admin/debt/{organizer_id}")
async def admin_get_debt(
    organizer_id: str, limit: int = 50,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    out = await platformdebt.get_debt(db, organizer_id,
                                      limit=max(1, min(limit, 500)))
    for k in ("last_cash_order_at", "last_settlement_at"):
        out[k] = to_iso(out[k])
    return out


@app.get("/api/admin/debt/{organizer_id}/verify")
async def admin_verify_debt(
    organizer_id: str,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    return await platformdebt.verify_balance(db, organizer_id)


@app.post("/api/admin/debt/{organizer_id}/manual-payment")
async def admin_manual_payment(
    organizer_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
):
    return await platformdebt.record_manual_payment(
        db, organizer_id, _int(payload, "amount_cents"), processed_by=admin,
        notes=_str(payload, "notes", False))


@app.post("/api/admin/debt/{organizer_id}/adjustment")
async def admin_adjustment(
    organizer_id: str, payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
):
    return await platformdebt.admin_adjustment(
        db, organizer_id, _int(payload, "adjustment_cents"),
        notes=_str(payload, "notes"), processed_by=admin)


@app.get("/api/admin/orders")
async def admin_orders(
    limit: int = 200, status: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
    _admin: str = Depends(require_admin),
):
    q = """
        SELECT id, order_number, event_id, status, payment_method,
               total_cents, buyer_email, retry_count, max_retries,
               created_at, paid_at
        FROM orders
    """
    params: Dict[str, Any] = {"limit": max(1, min(limit, 500))}
    if status:
        q += " WHERE status = :status"
        params["status"] = status.upper()
    q += " ORDER BY created_at DESC LIMIT :limit"
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text(q), params)).mappings().all()
    items = []
    for r in rows:
        item = dict(r)
        item["created_at"] = to_iso(r["created_at"])
        item["paid_at"] = to_iso(r["paid_at"])
        items.append(item)
    return {"items": items, "limit": params["limit"]}


@app.get("/api/admin/timings")
async def admin_timings(_admin: str = Depends(require_admin)):
    return {"items": timings.snapshot()}


@app.post("/api/admin/sweep")
async def admin_sweep(request: Request,
                      _admin: str = Depends(require_admin)):
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        sweeper = Sweeper(SessionAsync, gated, webhook_events(),
                          http=getattr(request.app.state, "http", None),
                          notify_url=NOTIFY_URL, interval=0)
    return await sweeper.run_once()


def main():
    # single worker: the DB gate and the sweeper are per process
    uvicorn.run("boxoffice.server:app", host=HOST, port=PORT,
                log_config=None, proxy_headers=True)
