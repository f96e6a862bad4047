"""
Payment webhook gateway.

Every provider event is claimed by (provider, event_id) before anything else
happens; a claimed key short-circuits to a duplicate acknowledgement. The
first delivery is translated into exactly one order transition.

With the SQL key store the claim and the transition share one transaction.
With redis the claim comes first and is released if the transition raises,
so the provider's redelivery gets another chance.

Domain outcomes (unknown order, order in an unexpected state) are
acknowledged, not raised: providers redeliver on non-2xx and a redelivery
would hit the same state.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional
import json

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, NotFoundError, ValidationError
from .helpers import now_ms
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import orders, refunds, retry
from .model.transitions import load_order

log = logger.bind(component="gateway")

Handler = Callable[[AsyncSession, dict, int], Awaitable[Dict[str, Any]]]


@dataclass
class WebhookResult:
    ok: bool = True
    duplicate: bool = False
    handled: bool = True
    order_found: bool = True
    provider: str = ""
    event_id: str = ""
    event_type: str = ""
    detail: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ------------------------------------------------------------------------------
# payload helpers
# ------------------------------------------------------------------------------

def _obj(payload: dict) -> dict:
    return ((payload.get("data") or {}).get("object")) or {}


def _meta(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _int_or_none(v: Any) -> Optional[int]:
    if v in (None, ""):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _money_to_cents(amount: Optional[dict]) -> Optional[int]:
    if not amount or amount.get("value") in (None, ""):
        return None
    try:
        return int((Decimal(str(amount["value"])) * 100).to_integral_value())
    except InvalidOperation:
        return None


def _paypal_custom(resource: dict) -> dict:
    """custom_id carries either a bare order id or a JSON object."""
    raw = resource.get("custom_id") or resource.get("custom") or ""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {"orderId": raw}
    return data if isinstance(data, dict) else {"orderId": str(data)}


def _paypal_related_order(resource: dict) -> Optional[str]:
    related = ((resource.get("supplementary_data") or {})
               .get("related_ids") or {})
    return related.get("order_id")


# ------------------------------------------------------------------------------
# Stripe handlers
# ------------------------------------------------------------------------------

async def _stripe_checkout_completed(session, payload, now):
    obj = _obj(payload)
    order_id = _meta(obj).get("orderId") or obj.get("client_reference_id")
    if not order_id:
        raise NotFoundError("Order for checkout session", obj.get("id", "?"))
    return await orders._mark_order_paid(
        session, order_id, obj.get("payment_intent"), "stripe",
        _int_or_none(_meta(obj).get("settlementAmount")), now=now)


async def _stripe_intent_succeeded(session, payload, now):
    obj = _obj(payload)
    order_id = _meta(obj).get("orderId")
    if not order_id:
        raise NotFoundError("Order for payment intent", obj.get("id", "?"))
    return await orders._mark_order_paid(
        session, order_id, obj.get("id"), "stripe",
        _int_or_none(_meta(obj).get("settlementAmount")), now=now)


async def _failed(session, order_id: Optional[str], reason: str, now: int):
    if not order_id:
        raise NotFoundError("Order", "(none in payload)")
    order = await load_order(session, order_id)
    if order["retry_count"] > 0:
        return await retry._mark_retry_failed(session, order_id, reason,
                                              now=now)
    return await orders._mark_order_failed(session, order_id, reason,
                                           now=now)


async def _stripe_intent_failed(session, payload, now):
    obj = _obj(payload)
    err = obj.get("last_payment_error") or {}
    return await _failed(session, _meta(obj).get("orderId"),
                         err.get("message") or "payment_failed", now)


async def _stripe_charge_refunded(session, payload, now):
    obj = _obj(payload)
    return await refunds.refund_orders_by_transaction(
        session, "stripe", obj.get("payment_intent") or "",
        _int_or_none(obj.get("amount_refunded")), "stripe_refund", now=now)


async def _stripe_dispute_created(session, payload, now):
    obj = _obj(payload)
    return await orders._mark_order_disputed(
        session, "stripe", obj.get("id") or "",
        transaction_id=obj.get("payment_intent"),
        reason=obj.get("reason"),
        amount_cents=_int_or_none(obj.get("amount")) or 0, now=now)


async def _stripe_dispute_closed(session, payload, now):
    obj = _obj(payload)
    return await orders._resolve_dispute(
        session, obj.get("id") or "", obj.get("status") or "", now=now)


# ------------------------------------------------------------------------------
# PayPal handlers
# ------------------------------------------------------------------------------

async def _paypal_capture_completed(session, payload, now):
    res = payload.get("resource") or {}
    custom = _paypal_custom(res)
    order_id = custom.get("orderId")
    if not order_id:
        raise NotFoundError("Order for capture", res.get("id", "?"))
    paypal_order = custom.get("paypalOrderId") or _paypal_related_order(res)
    return await orders._mark_order_paid(
        session, order_id, paypal_order, "paypal",
        _int_or_none(custom.get("settlementAmount")), now=now)


async def _paypal_capture_denied(session, payload, now):
    res = payload.get("resource") or {}
    return await _failed(session, _paypal_custom(res).get("orderId"),
                         res.get("status_details", {}).get("reason")
                         or "capture_denied", now)


async def _paypal_capture_refunded(session, payload, now):
    res = payload.get("resource") or {}
    custom = _paypal_custom(res)
    amount = _money_to_cents(res.get("amount"))
    paypal_order = custom.get("paypalOrderId") or _paypal_related_order(res)
    if paypal_order:
        return await refunds.refund_orders_by_transaction(
            session, "paypal", paypal_order, amount, "paypal_refund",
            now=now)
    if custom.get("orderId"):
        return await refunds.refund_one(session, custom["orderId"], amount,
                                        "paypal_refund", now)
    log.warning(f"paypal refund {res.get('id')} carries no order reference")
    return {"success": False, "error": "order_not_found"}


async def _paypal_dispute_created(session, payload, now):
    res = payload.get("resource") or {}
    txs = res.get("disputed_transactions") or [{}]
    custom = _paypal_custom(txs[0])
    return await orders._mark_order_disputed(
        session, "paypal", res.get("dispute_id") or "",
        order_id=custom.get("orderId"),
        transaction_id=(custom.get("paypalOrderId")
                        or txs[0].get("seller_transaction_id")),
        reason=res.get("reason"),
        amount_cents=_money_to_cents(res.get("dispute_amount")) or 0,
        now=now)


async def _paypal_dispute_resolved(session, payload, now):
    res = payload.get("resource") or {}
    outcome = (res.get("dispute_outcome") or {}).get("outcome_code") or ""
    return await orders._resolve_dispute(
        session, res.get("dispute_id") or "", outcome, now=now)


# ------------------------------------------------------------------------------
# MockPay handlers
# ------------------------------------------------------------------------------

async def _mock_succeeded(session, payload, now):
    return await orders._mark_order_paid(
        session, payload.get("order_id") or "", None, "mock",
        _int_or_none(payload.get("settlement_amount")), now=now)


async def _mock_failed(session, payload, now):
    return await _failed(session, payload.get("order_id"),
                         payload.get("type", "payment.failed"), now)


async def _mock_refunded(session, payload, now):
    return await refunds.refund_one(
        session, payload.get("order_id") or "",
        _int_or_none(payload.get("amount")), "mock_refund", now)


ROUTES: Dict[str, Dict[str, Handler]] = {
    "stripe": {
        "checkout.session.completed": _stripe_checkout_completed,
        "payment_intent.succeeded": _stripe_intent_succeeded,
        "payment_intent.payment_failed": _stripe_intent_failed,
        "charge.refunded": _stripe_charge_refunded,
        "charge.dispute.created": _stripe_dispute_created,
        "charge.dispute.closed": _stripe_dispute_closed,
    },
    "paypal": {
        "PAYMENT.CAPTURE.COMPLETED": _paypal_capture_completed,
        "PAYMENT.SALE.COMPLETED": _paypal_capture_completed,
        "PAYMENT.CAPTURE.DENIED": _paypal_capture_denied,
        "PAYMENT.CAPTURE.REFUNDED": _paypal_capture_refunded,
        "CUSTOMER.DISPUTE.CREATED": _paypal_dispute_created,
        "CUSTOMER.DISPUTE.RESOLVED": _paypal_dispute_resolved,
    },
    "mock": {
        "payment.succeeded": _mock_succeeded,
        "payment.failed": _mock_failed,
        "payment.canceled": _mock_failed,
        "payment.refunded": _mock_refunded,
    },
}


class WebhookGateway:
    def __init__(self, db: GatedAsyncSession, events) -> None:
        self.db = db
        self.events = events

    async def handle(self, provider: str, event_id: str, event_type: str,
                     payload: dict) -> WebhookResult:
        if provider not in ROUTES:
            raise ValidationError(f"Unknown provider: {provider}")
        if not event_id:
            raise ValidationError("Webhook event carries no id")

        out = WebhookResult(provider=provider, event_id=event_id,
                            event_type=event_type)
        handler = ROUTES[provider].get(event_type)
        now = now_ms()

        async with timeit(f"webhook.{provider}"):
            if self.events.in_transaction:
                async with self.db.gated():
                    async with self.db.session.begin():
                        fresh = await self.events.claim(
                            self.db.session, provider, event_id, event_type,
                            now)
                        if not fresh:
                            return self._duplicate(out)
                        await self._apply(handler, payload, now, out)
                        await self.events.attach_order(
                            self.db.session, provider, event_id,
                            out.result.get("order_id"))
                return out

            fresh = await self.events.claim(None, provider, event_id,
                                            event_type, now)
            if not fresh:
                return self._duplicate(out)
            try:
                async with self.db.gated():
                    async with self.db.session.begin():
                        await self._apply(handler, payload, now, out)
            except Exception:
                log.exception(f"{provider} event {event_id} failed, "
                              f"releasing its key")
                await self.events.forget(provider, event_id)
                raise
            return out

    def _duplicate(self, out: WebhookResult) -> WebhookResult:
        log.info(f"{out.provider} event {out.event_id} ({out.event_type}) "
                 f"already processed")
        out.duplicate = True
        return out

    async def _apply(self, handler: Optional[Handler], payload: dict,
                     now: int, out: WebhookResult) -> None:
        if handler is None:
            log.info(f"{out.provider} event type {out.event_type} "
                     f"recorded, not handled")
            out.handled = False
            return
        # a refused handler rolls back to the savepoint; the claimed key
        # still commits with the outer transaction
        try:
            async with self.db.session.begin_nested():
                out.result = await handler(self.db.session, payload, now)
        except NotFoundError as e:
            log.warning(f"{out.provider} event {out.event_id}: {e.message}")
            out.handled = False
            out.order_found = False
            out.detail = e.message
            return
        except ConflictError as e:
            log.warning(f"{out.provider} event {out.event_id}: {e.message}")
            out.handled = False
            out.detail = e.message
            return
        if out.result.get("error") == "order_not_found":
            out.order_found = False
