"""
Payments

The gateway adapter (Stripe) and the reconciliation of its results onto
orders. Gateway events can arrive late, twice, or racing the browser's own
confirmation; every write here is conditional on the order's current
payment state so re-delivery is a no-op.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol

import stripe
from pydantic import BaseModel, Field

from catalog import Catalog
from database import Store, to_key
from errors import (
    EmptyCartError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentVerificationError,
    ValidationError,
)
from orders import CheckoutResult, OrderService, sanitize_phone
from pricing import calculate_total, format_price, from_minor_units, money, to_minor_units
from schemas import (
    ORDER_COLLECTION,
    SETTLED_PAYMENT_STATUSES,
    Order,
    OrderStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def normalize_refund_reason(reason: Optional[str]) -> str:
    return reason if reason in REFUND_REASONS else "requested_by_customer"


# --------------------- Gateway types ---------------------

class PaymentIntentRef(BaseModel):
    id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str


class PaymentIntentInfo(BaseModel):
    id: str
    status: str = ""
    amount: int = 0
    latest_charge: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_error: Optional[str] = None

    @property
    def order_ids(self) -> List[str]:
        raw = self.metadata.get("order_ids") or ""
        return [part.strip() for part in raw.split(",") if part.strip()]


class ChargeInfo(BaseModel):
    id: str
    amount: int = 0
    amount_refunded: int = 0
    refunds: List[int] = Field(default_factory=list)
    payment_intent: Optional[str] = None

    @property
    def total_refunded(self) -> int:
        # The embedded refunds list is paginated; amount_refunded is the charge total.
        return max(sum(self.refunds), self.amount_refunded)


class GatewayEvent(BaseModel):
    id: str = ""
    type: str
    intent: Optional[PaymentIntentInfo] = None
    charge: Optional[ChargeInfo] = None


class RefundResult(BaseModel):
    id: str
    amount: int
    status: str = ""


def intent_from_object(obj: Mapping[str, Any]) -> PaymentIntentInfo:
    latest_charge = obj.get("latest_charge")
    if isinstance(latest_charge, Mapping):
        latest_charge = latest_charge.get("id")
    last_error = obj.get("last_payment_error") or {}
    return PaymentIntentInfo(
        id=obj.get("id", ""),
        status=obj.get("status") or "",
        amount=int(obj.get("amount") or 0),
        latest_charge=latest_charge,
        metadata={str(k): str(v) for k, v in dict(obj.get("metadata") or {}).items()},
        last_error=last_error.get("message") if isinstance(last_error, Mapping) else None,
    )


def charge_from_object(obj: Mapping[str, Any]) -> ChargeInfo:
    refunds = obj.get("refunds") or {}
    data = refunds.get("data") if isinstance(refunds, Mapping) else None
    payment_intent = obj.get("payment_intent")
    if isinstance(payment_intent, Mapping):
        payment_intent = payment_intent.get("id")
    return ChargeInfo(
        id=obj.get("id", ""),
        amount=int(obj.get("amount") or 0),
        amount_refunded=int(obj.get("amount_refunded") or 0),
        refunds=[int(r.get("amount") or 0) for r in data or []],
        payment_intent=payment_intent,
    )


def event_from_payload(data: Mapping[str, Any]) -> GatewayEvent:
    event_type = data.get("type", "")
    obj = (data.get("data") or {}).get("object") or {}
    event = GatewayEvent(id=data.get("id", ""), type=event_type)
    if event_type.startswith("payment_intent."):
        event.intent = intent_from_object(obj)
    elif event_type.startswith("charge."):
        event.charge = charge_from_object(obj)
    return event


class PaymentGateway(Protocol):
    publishable_key: Optional[str]

    def create_payment_intent(
        self, amount: int, currency: str, metadata: Dict[str, str], receipt_email: Optional[str] = None
    ) -> PaymentIntentRef: ...

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo: ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent: ...

    def refund(self, charge_id: str, amount: Optional[int], reason: str) -> RefundResult: ...


class StripeGateway:
    """PaymentGateway backed by the stripe SDK. Keys are passed per call."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        publishable_key: Optional[str] = None,
        statement_descriptor: str = "",
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key
        self.statement_descriptor = statement_descriptor[:22]

    @staticmethod
    def _error(e: Exception) -> GatewayError:
        logger.error("Stripe error (%s): %s", type(e).__name__, e)
        if isinstance(e, stripe.CardError):
            return GatewayError(e.user_message or "Your card was declined.", "card_error")
        if isinstance(e, stripe.RateLimitError):
            return GatewayError("Too many requests. Please try again in a moment.", "rate_limit")
        if isinstance(e, stripe.AuthenticationError):
            return GatewayError(
                "Payment configuration error. Please contact the site administrator.", "authentication_error"
            )
        if isinstance(e, stripe.APIConnectionError):
            return GatewayError("Network error. Please check your connection and try again.", "api_connection")
        return GatewayError()

    def create_payment_intent(
        self, amount: int, currency: str, metadata: Dict[str, str], receipt_email: Optional[str] = None
    ) -> PaymentIntentRef:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if self.statement_descriptor:
            params["statement_descriptor_suffix"] = self.statement_descriptor
        if receipt_email:
            params["receipt_email"] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            raise self._error(e)
        return PaymentIntentRef(
            id=intent.id, client_secret=intent.client_secret, amount=amount, currency=currency.lower()
        )

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._error(e)
        return intent_from_object(intent)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not self.webhook_secret:
            logger.error("Webhook received but no webhook secret is configured")
            raise PaymentVerificationError()
        if not signature:
            raise PaymentVerificationError("Missing signature.")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise PaymentVerificationError()
        except ValueError as e:
            logger.warning("Webhook payload could not be parsed: %s", e)
            raise PaymentVerificationError("Invalid payload.")
        return event_from_payload(json.loads(payload))

    def refund(self, charge_id: str, amount: Optional[int], reason: str) -> RefundResult:
        params: Dict[str, Any] = {"charge": charge_id, "reason": normalize_refund_reason(reason)}
        if amount is not None:
            params["amount"] = amount
        try:
            refund = stripe.Refund.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            raise self._error(e)
        return RefundResult(id=refund.id, amount=refund.amount, status=refund.status or "")


# --------------------- Reconciliation ---------------------

class PaymentIntentResponse(BaseModel):
    skip_payment: bool = False
    message: str = ""
    client_secret: Optional[str] = None
    payment_intent: Optional[str] = None
    publishable_key: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    formatted_total: str = ""


class PaymentService:
    def __init__(
        self,
        store: Store,
        catalog: Catalog,
        orders: OrderService,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.orders = orders
        self.gateway = gateway

    @property
    def enabled(self) -> bool:
        return self.gateway is not None

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # --------------------- synchronous checkout path ---------------------

    def create_payment_intent(
        self,
        client_album_id: str,
        cart_token: Optional[str],
        customer_name: str = "",
        customer_email: str = "",
    ) -> PaymentIntentResponse:
        album = self.catalog.get_album(client_album_id)
        if album is None:
            logger.warning("Client album %s not found", client_album_id)
            raise NotFoundError("album", client_album_id, "Album not found.")
        cart = self.orders.cart_orders(album.id, cart_token)
        if not cart:
            raise EmptyCartError()

        settings = self.catalog.get_general_settings()
        total = sum((calculate_total(o) for o in cart), Decimal("0.00"))
        if total <= 0:
            return PaymentIntentResponse(skip_payment=True, message="No payment required.")
        if not self.enabled:
            return PaymentIntentResponse(skip_payment=True, message="Payment processing is disabled.")

        metadata = {
            "client_album_id": album.id,
            "cart_token": cart[0].cart_token or "",
            "order_ids": ",".join(o.id for o in cart),
            "customer_name": customer_name.strip(),
            "customer_email": customer_email.strip(),
            "album_title": album.title,
        }
        ref = self.gateway.create_payment_intent(
            to_minor_units(total), settings.currency, metadata, customer_email.strip() or None
        )

        self.store.update_many(
            ORDER_COLLECTION,
            {
                "_id": {"$in": [to_key(o.id) for o in cart]},
                "status": OrderStatus.SUBMITTED.value,
                "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES},
            },
            {"payment_intent_id": ref.id, "payment_status": PaymentStatus.PENDING.value},
        )
        logger.info("Created payment intent %s for %s order(s), total %s", ref.id, len(cart), total)
        return PaymentIntentResponse(
            client_secret=ref.client_secret,
            payment_intent=ref.id,
            publishable_key=self.gateway.publishable_key,
            amount=total,
            formatted_total=format_price(total, settings),
        )

    def confirm_payment(
        self,
        payment_intent_id: str,
        client_album_id: str,
        cart_token: Optional[str],
        customer_name: str = "",
        customer_email: str = "",
        customer_phone: str = "",
        client_notes: str = "",
    ) -> CheckoutResult:
        if not payment_intent_id or not client_album_id:
            raise ValidationError("Invalid request.")
        if not self.enabled:
            raise GatewayError("Payment processing is not configured.")

        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent.status != "succeeded":
            raise ValidationError("Payment was not successful. Please try again.")

        cart = self.orders.cart_orders(client_album_id, cart_token)
        if not cart:
            # The webhook may already have completed these orders.
            done = self._orders_for_intent(intent.id)
            if done and all(o.payment_status == PaymentStatus.PAID.value for o in done):
                return self._result(intent.id, done)
            raise EmptyCartError("Cart items not found.")

        for order in cart:
            if order.payment_intent_id != intent.id:
                logger.warning("Order %s does not belong to payment intent %s", order.id, intent.id)
                raise PaymentVerificationError()
        if not self._amount_matches(intent):
            raise PaymentVerificationError("The payment amount does not match your cart. Please contact us.")

        customer = {
            "customer_name": customer_name.strip(),
            "customer_email": customer_email.strip(),
            "customer_phone": sanitize_phone(customer_phone),
            "client_notes": client_notes.strip(),
        }
        for order in cart:
            self._apply_success(order.id, intent, customer)

        return self._result(intent.id, self._orders_for_intent(intent.id))

    def _orders_for_intent(self, intent_id: str) -> List[Order]:
        return [Order(**d) for d in self.store.find(ORDER_COLLECTION, {"payment_intent_id": intent_id})]

    @staticmethod
    def _result(ref: str, orders: List[Order]) -> CheckoutResult:
        return CheckoutResult(
            confirmation_ref=ref,
            order_count=len(orders),
            order_ids=[o.id for o in orders],
            total=sum((calculate_total(o) for o in orders), Decimal("0.00")),
            payment_status=PaymentStatus.PAID.value,
        )

    def _amount_matches(self, intent: PaymentIntentInfo) -> bool:
        """The charged amount must equal the snapshot totals of the orders still on the intent."""
        orders = self._orders_for_intent(intent.id)
        expected = to_minor_units(sum((calculate_total(o) for o in orders), Decimal("0.00")))
        if orders and expected == intent.amount:
            return True
        logger.error(
            "Payment intent %s charged %s but its %s order(s) total %s",
            intent.id, intent.amount, len(orders), expected,
        )
        return False

    def _apply_success(self, order_id: str, intent: PaymentIntentInfo, customer: Dict[str, str]) -> bool:
        """
        Move one order out of the cart and mark it paid. False when already settled.

        The lifecycle move is written first, so an interrupted run leaves an
        ordered-but-pending order that the next delivery of the same event
        still marks paid.
        """
        now = self._now()
        transition = {"status": OrderStatus.ORDERED.value, "ordered_at": now, "checkout_ref": intent.id}
        transition.update({k: v for k, v in customer.items() if v})
        moved = self.store.update(
            ORDER_COLLECTION,
            order_id,
            transition,
            expected={"payment_intent_id": intent.id, "status": OrderStatus.SUBMITTED.value},
        )
        if moved:
            logger.info("Order %s moved to ordered by payment %s", order_id, intent.id)

        paid = self.store.find_one_and_update(
            ORDER_COLLECTION,
            {
                "_id": to_key(order_id),
                "payment_intent_id": intent.id,
                "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES},
            },
            {
                "payment_status": PaymentStatus.PAID.value,
                "payment_amount": from_minor_units(intent.amount),
                "charge_id": intent.latest_charge,
                "payment_error": None,
                "paid_at": now,
            },
        )
        if paid is None:
            if not moved:
                logger.info("Order %s already settled or not on intent %s", order_id, intent.id)
            return moved

        if not moved and customer.get("customer_name") and not paid.get("customer_name"):
            self.store.update(
                ORDER_COLLECTION,
                order_id,
                {"customer_name": customer["customer_name"], "customer_email": customer.get("customer_email", "")},
                expected={"customer_name": ""},
            )
        return True

    # --------------------- webhook ---------------------

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.enabled:
            logger.warning("Webhook received while payments are disabled")
            raise PaymentVerificationError()
        event = self.gateway.construct_event(payload, signature)
        logger.info("Webhook event %s (%s)", event.id, event.type)

        if event.type == "payment_intent.succeeded" and event.intent:
            updated = self._handle_succeeded(event.intent)
        elif event.type == "payment_intent.payment_failed" and event.intent:
            updated = self._handle_failed(event.intent)
        elif event.type == "charge.refunded" and event.charge:
            updated = self._handle_refund(event.charge)
        else:
            logger.debug("Ignoring webhook event type %s", event.type)
            updated = 0
        return {"received": True, "type": event.type, "updated": updated}

    def _intent_order_ids(self, intent: PaymentIntentInfo) -> List[str]:
        ids = intent.order_ids
        if not ids:
            ids = [o.id for o in self._orders_for_intent(intent.id)]
        if not ids:
            logger.warning("No orders found for payment intent %s", intent.id)
        return ids

    def _handle_succeeded(self, intent: PaymentIntentInfo) -> int:
        customer = {
            "customer_name": intent.metadata.get("customer_name", ""),
            "customer_email": intent.metadata.get("customer_email", ""),
        }
        if not self._amount_matches(intent):
            self.store.update_many(
                ORDER_COLLECTION,
                {"payment_intent_id": intent.id, "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES}},
                {"payment_error": "Payment amount does not match the order total."},
            )
            return 0
        return sum(1 for order_id in self._intent_order_ids(intent) if self._apply_success(order_id, intent, customer))

    def _handle_failed(self, intent: PaymentIntentInfo) -> int:
        updated = 0
        for order_id in self._intent_order_ids(intent):
            doc = self.store.find_one_and_update(
                ORDER_COLLECTION,
                {
                    "_id": to_key(order_id),
                    "payment_intent_id": intent.id,
                    "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES},
                },
                {
                    "payment_status": PaymentStatus.FAILED.value,
                    "payment_error": intent.last_error or "Payment failed.",
                    "payment_failed_at": self._now(),
                },
            )
            if doc is not None:
                updated += 1
                logger.info("Payment failed for order %s: %s", order_id, doc.get("payment_error"))
        return updated

    def _handle_refund(self, charge: ChargeInfo) -> int:
        return self._record_refund(
            charge.id, from_minor_units(charge.total_refunded), from_minor_units(charge.amount)
        )

    def _record_refund(
        self,
        charge_id: str,
        refunded: Decimal,
        original: Optional[Decimal],
        refund_id: Optional[str] = None,
    ) -> int:
        """
        Store the cumulative refunded amount on every order paid by `charge_id`.

        The stored amount only ever grows: each write is conditional on the
        value read, and a smaller total from an older event is skipped.
        """
        docs = self.store.find(ORDER_COLLECTION, {"charge_id": charge_id})
        if not docs:
            logger.warning("No orders found for refunded charge %s", charge_id)
            return 0

        updated = 0
        for doc in docs:
            for _ in range(3):
                current = doc.get("refund_amount")
                if current is not None and money(current) >= refunded:
                    break
                base = original if original is not None else money(doc.get("payment_amount"))
                status = PaymentStatus.REFUNDED if refunded >= base else PaymentStatus.PARTIAL_REFUND
                changes = {
                    "payment_status": status.value,
                    "refund_amount": refunded,
                    "refunded_at": self._now(),
                }
                if refund_id:
                    changes["refund_id"] = refund_id
                if self.store.update(ORDER_COLLECTION, doc["id"], changes, expected={"refund_amount": current}):
                    updated += 1
                    logger.info("Order %s refund recorded: %s (%s)", doc["id"], refunded, status.value)
                    break
                doc = self.store.get(ORDER_COLLECTION, doc["id"]) or doc
        return updated

    # --------------------- manual refund ---------------------

    def refund_order(self, order_id: str, amount: Optional[Decimal] = None, reason: str = "") -> Order:
        order = self.orders.get_order(order_id)
        if order.payment_status not in (PaymentStatus.PAID.value, PaymentStatus.PARTIAL_REFUND.value):
            raise InvalidStateError("Only paid orders can be refunded.")
        if not order.charge_id:
            raise InvalidStateError("This order has no charge to refund.")
        if not self.enabled:
            raise GatewayError("Payment processing is not configured.")

        paid = money(order.payment_amount)
        already = money(order.refund_amount)
        remaining = paid - already
        if amount is not None:
            amount = money(amount)
            if amount <= 0 or amount > remaining:
                raise ValidationError("Invalid refund amount.")
        elif remaining <= 0:
            raise ValidationError("Invalid refund amount.")

        result = self.gateway.refund(
            order.charge_id,
            to_minor_units(amount) if amount is not None else None,
            normalize_refund_reason(reason),
        )
        cumulative = already + from_minor_units(result.amount)
        logger.info("Refunded %s on charge %s (order %s)", from_minor_units(result.amount), order.charge_id, order_id)

        self._record_refund(order.charge_id, cumulative, paid, refund_id=result.id)
        return self.orders.get_order(order_id)
