"""
Order lifecycle and cart

An order is one configured album. It is created in the cart as "submitted",
can be edited or removed only while submitted, moves to "ordered" at
checkout (all of a cart's orders together) and to "shipped" when the
photographer sends it. No transition goes backwards.

Every transition is a conditional write on the current status, so the
checkout path and the payment webhook can race without double-applying.
Editing or removing a cart order detaches it from any pending payment
intent; an order whose payment already settled can no longer be touched.
Credit allocation holds a per-design lease while it re-reads availability
and writes the order.
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from assets import AssetResolver
from catalog import Catalog
from credits import CreditLedger, lease_key
from database import Store, to_key
from errors import (
    CartAccessError,
    EmptyCartError,
    InvalidStateError,
    NotFoundError,
    PaymentRequiredError,
    ValidationError,
)
from pricing import PriceBreakdown, calculate_total, compute_price, format_price, money
from schemas import (
    ORDER_COLLECTION,
    SETTLED_PAYMENT_STATUSES,
    ClientAlbum,
    Color,
    Design,
    EngravingOption,
    Material,
    Order,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
    Size,
)

logger = logging.getLogger(__name__)

PHONE_STRIP = re.compile(r"[^0-9+\-()\s]")
TOKEN_STRIP = re.compile(r"[^a-z0-9_\-]")

# Fields rewritten on every add/update; everything else on the order is left alone.
SNAPSHOT_FIELDS = {
    "album_name", "design_index", "design_id", "design_name", "design_proof_ref", "base_price",
    "material_id", "material_name", "material_upcharge", "color_id", "color_name",
    "size_id", "size_name", "size_upcharge",
    "engraving_option_id", "engraving_method", "engraving_text", "engraving_font", "engraving_upcharge",
    "credit_type", "applied_credits", "shipping",
}

# An edited cart order no longer matches the amount of any payment intent
# created for it; a new intent is needed.
DETACHED_PAYMENT = {"payment_intent_id": None, "payment_status": PaymentStatus.NONE.value, "payment_error": None}


def sanitize_phone(phone: Optional[str]) -> str:
    return PHONE_STRIP.sub("", phone or "").strip()


def normalize_token(token: Optional[str]) -> Optional[str]:
    """Cart tokens are client-generated; keep a safe key or None for the shared cart."""
    cleaned = TOKEN_STRIP.sub("", (token or "").strip().lower())
    return cleaned or None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --------------------- Requests / responses ---------------------

class CartItemRequest(BaseModel):
    client_album_id: str
    cart_token: Optional[str] = None
    album_name: str = ""
    design_index: Optional[int] = None
    material_id: str = ""
    color_id: str = ""
    size_id: str = ""
    engraving_option_id: str = ""
    engraving_text: str = ""
    engraving_font: str = ""
    shipping: ShippingAddress = Field(default_factory=ShippingAddress)


class CheckoutRequest(BaseModel):
    client_album_id: str
    cart_token: Optional[str] = None
    customer_name: str = ""
    customer_email: Optional[EmailStr] = None
    customer_phone: str = ""
    client_notes: str = ""
    idempotency_key: Optional[str] = None


class CartLine(BaseModel):
    order_id: str
    album_name: str
    design_index: int
    design_name: str
    material_name: str
    color_name: str
    size_name: str
    engraving_method: str
    engraving_text: str
    credit_type: str
    applied_credits: Decimal
    total: Decimal
    formatted_total: str
    proof_url: str = ""


class CartSummary(BaseModel):
    client_album_id: str
    items: List[CartLine]
    count: int
    total: Decimal
    formatted_total: str


class CheckoutResult(BaseModel):
    confirmation_ref: str
    order_count: int
    order_ids: List[str]
    total: Decimal
    payment_status: str


class OrderHistoryLine(BaseModel):
    order_id: str
    album_name: str
    design_name: str
    material_name: str
    color_name: str
    size_name: str
    engraving_method: str
    engraving_text: str
    status: str
    payment_status: str
    total: Decimal
    formatted_total: str
    ordered_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None


class Selection(BaseModel):
    """A validated add/update request resolved against the catalog."""
    album: ClientAlbum
    design_index: int
    design: Design
    material: Material
    color: Optional[Color] = None
    size: Size
    engraving: Optional[EngravingOption] = None


# --------------------- Service ---------------------

class OrderService:
    def __init__(
        self,
        store: Store,
        catalog: Catalog,
        ledger: CreditLedger,
        assets: Optional[AssetResolver] = None,
        payments_enabled: bool = False,
        lock_seconds: float = 5.0,
    ):
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.assets = assets or AssetResolver()
        self.payments_enabled = payments_enabled
        self.lock_seconds = lock_seconds

    # --------------------- reads ---------------------

    def get_order(self, order_id: str) -> Order:
        doc = self.store.get(ORDER_COLLECTION, order_id)
        if doc is None:
            logger.warning("Order %s not found", order_id)
            raise NotFoundError("order", order_id, "Order not found.")
        return Order(**doc)

    def list_orders(
        self,
        client_album_id: Optional[str] = None,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Order]:
        query: Dict[str, Any] = {}
        if client_album_id:
            query["client_album_id"] = client_album_id
        if status:
            query["status"] = status
        if payment_status:
            query["payment_status"] = payment_status
        docs = self.store.find(ORDER_COLLECTION, query, sort=[("submitted_at", -1)], limit=limit)
        return [Order(**d) for d in docs]

    def cart_orders(self, client_album_id: str, cart_token: Optional[str]) -> List[Order]:
        docs = self.store.find(
            ORDER_COLLECTION,
            {
                "client_album_id": client_album_id,
                "status": OrderStatus.SUBMITTED.value,
                "cart_token": normalize_token(cart_token),
            },
            sort=[("submitted_at", 1)],
        )
        return [Order(**d) for d in docs]

    def get_cart(self, client_album_id: str, cart_token: Optional[str]) -> CartSummary:
        settings = self.catalog.get_general_settings()
        items = []
        total = Decimal("0.00")
        for order in self.cart_orders(client_album_id, cart_token):
            line_total = calculate_total(order)
            total += line_total
            items.append(
                CartLine(
                    order_id=order.id,
                    album_name=order.album_name,
                    design_index=order.design_index,
                    design_name=order.design_name,
                    material_name=order.material_name,
                    color_name=order.color_name,
                    size_name=order.size_name,
                    engraving_method=order.engraving_method,
                    engraving_text=order.engraving_text,
                    credit_type=order.credit_type,
                    applied_credits=money(order.applied_credits),
                    total=line_total,
                    formatted_total=format_price(line_total, settings),
                    proof_url=self.assets.resolve_url(order.design_proof_ref, "thumbnail"),
                )
            )
        return CartSummary(
            client_album_id=client_album_id,
            items=items,
            count=len(items),
            total=total,
            formatted_total=format_price(total, settings),
        )

    def order_history(self, client_album_id: str) -> List[OrderHistoryLine]:
        """Placed orders (ordered or shipped) for the album, newest first."""
        self._require_album(client_album_id)
        settings = self.catalog.get_general_settings()
        docs = self.store.find(
            ORDER_COLLECTION,
            {
                "client_album_id": client_album_id,
                "status": {"$in": [OrderStatus.ORDERED.value, OrderStatus.SHIPPED.value]},
            },
            sort=[("ordered_at", -1)],
        )
        lines = []
        for order in (Order(**d) for d in docs):
            total = calculate_total(order)
            lines.append(
                OrderHistoryLine(
                    order_id=order.id,
                    album_name=order.album_name,
                    design_name=order.design_name,
                    material_name=order.material_name,
                    color_name=order.color_name,
                    size_name=order.size_name,
                    engraving_method=order.engraving_method,
                    engraving_text=order.engraving_text,
                    status=order.status,
                    payment_status=order.payment_status,
                    total=total,
                    formatted_total=format_price(total, settings),
                    ordered_at=order.ordered_at,
                    shipped_at=order.shipped_at,
                )
            )
        return lines

    def get_order_for_edit(self, order_id: str, cart_token: Optional[str]) -> Order:
        order = self.get_order(order_id)
        self._check_editable(order, cart_token)
        return order

    # --------------------- validation ---------------------

    def _require_album(self, album_id: str) -> ClientAlbum:
        album = self.catalog.get_album(album_id)
        if album is None:
            logger.warning("Client album %s not found", album_id)
            raise NotFoundError("album", album_id, "Album not found.")
        return album

    @staticmethod
    def _check_required(req: CartItemRequest) -> None:
        required = [
            (req.album_name, "Please enter an album name."),
            (req.material_id, "Please select a material."),
            (req.size_id, "Please select a size."),
            (req.shipping.name, "Please enter the recipient name."),
            (req.shipping.address1, "Please enter a street address."),
            (req.shipping.city, "Please enter a city."),
            (req.shipping.state, "Please enter a state."),
            (req.shipping.zip, "Please enter a ZIP code."),
        ]
        for value, message in required:
            if not (value or "").strip():
                raise ValidationError(message)

    def validate_selection(self, req: CartItemRequest) -> Selection:
        """Resolve the request against the catalog; the first problem found is raised."""
        album = self._require_album(req.client_album_id)
        self._check_required(req)

        design = self.catalog.get_design(album, req.design_index)
        if design is None:
            raise ValidationError("Please select a design.")

        material = self.catalog.get_material(req.material_id)
        if material is None:
            logger.warning("Material %s not found", req.material_id)
            raise ValidationError("The selected material is no longer available.")

        size = self.catalog.get_size(req.size_id)
        if size is None:
            logger.warning("Size %s not found", req.size_id)
            raise ValidationError("The selected size is no longer available.")
        allowed = {s.id for s in self.catalog.get_available_sizes_for_material(material.id)}
        if size.id not in allowed:
            raise ValidationError("The selected size is not available for this material.")

        color = None
        if material.colors:
            if not req.color_id:
                raise ValidationError("Please select a color.")
            color = self.catalog.get_color(material, req.color_id)
            if color is None:
                raise ValidationError("The selected color is not available for this material.")

        engraving = None
        if req.engraving_option_id:
            if not material.allow_engraving:
                raise ValidationError("Engraving is not available for this material.")
            engraving = self.catalog.get_engraving_option(req.engraving_option_id)
            if engraving is None:
                logger.warning("Engraving option %s not found", req.engraving_option_id)
                raise ValidationError("The selected engraving option is no longer available.")
            limit = engraving.character_limit
            if limit and len(req.engraving_text) > limit:
                raise ValidationError(f"Engraving text is limited to {limit} characters.")
            if engraving.fonts and req.engraving_font not in engraving.fonts:
                raise ValidationError("Please select an engraving font.")

        return Selection(
            album=album,
            design_index=req.design_index,
            design=design,
            material=material,
            color=color,
            size=size,
            engraving=engraving,
        )

    @staticmethod
    def _check_editable(order: Order, cart_token: Optional[str]) -> None:
        if order.status != OrderStatus.SUBMITTED.value or order.payment_status in SETTLED_PAYMENT_STATUSES:
            raise InvalidStateError()
        if normalize_token(order.cart_token) != normalize_token(cart_token):
            logger.warning("Cart token mismatch on order %s", order.id)
            raise CartAccessError()

    @staticmethod
    def _editable_filter() -> Dict[str, Any]:
        # A cart order that is already paid waits for its payment to move it on.
        return {"status": OrderStatus.SUBMITTED.value, "payment_status": {"$nin": SETTLED_PAYMENT_STATUSES}}

    # --------------------- pricing ---------------------

    def preview_price(self, req: CartItemRequest, exclude_order_id: Optional[str] = None) -> PriceBreakdown:
        """Price a selection against current credit without writing anything."""
        sel = self.validate_selection(req)
        return self._price(sel, exclude_order_id)

    def _price(self, sel: Selection, exclude_order_id: Optional[str]) -> PriceBreakdown:
        free = self.ledger.get_available_free_credits(sel.album.id, sel.design_index, exclude_order_id)
        dollar = self.ledger.get_available_dollar_credits(sel.album.id, sel.design_index, exclude_order_id)
        return compute_price(sel.design, sel.material, sel.size, sel.engraving, free, dollar)

    @staticmethod
    def _snapshot(req: CartItemRequest, sel: Selection, price: PriceBreakdown) -> Dict[str, Any]:
        engraving = sel.engraving
        return {
            "album_name": req.album_name.strip(),
            "design_index": sel.design_index,
            "design_id": sel.design.id,
            "design_name": sel.design.name,
            "design_proof_ref": sel.design.proof_ref,
            "base_price": price.base,
            "material_id": sel.material.id,
            "material_name": sel.material.name,
            "material_upcharge": price.material_upcharge,
            "color_id": sel.color.id if sel.color else "",
            "color_name": sel.color.name if sel.color else "",
            "size_id": sel.size.id,
            "size_name": sel.size.name,
            "size_upcharge": price.size_upcharge,
            "engraving_option_id": engraving.id if engraving else "",
            "engraving_method": engraving.name if engraving else "",
            "engraving_text": req.engraving_text if engraving else "",
            "engraving_font": req.engraving_font if engraving else "",
            "engraving_upcharge": price.engraving_upcharge,
            "credit_type": price.credit_type,
            "applied_credits": price.applied_credits,
            "shipping": req.shipping,
        }

    # --------------------- cart operations ---------------------

    def add_to_cart(self, req: CartItemRequest) -> CartSummary:
        sel = self.validate_selection(req)
        token = normalize_token(req.cart_token)

        with self.store.lease(lease_key(sel.album.id, sel.design_index), wait_seconds=self.lock_seconds):
            price = self._price(sel, None)
            order = Order(
                client_album_id=sel.album.id,
                cart_token=token,
                status=OrderStatus.SUBMITTED,
                submitted_at=utcnow(),
                **self._snapshot(req, sel, price),
            )
            order_id = self.store.create(ORDER_COLLECTION, order)

        logger.info(
            "Added order %s to cart for album %s (design %s, credit %s)",
            order_id, sel.album.id, sel.design_index, price.credit_type.value,
        )
        return self.get_cart(sel.album.id, token)

    def update_cart_item(self, order_id: str, req: CartItemRequest) -> CartSummary:
        current = self.get_order(order_id)
        self._check_editable(current, req.cart_token)
        if current.client_album_id != req.client_album_id:
            raise CartAccessError()
        sel = self.validate_selection(req)

        with self.store.lease(lease_key(sel.album.id, sel.design_index), wait_seconds=self.lock_seconds):
            price = self._price(sel, order_id)
            updated = self.store.update(
                ORDER_COLLECTION,
                order_id,
                {**self._snapshot(req, sel, price), **DETACHED_PAYMENT},
                expected=self._editable_filter(),
            )
        if not updated:
            raise InvalidStateError()

        logger.info("Updated cart order %s (credit %s)", order_id, price.credit_type.value)
        return self.get_cart(sel.album.id, req.cart_token)

    def remove_from_cart(self, order_id: str, cart_token: Optional[str]) -> CartSummary:
        order = self.get_order(order_id)
        self._check_editable(order, cart_token)
        if not self.store.delete(ORDER_COLLECTION, order_id, expected=self._editable_filter()):
            raise InvalidStateError()
        logger.info("Removed order %s from cart", order_id)
        return self.get_cart(order.client_album_id, cart_token)

    # --------------------- checkout ---------------------

    def checkout(self, req: CheckoutRequest) -> CheckoutResult:
        """
        Move every order in the cart to "ordered".

        All checks run before the write; the write itself is one conditional
        multi-document update keyed on status "submitted". With an
        idempotency key, a retry finishes whatever the first attempt left in
        the cart and then returns the same confirmation.
        """
        album = self._require_album(req.client_album_id)
        if not req.customer_name.strip():
            raise ValidationError("Please enter your name.")
        if not req.customer_email:
            raise ValidationError("Please enter your email address.")

        key = normalize_token(req.idempotency_key)
        ref = f"chk_{key}" if key else uuid.uuid4().hex
        cart = self.cart_orders(album.id, req.cart_token)

        if not cart:
            replay = self.store.find(ORDER_COLLECTION, {"client_album_id": album.id, "checkout_ref": ref}) if key else []
            if replay:
                logger.info("Replaying checkout %s for album %s", ref, album.id)
                return self._checkout_result(ref, [Order(**d) for d in replay])
            raise EmptyCartError()

        total = sum((calculate_total(o) for o in cart), Decimal("0.00"))
        if self.payments_enabled and total > 0:
            raise PaymentRequiredError(total)
        payment_status = PaymentStatus.FREE if total <= 0 else PaymentStatus.UNPAID

        now = utcnow()
        changed = self.store.update_many(
            ORDER_COLLECTION,
            {"_id": {"$in": [to_key(o.id) for o in cart]}, "status": OrderStatus.SUBMITTED.value},
            {
                "status": OrderStatus.ORDERED.value,
                "customer_name": req.customer_name.strip(),
                "customer_email": str(req.customer_email),
                "customer_phone": sanitize_phone(req.customer_phone),
                "client_notes": req.client_notes.strip(),
                "checkout_ref": ref,
                "ordered_at": now,
                "payment_status": payment_status.value,
            },
        )
        if changed != len(cart):
            logger.warning("Checkout %s moved %s of %s cart orders", ref, changed, len(cart))

        placed = self.store.find(
            ORDER_COLLECTION, {"_id": {"$in": [to_key(o.id) for o in cart]}, "checkout_ref": ref}
        )
        logger.info("Checkout %s placed %s order(s) for album %s", ref, len(placed), album.id)
        return self._checkout_result(ref, [Order(**d) for d in placed])

    @staticmethod
    def _checkout_result(ref: str, orders: List[Order]) -> CheckoutResult:
        total = sum((calculate_total(o) for o in orders), Decimal("0.00"))
        return CheckoutResult(
            confirmation_ref=ref,
            order_count=len(orders),
            order_ids=[o.id for o in orders],
            total=total,
            payment_status=orders[0].payment_status if orders else PaymentStatus.NONE.value,
        )

    # --------------------- photographer actions ---------------------

    def mark_shipped(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if order.status == OrderStatus.SHIPPED.value:
            return order
        moved = self.store.update(
            ORDER_COLLECTION,
            order_id,
            {"status": OrderStatus.SHIPPED.value, "shipped_at": utcnow()},
            expected={"status": OrderStatus.ORDERED.value},
        )
        if not moved:
            order = self.get_order(order_id)
            if order.status == OrderStatus.SHIPPED.value:
                return order
            raise InvalidStateError("Only ordered albums can be marked as shipped.")
        logger.info("Order %s marked as shipped", order_id)
        return self.get_order(order_id)

    def update_photographer_notes(self, order_id: str, notes: str) -> Order:
        self.get_order(order_id)
        self.store.update(ORDER_COLLECTION, order_id, {"photographer_notes": notes.strip()})
        return self.get_order(order_id)
