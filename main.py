import logging
import os
from decimal import Decimal
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import database
from assets import AssetResolver
from auth import AdminUser, LoginRequest, authenticate, get_current_admin
from catalog import Catalog
from config import Settings, get_settings
from credits import CreditLedger, DesignCreditUsage
from database import Store
from errors import AlbumOrderError, PaymentRequiredError
from orders import CartItemRequest, CartSummary, CheckoutRequest, CheckoutResult, OrderHistoryLine, OrderService
from payments import PaymentGateway, PaymentIntentResponse, PaymentService, StripeGateway
from pricing import format_price
from schemas import (
    ClientAlbum,
    EngravingOption,
    GeneralSettings,
    Material,
    Order,
    SavedAddress,
    ShippingAddress,
    Size,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Album Orders API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AlbumOrderError)
async def album_order_error_handler(request: Request, exc: AlbumOrderError):
    content: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, PaymentRequiredError):
        content["payment_required"] = True
        content["total"] = str(exc.total)
    return JSONResponse(status_code=exc.status_code, content=content)


# --------------------- Dependencies ---------------------

def get_store() -> Store:
    try:
        return database.get_store()
    except RuntimeError:
        raise HTTPException(status_code=500, detail="Database not configured")


def get_gateway(settings: Settings = Depends(get_settings)) -> Optional[PaymentGateway]:
    if not settings.stripe_secret_key:
        return None
    return StripeGateway(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        publishable_key=settings.stripe_publishable_key,
        statement_descriptor=settings.stripe_statement_descriptor,
    )


def get_assets(settings: Settings = Depends(get_settings)) -> AssetResolver:
    return AssetResolver(settings.asset_base_url)


def get_catalog(store: Store = Depends(get_store)) -> Catalog:
    return Catalog(store)


def get_ledger(store: Store = Depends(get_store), catalog: Catalog = Depends(get_catalog)) -> CreditLedger:
    return CreditLedger(store, catalog)


def get_order_service(
    store: Store = Depends(get_store),
    catalog: Catalog = Depends(get_catalog),
    ledger: CreditLedger = Depends(get_ledger),
    assets: AssetResolver = Depends(get_assets),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(
        store,
        catalog,
        ledger,
        assets=assets,
        payments_enabled=gateway is not None,
        lock_seconds=settings.ledger_lock_seconds,
    )


def get_payment_service(
    store: Store = Depends(get_store),
    catalog: Catalog = Depends(get_catalog),
    orders: OrderService = Depends(get_order_service),
    gateway: Optional[PaymentGateway] = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(store, catalog, orders, gateway)


# --------------------- Models ---------------------

class PaymentIntentRequest(BaseModel):
    client_album_id: str
    cart_token: Optional[str] = None
    customer_name: str = ""
    customer_email: str = ""


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str
    client_album_id: str
    cart_token: Optional[str] = None
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    client_notes: str = ""


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: str = "requested_by_customer"


class NotesRequest(BaseModel):
    photographer_notes: str = ""


def album_view(album: ClientAlbum, catalog: Catalog, ledger: CreditLedger, assets: AssetResolver) -> Dict[str, Any]:
    """Everything the order form needs for one album, with asset refs resolved."""
    general = catalog.get_general_settings()
    designs = []
    for index, design in enumerate(album.designs):
        designs.append({
            "index": index,
            "id": design.id,
            "name": design.name,
            "base_price": design.base_price,
            "formatted_price": format_price(design.base_price, general),
            "cover_url": assets.resolve_url(design.cover_ref, "medium"),
            "proof_url": assets.resolve_url(design.proof_ref),
            "available_free_credits": ledger.get_available_free_credits(album.id, index),
            "available_dollar_credits": ledger.get_available_dollar_credits(album.id, index),
        })
    materials = []
    for material in catalog.list_materials():
        colors = []
        for color in material.colors:
            colors.append({
                "id": color.id,
                "name": color.name,
                "type": color.type,
                "color_value": color.color_value,
                "texture_url": assets.resolve_url(color.texture_ref, "medium"),
                "texture_region": color.texture_region,
                "preview_url": assets.resolve_url(color.preview_ref, "thumbnail"),
            })
        materials.append({
            "id": material.id,
            "name": material.name,
            "upcharge": material.upcharge,
            "allow_engraving": material.allow_engraving,
            "restricted_sizes": material.restricted_sizes,
            "image_url": assets.resolve_url(material.image_ref, "medium"),
            "colors": colors,
        })
    sizes = [
        {**s.model_dump(), "image_url": assets.resolve_url(s.image_ref, "thumbnail")}
        for s in catalog.list_sizes()
    ]
    return {
        "id": album.id,
        "title": album.title,
        "client_name": album.client_name,
        "designs": designs,
        "materials": materials,
        "sizes": sizes,
        "engraving_options": catalog.list_engraving_options(),
        "saved_addresses": album.saved_addresses,
        "settings": general,
    }


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Album Orders API is running"}


@app.get("/schema")
def get_schema():
    return {
        "clientalbum": ClientAlbum.model_json_schema(),
        "material": Material.model_json_schema(),
        "size": Size.model_json_schema(),
        "engravingoption": EngravingOption.model_json_schema(),
        "settings": GeneralSettings.model_json_schema(),
        "order": Order.model_json_schema(),
    }


# Order form
@app.get("/api/albums/{album_id}")
def get_album(
    album_id: str,
    catalog: Catalog = Depends(get_catalog),
    ledger: CreditLedger = Depends(get_ledger),
    assets: AssetResolver = Depends(get_assets),
):
    album = catalog.get_album(album_id)
    if album is None:
        logger.warning("Client album %s not found", album_id)
        raise HTTPException(status_code=404, detail="Album not found.")
    return album_view(album, catalog, ledger, assets)


@app.get("/api/materials/{material_id}/sizes", response_model=List[Size])
def material_sizes(material_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.get_available_sizes_for_material(material_id)


@app.post("/api/cart/preview")
def preview_price(
    body: CartItemRequest,
    order_id: Optional[str] = None,
    orders: OrderService = Depends(get_order_service),
    catalog: Catalog = Depends(get_catalog),
):
    price = orders.preview_price(body, exclude_order_id=order_id)
    out = price.model_dump()
    out["formatted_total"] = format_price(price.total, catalog.get_general_settings())
    return out


@app.get("/api/albums/{album_id}/orders", response_model=List[OrderHistoryLine])
def order_history(album_id: str, orders: OrderService = Depends(get_order_service)):
    return orders.order_history(album_id)


# Saved shipping addresses
@app.get("/api/albums/{album_id}/addresses", response_model=List[SavedAddress])
def list_addresses(album_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.list_addresses(album_id)


@app.post("/api/albums/{album_id}/addresses", response_model=SavedAddress)
def save_address(album_id: str, body: ShippingAddress, catalog: Catalog = Depends(get_catalog)):
    return catalog.save_address(album_id, body)


@app.delete("/api/albums/{album_id}/addresses/{address_id}", response_model=List[SavedAddress])
def delete_address(album_id: str, address_id: str, catalog: Catalog = Depends(get_catalog)):
    return catalog.delete_address(album_id, address_id)


# Cart
@app.get("/api/albums/{album_id}/cart", response_model=CartSummary)
def get_cart(album_id: str, cart_token: Optional[str] = None, orders: OrderService = Depends(get_order_service)):
    return orders.get_cart(album_id, cart_token)


@app.post("/api/cart", response_model=CartSummary)
def add_to_cart(body: CartItemRequest, orders: OrderService = Depends(get_order_service)):
    return orders.add_to_cart(body)


@app.get("/api/cart/{order_id}", response_model=Order)
def get_cart_item(order_id: str, cart_token: Optional[str] = None, orders: OrderService = Depends(get_order_service)):
    return orders.get_order_for_edit(order_id, cart_token)


@app.put("/api/cart/{order_id}", response_model=CartSummary)
def update_cart_item(order_id: str, body: CartItemRequest, orders: OrderService = Depends(get_order_service)):
    return orders.update_cart_item(order_id, body)


@app.delete("/api/cart/{order_id}", response_model=CartSummary)
def remove_cart_item(order_id: str, cart_token: Optional[str] = None, orders: OrderService = Depends(get_order_service)):
    return orders.remove_from_cart(order_id, cart_token)


# Checkout and payments
@app.post("/api/checkout", response_model=CheckoutResult)
def checkout(body: CheckoutRequest, orders: OrderService = Depends(get_order_service)):
    return orders.checkout(body)


@app.post("/api/checkout/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(req: PaymentIntentRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.create_payment_intent(req.client_album_id, req.cart_token, req.customer_name, req.customer_email)


@app.post("/api/checkout/confirm-payment", response_model=CheckoutResult)
def confirm_payment(req: ConfirmPaymentRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.confirm_payment(
        req.payment_intent_id,
        req.client_album_id,
        req.cart_token,
        customer_name=req.customer_name,
        customer_email=req.customer_email,
        customer_phone=req.customer_phone,
        client_notes=req.client_notes,
    )


@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    payments: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()
    return payments.handle_webhook(payload, stripe_signature)


# Photographer
@app.post("/api/auth/login")
def login(req: LoginRequest, settings: Settings = Depends(get_settings)):
    return {"token": authenticate(req, settings)}


@app.get("/api/admin/settings", response_model=GeneralSettings)
def read_settings(catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.get_general_settings()


@app.put("/api/admin/settings", response_model=GeneralSettings)
def save_settings(body: GeneralSettings, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.save_general_settings(body)


@app.get("/api/admin/materials", response_model=List[Material])
def list_materials(catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.list_materials()


@app.put("/api/admin/materials/{material_id}", response_model=Material)
def save_material(material_id: str, body: Material, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.save_material(body.model_copy(update={"id": material_id}))


@app.delete("/api/admin/materials/{material_id}")
def delete_material(material_id: str, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return {"deleted": catalog.delete_material(material_id)}


@app.get("/api/admin/sizes", response_model=List[Size])
def list_sizes(catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.list_sizes()


@app.put("/api/admin/sizes/{size_id}", response_model=Size)
def save_size(size_id: str, body: Size, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.save_size(body.model_copy(update={"id": size_id}))


@app.delete("/api/admin/sizes/{size_id}")
def delete_size(size_id: str, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return {"deleted": catalog.delete_size(size_id)}


@app.get("/api/admin/engraving-options", response_model=List[EngravingOption])
def list_engraving_options(catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.list_engraving_options()


@app.put("/api/admin/engraving-options/{option_id}", response_model=EngravingOption)
def save_engraving_option(option_id: str, body: EngravingOption, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.save_engraving_option(body.model_copy(update={"id": option_id}))


@app.delete("/api/admin/engraving-options/{option_id}")
def delete_engraving_option(option_id: str, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return {"deleted": catalog.delete_engraving_option(option_id)}


@app.post("/api/admin/albums", response_model=ClientAlbum)
def create_album(body: ClientAlbum, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.create_album(body)


@app.put("/api/admin/albums/{album_id}", response_model=ClientAlbum)
def update_album(album_id: str, body: ClientAlbum, catalog: Catalog = Depends(get_catalog), admin: AdminUser = Depends(get_current_admin)):
    return catalog.update_album(album_id, body)


@app.get("/api/admin/albums/{album_id}/credits", response_model=List[DesignCreditUsage])
def album_credits(
    album_id: str,
    catalog: Catalog = Depends(get_catalog),
    ledger: CreditLedger = Depends(get_ledger),
    admin: AdminUser = Depends(get_current_admin),
):
    album = catalog.get_album(album_id)
    if album is None:
        raise HTTPException(status_code=404, detail="Album not found.")
    return ledger.usage_summary(album)


@app.get("/api/admin/orders", response_model=List[Order])
def list_orders(
    album_id: Optional[str] = None,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = 100,
    orders: OrderService = Depends(get_order_service),
    admin: AdminUser = Depends(get_current_admin),
):
    return orders.list_orders(album_id, status, payment_status, limit)


@app.get("/api/admin/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: OrderService = Depends(get_order_service), admin: AdminUser = Depends(get_current_admin)):
    return orders.get_order(order_id)


@app.post("/api/admin/orders/{order_id}/ship", response_model=Order)
def ship_order(order_id: str, orders: OrderService = Depends(get_order_service), admin: AdminUser = Depends(get_current_admin)):
    return orders.mark_shipped(order_id)


@app.put("/api/admin/orders/{order_id}/notes", response_model=Order)
def update_notes(order_id: str, body: NotesRequest, orders: OrderService = Depends(get_order_service), admin: AdminUser = Depends(get_current_admin)):
    return orders.update_photographer_notes(order_id, body.photographer_notes)


@app.post("/api/admin/orders/{order_id}/refund", response_model=Order)
def refund_order(order_id: str, body: RefundRequest, payments: PaymentService = Depends(get_payment_service), admin: AdminUser = Depends(get_current_admin)):
    return payments.refund_order(order_id, body.amount, body.reason)


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
            response["database_name"] = "✅ Set" if settings.database_name else "❌ Not Set"
            try:
                collections = database.get_store().list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
                response["connection_status"] = "Connected"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
