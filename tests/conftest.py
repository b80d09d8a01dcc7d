import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password
from catalog import Catalog
from config import Settings, get_settings
from credits import CreditLedger
from database import Store
from orders import CartItemRequest, OrderService
from payments import (
    PaymentIntentInfo,
    PaymentIntentRef,
    PaymentService,
    RefundResult,
    StripeGateway,
)
from schemas import (
    ClientAlbum,
    Color,
    Design,
    EngravingOption,
    GeneralSettings,
    Material,
    ShippingAddress,
    Size,
    TextureRegion,
)

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_EMAIL = "jane@photostudio.com"
ADMIN_PASSWORD = "s3cret-pass"


class FakeGateway(StripeGateway):
    """StripeGateway with the network calls replaced; signature checks stay real."""

    def __init__(self):
        super().__init__("sk_test_fake", webhook_secret=WEBHOOK_SECRET, publishable_key="pk_test_fake")
        self.intents: Dict[str, PaymentIntentInfo] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.charges: Dict[str, int] = {}
        self.error: Optional[Exception] = None

    def create_payment_intent(self, amount, currency, metadata, receipt_email=None):
        if self.error:
            raise self.error
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = PaymentIntentInfo(
            id=intent_id, status="requires_payment_method", amount=amount, metadata=metadata
        )
        return PaymentIntentRef(id=intent_id, client_secret=f"{intent_id}_secret", amount=amount, currency=currency)

    def succeed(self, intent_id: str, charge_id: str = "ch_test_1") -> PaymentIntentInfo:
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        intent.latest_charge = charge_id
        self.charges[charge_id] = intent.amount
        return intent

    def retrieve_payment_intent(self, intent_id):
        if self.error:
            raise self.error
        return self.intents[intent_id]

    def refund(self, charge_id, amount, reason):
        if self.error:
            raise self.error
        if amount is None:
            amount = self.charges.get(charge_id, 0) - sum(r["amount"] for r in self.refunds if r["charge"] == charge_id)
        self.refunds.append({"charge": charge_id, "amount": amount, "reason": reason})
        return RefundResult(id=f"re_test_{len(self.refunds)}", amount=amount, status="succeeded")


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def intent_event(intent: PaymentIntentInfo, event_type: str = "payment_intent.succeeded", error: str = "") -> str:
    obj: Dict[str, Any] = {
        "id": intent.id,
        "object": "payment_intent",
        "status": "succeeded" if event_type.endswith("succeeded") else "requires_payment_method",
        "amount": intent.amount,
        "latest_charge": intent.latest_charge,
        "metadata": intent.metadata,
    }
    if error:
        obj["last_payment_error"] = {"message": error}
    return json.dumps({"id": f"evt_{intent.id}_{event_type}", "object": "event", "type": event_type, "data": {"object": obj}})


def refund_event(charge_id: str, amount: int, refunds: List[int]) -> str:
    obj = {
        "id": charge_id,
        "object": "charge",
        "amount": amount,
        "amount_refunded": sum(refunds),
        "refunds": {"object": "list", "data": [{"id": f"re_{i}", "object": "refund", "amount": r} for i, r in enumerate(refunds)]},
    }
    return json.dumps({"id": f"evt_refund_{charge_id}_{sum(refunds)}", "object": "event", "type": "charge.refunded", "data": {"object": obj}})


@pytest.fixture(scope="session")
def admin_password_hash() -> str:
    return hash_password(ADMIN_PASSWORD)


@pytest.fixture
def settings(admin_password_hash) -> Settings:
    return Settings(
        jwt_secret="test-secret",
        admin_email=ADMIN_EMAIL,
        admin_password_hash=admin_password_hash,
        stripe_webhook_secret=WEBHOOK_SECRET,
        asset_base_url="https://cdn.photostudio.com",
        ledger_lock_seconds=0.3,
    )


@pytest.fixture
def store() -> Store:
    return Store(mongomock.MongoClient()["album_orders_test"])


@pytest.fixture
def catalog(store) -> Catalog:
    catalog = Catalog(store)
    catalog.save_size(Size(id="size-10x10", name="10x10", dimensions="10 x 10 in", upcharge=Decimal("10")))
    catalog.save_size(Size(id="size-12x12", name="12x12", dimensions="12 x 12 in", upcharge=Decimal("25")))
    catalog.save_material(
        Material(
            id="mat-leather",
            name="Leather",
            upcharge=Decimal("20"),
            allow_engraving=True,
            colors=[
                Color(id="col-black", name="Black", type="solid", color_value="#111111"),
                Color(
                    id="col-walnut",
                    name="Walnut",
                    type="texture",
                    texture_ref="textures/walnut.jpg",
                    texture_region=TextureRegion(x=10, y=20, zoom=1.5),
                ),
            ],
        )
    )
    catalog.save_material(
        Material(id="mat-linen", name="Linen", upcharge=Decimal("0"), restricted_sizes=["size-10x10"])
    )
    catalog.save_engraving_option(
        EngravingOption(id="eng-foil", name="Foil Stamp", upcharge=Decimal("15"), character_limit=20, fonts=["Serif", "Script"])
    )
    catalog.save_general_settings(GeneralSettings(currency="USD", currency_symbol="$", currency_position="before"))
    return catalog


@pytest.fixture
def album(catalog) -> ClientAlbum:
    return catalog.create_album(
        ClientAlbum(
            title="Smith Wedding",
            client_name="Jane Smith",
            client_email="jane.smith@photostudio.com",
            designs=[
                Design(id="design-classic", name="Classic", base_price=Decimal("100"), free_album_credits=1),
                Design(id="design-premium", name="Premium", base_price=Decimal("200"), dollar_credit=Decimal("150")),
                Design(id="design-parent", name="Parent Album", base_price=Decimal("80"), proof_ref="proofs/parent.pdf"),
            ],
        )
    )


@pytest.fixture
def ledger(store, catalog) -> CreditLedger:
    return CreditLedger(store, catalog)


@pytest.fixture
def orders(store, catalog, ledger) -> OrderService:
    return OrderService(store, catalog, ledger, lock_seconds=0.3)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def paid_orders(store, catalog, ledger) -> OrderService:
    """Order service for a store whose payment gateway is switched on."""
    return OrderService(store, catalog, ledger, payments_enabled=True, lock_seconds=0.3)


@pytest.fixture
def payments(store, catalog, paid_orders, gateway) -> PaymentService:
    return PaymentService(store, catalog, paid_orders, gateway)


@pytest.fixture
def make_request(album):
    def _make(design_index: int = 0, **overrides) -> CartItemRequest:
        data: Dict[str, Any] = {
            "client_album_id": album.id,
            "cart_token": "browser-a",
            "album_name": "Wedding Album",
            "design_index": design_index,
            "material_id": "mat-leather",
            "color_id": "col-black",
            "size_id": "size-10x10",
            "shipping": ShippingAddress(
                name="Jane Smith", address1="12 Harbor Lane", city="Portland", state="OR", zip="97201"
            ),
        }
        data.update(overrides)
        return CartItemRequest(**data)

    return _make


@pytest.fixture
def make_client(store, settings):
    import main

    def _make(gateway=None) -> TestClient:
        main.app.dependency_overrides[main.get_store] = lambda: store
        main.app.dependency_overrides[main.get_gateway] = lambda: gateway
        main.app.dependency_overrides[get_settings] = lambda: settings
        client = TestClient(main.app)
        return client

    yield _make
    main.app.dependency_overrides.clear()
