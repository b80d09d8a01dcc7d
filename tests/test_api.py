from decimal import Decimal

import pytest

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, intent_event, refund_event, sign_payload


def _item(album, design_index=0, **overrides):
    body = {
        "client_album_id": album.id,
        "cart_token": "browser-a",
        "album_name": "Wedding Album",
        "design_index": design_index,
        "material_id": "mat-leather",
        "color_id": "col-black",
        "size_id": "size-10x10",
        "shipping": {"name": "Jane Smith", "address1": "12 Harbor Lane", "city": "Portland", "state": "OR", "zip": "97201"},
    }
    body.update(overrides)
    return body


def _checkout(album, **overrides):
    body = {
        "client_album_id": album.id,
        "cart_token": "browser-a",
        "customer_name": "Jane Smith",
        "customer_email": "jane@photostudio.com",
    }
    body.update(overrides)
    return body


def _admin_headers(client):
    res = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['token']}"}


def test_root(make_client):
    res = make_client().get("/")
    assert res.status_code == 200
    assert res.json() == {"message": "Album Orders API is running"}


def test_health_without_database(make_client):
    body = make_client().get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Not Connected"


def test_album_view(make_client, album):
    res = make_client().get(f"/api/albums/{album.id}")
    assert res.status_code == 200
    body = res.json()

    assert body["title"] == "Smith Wedding"
    assert [d["id"] for d in body["designs"]] == ["design-classic", "design-premium", "design-parent"]
    assert body["designs"][0]["available_free_credits"] == 1
    assert body["designs"][0]["formatted_price"] == "$100.00"
    assert body["designs"][2]["proof_url"] == "https://cdn.photostudio.com/proofs/parent.pdf"
    walnut = body["materials"][0]["colors"][1]
    assert walnut["texture_url"] == "https://cdn.photostudio.com/medium/textures/walnut.jpg"
    assert walnut["texture_region"]["zoom"] == 1.5


def test_unknown_album_is_404(make_client, catalog):
    res = make_client().get("/api/albums/650000000000000000000000")
    assert res.status_code == 404
    assert res.json()["detail"] == "Album not found."


def test_material_sizes(make_client, catalog):
    res = make_client().get("/api/materials/mat-linen/sizes")
    assert [s["id"] for s in res.json()] == ["size-10x10"]


def test_preview_does_not_write(make_client, album, store):
    client = make_client()
    res = client.post("/api/cart/preview", json=_item(album, 1))
    assert res.status_code == 200
    assert Decimal(str(res.json()["total"])) == Decimal("80.00")
    assert res.json()["formatted_total"] == "$80.00"
    assert client.get(f"/api/albums/{album.id}/cart", params={"cart_token": "browser-a"}).json()["count"] == 0


def test_cart_add_get_and_remove(make_client, album):
    client = make_client()
    res = client.post("/api/cart", json=_item(album))
    assert res.status_code == 200
    cart = res.json()
    assert cart["count"] == 1
    assert Decimal(str(cart["total"])) == Decimal("30.00")
    assert cart["items"][0]["credit_type"] == "free_album"
    order_id = cart["items"][0]["order_id"]

    item = client.get(f"/api/cart/{order_id}", params={"cart_token": "browser-a"}).json()
    assert item["material_name"] == "Leather"
    assert item["status"] == "submitted"

    # Another browser can neither read nor delete it.
    assert client.get(f"/api/cart/{order_id}", params={"cart_token": "browser-b"}).status_code == 403
    assert client.delete(f"/api/cart/{order_id}", params={"cart_token": "browser-b"}).status_code == 403

    res = client.delete(f"/api/cart/{order_id}", params={"cart_token": "browser-a"})
    assert res.json()["count"] == 0


def test_cart_update(make_client, album):
    client = make_client()
    order_id = client.post("/api/cart", json=_item(album, 2)).json()["items"][0]["order_id"]

    res = client.put(f"/api/cart/{order_id}", json=_item(album, 2, size_id="size-12x12"))
    assert res.status_code == 200
    assert Decimal(str(res.json()["total"])) == Decimal("125.00")


def test_validation_error_maps_to_400(make_client, album):
    res = make_client().post("/api/cart", json=_item(album, material_id=""))
    assert res.status_code == 400
    assert res.json() == {"detail": "Please select a material."}


def test_checkout_without_gateway(make_client, album):
    client = make_client()
    client.post("/api/cart", json=_item(album))

    res = client.post("/api/checkout", json=_checkout(album))
    assert res.status_code == 200
    body = res.json()
    assert body["order_count"] == 1
    assert body["payment_status"] == "unpaid"
    assert Decimal(str(body["total"])) == Decimal("30.00")


def test_checkout_empty_cart(make_client, album):
    res = make_client().post("/api/checkout", json=_checkout(album))
    assert res.status_code == 400
    assert res.json()["detail"] == "Your cart is empty."


def test_checkout_requires_payment_when_gateway_enabled(make_client, gateway, album):
    client = make_client(gateway)
    client.post("/api/cart", json=_item(album, 1))

    res = client.post("/api/checkout", json=_checkout(album))
    assert res.status_code == 402
    body = res.json()
    assert body["payment_required"] is True
    assert Decimal(body["total"]) == Decimal("80.00")


def test_ordered_item_cannot_be_edited(make_client, album):
    client = make_client()
    order_id = client.post("/api/cart", json=_item(album)).json()["items"][0]["order_id"]
    client.post("/api/checkout", json=_checkout(album))

    res = client.delete(f"/api/cart/{order_id}", params={"cart_token": "browser-a"})
    assert res.status_code == 409
    assert res.json()["detail"] == "This order can no longer be modified."


def _paid_through_webhook(client, gateway, album, charge_id="ch_api"):
    client.post("/api/cart", json=_item(album, 1))
    res = client.post(
        "/api/checkout/create-payment-intent",
        json={"client_album_id": album.id, "cart_token": "browser-a", "customer_name": "Jane Smith",
              "customer_email": "jane@photostudio.com"},
    )
    assert res.status_code == 200
    intent = gateway.succeed(res.json()["payment_intent"], charge_id)
    payload = intent_event(intent)
    res = client.post("/api/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload)})
    assert res.status_code == 200
    return res.json()


def test_payment_intent_and_webhook(make_client, gateway, album):
    client = make_client(gateway)
    body = _paid_through_webhook(client, gateway, album)
    assert body == {"received": True, "type": "payment_intent.succeeded", "updated": 1}

    cart = client.get(f"/api/albums/{album.id}/cart", params={"cart_token": "browser-a"}).json()
    assert cart["count"] == 0


def test_webhook_rejects_bad_signature(make_client, gateway, album):
    payload = refund_event("ch_api", 8000, [8000])
    res = make_client(gateway).post(
        "/api/webhooks/stripe", content=payload, headers={"stripe-signature": sign_payload(payload, "whsec_wrong")}
    )
    assert res.status_code == 400


def test_confirm_payment_route(make_client, gateway, album):
    client = make_client(gateway)
    client.post("/api/cart", json=_item(album, 1))
    intent_id = client.post(
        "/api/checkout/create-payment-intent", json={"client_album_id": album.id, "cart_token": "browser-a"}
    ).json()["payment_intent"]
    gateway.succeed(intent_id)

    res = client.post(
        "/api/checkout/confirm-payment",
        json={"payment_intent_id": intent_id, "client_album_id": album.id, "cart_token": "browser-a",
              "customer_name": "Jane Smith", "customer_email": "jane@photostudio.com"},
    )
    assert res.status_code == 200
    assert res.json()["payment_status"] == "paid"


# --------------------- photographer ---------------------

@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-token"}, {"Authorization": "Token abc"}])
def test_admin_routes_require_token(make_client, catalog, headers):
    res = make_client().get("/api/admin/orders", headers=headers)
    assert res.status_code == 401


def test_login_rejects_wrong_password(make_client):
    res = make_client().post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong"})
    assert res.status_code == 400


def test_admin_ship_order(make_client, album):
    client = make_client()
    headers = _admin_headers(client)
    order_id = client.post("/api/cart", json=_item(album)).json()["items"][0]["order_id"]

    # Still in the cart.
    assert client.post(f"/api/admin/orders/{order_id}/ship", headers=headers).status_code == 409

    client.post("/api/checkout", json=_checkout(album))
    res = client.post(f"/api/admin/orders/{order_id}/ship", headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "shipped"
    assert res.json()["shipped_at"] is not None


def test_admin_notes_and_listing(make_client, album):
    client = make_client()
    headers = _admin_headers(client)
    order_id = client.post("/api/cart", json=_item(album)).json()["items"][0]["order_id"]

    res = client.put(f"/api/admin/orders/{order_id}/notes", json={"photographer_notes": "Rush"}, headers=headers)
    assert res.json()["photographer_notes"] == "Rush"

    listed = client.get("/api/admin/orders", params={"status": "submitted"}, headers=headers).json()
    assert [o["id"] for o in listed] == [order_id]
    assert client.get("/api/admin/orders/650000000000000000000000", headers=headers).status_code == 404


def test_admin_refund(make_client, gateway, album):
    client = make_client(gateway)
    headers = _admin_headers(client)
    _paid_through_webhook(client, gateway, album)
    (order,) = client.get("/api/admin/orders", headers=headers).json()

    res = client.post(f"/api/admin/orders/{order['id']}/refund", json={"amount": "30"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["payment_status"] == "partial_refund"
    assert Decimal(str(res.json()["refund_amount"])) == Decimal("30.00")

    res = client.post(f"/api/admin/orders/{order['id']}/refund", json={"amount": "90"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid refund amount."


def test_admin_credit_summary(make_client, album):
    client = make_client()
    headers = _admin_headers(client)
    client.post("/api/cart", json=_item(album))

    rows = client.get(f"/api/admin/albums/{album.id}/credits", headers=headers).json()
    classic = next(r for r in rows if r["design_index"] == 0)
    assert classic["free_used"] == 1
    assert classic["free_available"] == 0


def test_admin_album_reorder_rejected(make_client, album):
    client = make_client()
    headers = _admin_headers(client)
    client.post("/api/cart", json=_item(album))

    body = album.model_dump(mode="json")
    body["designs"] = list(reversed(body["designs"]))
    res = client.put(f"/api/admin/albums/{album.id}", json=body, headers=headers)
    assert res.status_code == 400


def test_admin_catalog_crud(make_client, catalog):
    client = make_client()
    headers = _admin_headers(client)

    res = client.put("/api/admin/sizes/size-8x8", json={"name": "8x8", "upcharge": "5"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["id"] == "size-8x8"
    assert "size-8x8" in [s["id"] for s in client.get("/api/admin/sizes", headers=headers).json()]

    assert client.delete("/api/admin/sizes/size-8x8", headers=headers).json() == {"deleted": True}
    assert client.delete("/api/admin/sizes/size-8x8", headers=headers).json() == {"deleted": False}


def test_admin_settings(make_client, catalog):
    client = make_client()
    headers = _admin_headers(client)
    res = client.put(
        "/api/admin/settings",
        json={"currency": "EUR", "currency_symbol": "€", "currency_position": "after"},
        headers=headers,
    )
    assert res.status_code == 200
    assert client.get("/api/admin/settings", headers=headers).json()["currency"] == "EUR"


# --------------------- client history and addresses ---------------------

def test_order_history_route(make_client, album):
    client = make_client()
    client.post("/api/cart", json=_item(album))
    client.post("/api/cart", json=_item(album, 2))
    assert client.get(f"/api/albums/{album.id}/orders").json() == []

    client.post("/api/checkout", json=_checkout(album))
    history = client.get(f"/api/albums/{album.id}/orders").json()
    assert len(history) == 2
    assert {h["status"] for h in history} == {"ordered"}
    assert {Decimal(str(h["total"])) for h in history} == {Decimal("30.00"), Decimal("110.00")}


def test_saved_address_routes(make_client, album):
    client = make_client()
    address = {"name": "Jane Smith", "address1": "12 Harbor Lane", "city": "Portland", "state": "OR", "zip": "97201"}

    res = client.post(f"/api/albums/{album.id}/addresses", json=address)
    assert res.status_code == 200
    address_id = res.json()["id"]
    assert [a["id"] for a in client.get(f"/api/albums/{album.id}/addresses").json()] == [address_id]
    assert client.get(f"/api/albums/{album.id}").json()["saved_addresses"][0]["city"] == "Portland"

    res = client.post(f"/api/albums/{album.id}/addresses", json={**address, "zip": ""})
    assert res.status_code == 400
    assert res.json()["detail"] == "Please fill in all required address fields."

    assert client.delete(f"/api/albums/{album.id}/addresses/{address_id}").json() == []
