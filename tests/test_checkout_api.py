import hashlib
import hmac
import json

import httpx
import pytest

from conftest import ADDRESS, customer
from schemas import can_transition


def order_payload(items, **extra):
    payload = {
        "items": items,
        "total_amount": 0,
        "customer_name": "Ana Santos",
        "customer_email": "ana@solespace.ph",
        "customer_phone": "09171234567",
        "shipping_address": "123 Rizal Street, Ibabang Dupay, Lucena City, Quezon, CALABARZON, 4301",
    }
    payload.update(extra)
    return payload


def product(client, product_id):
    return client.get(f"/products/{product_id}").json()


# Addresses

def test_first_address_becomes_default(seeded):
    res = seeded.post("/api/user/addresses", json=ADDRESS, headers=customer(1))
    assert res.status_code == 201
    address = res.json()["address"]
    assert address["is_default"] is True
    assert address["full_address"].startswith("123 Rizal Street, Ibabang Dupay")


def test_only_one_default_address(seeded):
    first = seeded.post("/api/user/addresses", json=ADDRESS, headers=customer(1)).json()["address"]
    second = seeded.post(
        "/api/user/addresses", json={**ADDRESS, "address_line": "45 Quezon Avenue", "is_default": True},
        headers=customer(1),
    ).json()["address"]

    addresses = seeded.get("/api/user/addresses", headers=customer(1)).json()["addresses"]
    defaults = [a["id"] for a in addresses if a["is_default"]]
    assert defaults == [second["id"]]

    seeded.post(f"/api/user/addresses/{first['id']}/set-default", headers=customer(1))
    addresses = seeded.get("/api/user/addresses", headers=customer(1)).json()["addresses"]
    assert [a["id"] for a in addresses if a["is_default"]] == [first["id"]]


def test_deleting_default_promotes_another(seeded):
    first = seeded.post("/api/user/addresses", json=ADDRESS, headers=customer(1)).json()["address"]
    second = seeded.post(
        "/api/user/addresses", json={**ADDRESS, "address_line": "45 Quezon Avenue"}, headers=customer(1)
    ).json()["address"]

    res = seeded.delete(f"/api/user/addresses/{first['id']}", headers=customer(1))
    assert res.status_code == 200
    addresses = seeded.get("/api/user/addresses", headers=customer(1)).json()["addresses"]
    assert [(a["id"], a["is_default"]) for a in addresses] == [(second["id"], True)]


def test_address_validation(seeded):
    res = seeded.post("/api/user/addresses", json={**ADDRESS, "postal_code": "41A0"}, headers=customer(1))
    assert res.status_code == 422
    res = seeded.post("/api/user/addresses", json={**ADDRESS, "phone": "12345"}, headers=customer(1))
    assert res.status_code == 422


def test_addresses_are_per_customer(seeded):
    address = seeded.post("/api/user/addresses", json=ADDRESS, headers=customer(1)).json()["address"]
    res = seeded.put(f"/api/user/addresses/{address['id']}", json=ADDRESS, headers=customer(2))
    assert res.status_code == 404


# Orders

def test_create_order_uses_catalogue_prices_and_decrements_stock(seeded):
    items = [
        {"id": "x", "pid": 1, "name": "Oxford", "price": 1, "qty": 2, "size": "41", "color": "Black"},
        {"id": "y", "pid": 4, "name": "Care Kit", "price": 1, "qty": 1},
    ]
    res = seeded.post("/api/checkout/create-order", json=order_payload(items))
    assert res.status_code == 200
    order = res.json()["order"]
    assert order["total_amount"] == 3200 * 2 + 650
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["order_number"].startswith("ORD-")

    oxford = product(seeded, 1)
    assert oxford["stock_quantity"] == 18
    assert next(v for v in oxford["variants"] if v["size"] == "41")["quantity"] == 4
    assert product(seeded, 4)["stock_quantity"] == 49


def test_create_order_rejects_insufficient_variant_stock(seeded):
    items = [{"id": "x", "pid": 3, "name": "Chelsea", "price": 4100, "qty": 7, "size": "42", "color": "Tan"}]
    res = seeded.post("/api/checkout/create-order", json=order_payload(items))
    assert res.status_code == 400
    assert res.json()["available"] == 6
    assert product(seeded, 3)["stock_quantity"] == 12


def test_create_order_unknown_product_or_variant(seeded):
    res = seeded.post("/api/checkout/create-order", json=order_payload(
        [{"id": "x", "pid": 99, "name": "Ghost", "price": 1, "qty": 1}]
    ))
    assert res.status_code == 404
    res = seeded.post("/api/checkout/create-order", json=order_payload(
        [{"id": "x", "pid": 1, "name": "Oxford", "price": 1, "qty": 1, "size": "46", "color": "Red"}]
    ))
    assert res.status_code == 404
    assert "Variant not found" in res.json()["message"]


def test_create_order_requires_items_and_email(seeded):
    assert seeded.post("/api/checkout/create-order", json=order_payload([])).status_code == 422
    res = seeded.post("/api/checkout/create-order", json=order_payload(
        [{"id": "x", "pid": 4, "name": "Kit", "price": 650, "qty": 1}], customer_email="not-an-email"
    ))
    assert res.status_code == 422


def test_create_order_removes_only_ordered_cart_lines(seeded):
    kit = seeded.post("/api/cart/add", json={"product_id": 4}, headers=customer(1)).json()["item"]
    seeded.post("/api/cart/add", json={"product_id": 2}, headers=customer(1))

    items = [{"id": str(kit["id"]), "pid": 4, "name": "Care Kit", "price": 650, "qty": 1}]
    seeded.post("/api/checkout/create-order", json=order_payload(items), headers=customer(1))

    remaining = seeded.get("/api/cart", headers=customer(1)).json()["items"]
    assert [i["product_id"] for i in remaining] == [2]


def test_order_visibility(seeded):
    items = [{"id": "x", "pid": 4, "name": "Care Kit", "price": 650, "qty": 1}]
    guest_order = seeded.post("/api/checkout/create-order", json=order_payload(items)).json()["order_id"]
    own_order = seeded.post("/api/checkout/create-order", json=order_payload(items), headers=customer(1)).json()["order_id"]

    assert seeded.get(f"/api/orders/{guest_order}/details").status_code == 200
    assert seeded.get(f"/api/orders/{own_order}/details", headers=customer(1)).status_code == 200
    assert seeded.get(f"/api/orders/{own_order}/details", headers=customer(2)).status_code == 404

    mine = seeded.get("/api/orders", headers=customer(1)).json()["orders"]
    assert [o["id"] for o in mine] == [own_order]


def test_attach_payment_link(seeded):
    items = [{"id": "x", "pid": 4, "name": "Care Kit", "price": 650, "qty": 1}]
    order_id = seeded.post("/api/checkout/create-order", json=order_payload(items)).json()["order_id"]

    res = seeded.post(f"/api/orders/{order_id}/update-payment-link", json={"paymongo_link_id": "link_abc"})
    assert res.json() == {"success": True}
    details = seeded.get(f"/api/orders/{order_id}/details").json()["order"]
    assert details["paymongo_link_id"] == "link_abc"
    assert seeded.post("/api/orders/999/update-payment-link", json={"paymongo_link_id": "x"}).status_code == 404


# Payment links

def test_paymongo_proxy_creates_link(client, gateway_handler):
    res = client.post("/api/paymongo-proxy", json={"amount": 1299.5, "description": "SoleSpace Order #1"})
    assert res.status_code == 200
    assert res.json() == {"checkout_url": "https://pm.link/solespace/test", "link_id": "link_test_1"}

    sent = gateway_handler["requests"][0]
    attributes = json.loads(sent.content)["data"]["attributes"]
    assert attributes["amount"] == 129950
    assert attributes["currency"] == "PHP"
    assert attributes["success_url"] == "http://shop.test/order-success"
    assert sent.headers["Authorization"].startswith("Basic ")


@pytest.mark.parametrize("amount, centavos", [(0.29, 29), (1.15, 115), (19.99, 1999), (4100, 410000)])
def test_paymongo_amount_rounds_to_centavos(client, gateway_handler, amount, centavos):
    res = client.post("/api/paymongo-proxy", json={"amount": amount, "description": "SoleSpace Order #2"})
    assert res.status_code == 200
    attributes = json.loads(gateway_handler["requests"][0].content)["data"]["attributes"]
    assert attributes["amount"] == centavos


def test_paymongo_proxy_rejects_invalid_amount(client, gateway_handler):
    for body in ({}, {"amount": 0}, {"amount": -5}):
        res = client.post("/api/paymongo-proxy", json=body)
        assert res.status_code == 400
        assert res.json()["error"] == "Invalid amount"
    assert gateway_handler["requests"] == []


def test_paymongo_proxy_forwards_gateway_errors(client, gateway_handler):
    gateway_handler["handler"] = lambda request: httpx.Response(
        401, json={"errors": [{"detail": "API key is invalid"}]}
    )
    res = client.post("/api/paymongo-proxy", json={"amount": 100})
    assert res.status_code == 401
    assert res.json()["error"] == "PayMongo Error: API key is invalid"


def test_paymongo_proxy_incomplete_response(client, gateway_handler):
    gateway_handler["handler"] = lambda request: httpx.Response(200, json={"data": {"id": "link_x"}})
    res = client.post("/api/paymongo-proxy", json={"amount": 100})
    assert res.status_code == 500
    assert res.json()["error"] == "Incomplete PayMongo response"


# Customer order actions

def _customer_order(client, user_id=1, qty=2):
    items = [{"id": "x", "pid": 1, "name": "Oxford", "price": 3200, "qty": qty, "size": "42", "color": "Brown"}]
    return client.post("/api/checkout/create-order", json=order_payload(items), headers=customer(user_id)).json()["order_id"]


def test_cancel_pending_order_restores_stock(seeded):
    order_id = _customer_order(seeded)
    assert product(seeded, 1)["stock_quantity"] == 18

    res = seeded.post("/orders/cancel", json={"order_id": order_id, "reason": "Changed my mind"}, headers=customer(1))
    assert res.status_code == 200

    oxford = product(seeded, 1)
    assert oxford["stock_quantity"] == 20
    assert next(v for v in oxford["variants"] if v["color"] == "Brown")["quantity"] == 6
    assert seeded.get(f"/api/orders/{order_id}/details", headers=customer(1)).json()["order"]["status"] == "cancelled"

    again = seeded.post("/orders/cancel", json={"order_id": order_id}, headers=customer(1))
    assert again.status_code == 400
    assert product(seeded, 1)["stock_quantity"] == 20


async def _set_status(db, order_id, status):
    await db["order"].update_one({"id": order_id}, {"$set": {"status": status}})


def test_cancel_rules(seeded, db):
    import asyncio

    order_id = _customer_order(seeded)
    assert seeded.post("/orders/cancel", json={"order_id": order_id}, headers=customer(2)).status_code == 404
    assert seeded.post("/orders/cancel", json={"order_id": order_id}).status_code == 401

    asyncio.run(_set_status(db, order_id, "processing"))
    res = seeded.post("/orders/cancel", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == 400
    assert res.json()["message"] == "Only pending orders can be cancelled"


def test_confirm_delivery(seeded, db):
    import asyncio

    order_id = _customer_order(seeded)
    res = seeded.post("/orders/confirm-delivery", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == 400

    asyncio.run(_set_status(db, order_id, "shipped"))
    res = seeded.post("/orders/confirm-delivery", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == 200
    assert seeded.get(f"/api/orders/{order_id}/details", headers=customer(1)).json()["order"]["status"] == "delivered"

    # Already delivered is terminal
    res = seeded.post("/orders/confirm-delivery", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == 400


@pytest.mark.parametrize("status, allowed", [
    ("pending", False),
    ("processing", False),
    ("to_ship", True),
    ("shipped", True),
    ("delivered", False),
    ("completed", False),
    ("cancelled", False),
])
def test_confirm_delivery_follows_order_transitions(seeded, db, status, allowed):
    import asyncio

    order_id = _customer_order(seeded)
    asyncio.run(_set_status(db, order_id, status))
    res = seeded.post("/orders/confirm-delivery", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == (200 if allowed else 400)
    assert can_transition(status, "delivered") is allowed


@pytest.mark.parametrize("status", ["processing", "to_ship", "shipped", "delivered", "completed", "cancelled"])
def test_only_pending_orders_cancel(seeded, db, status):
    import asyncio

    order_id = _customer_order(seeded)
    asyncio.run(_set_status(db, order_id, status))
    res = seeded.post("/orders/cancel", json={"order_id": order_id}, headers=customer(1))
    assert res.status_code == 400
    assert res.json()["message"] == "Only pending orders can be cancelled"


def test_order_actions_are_audited(seeded, db):
    import asyncio

    order_id = _customer_order(seeded)
    seeded.post("/orders/cancel", json={"order_id": order_id, "reason": "Wrong size"}, headers=customer(1))

    async def actions():
        return [d["action"] async for d in db["audit_log"].find({"target_id": order_id})]

    assert asyncio.run(actions()) == ["create_order", "cancel_order"]


# Webhook

def webhook_event(event_type, link_id="link_abc", payment_id="pay_123"):
    return {"data": {"attributes": {
        "type": event_type,
        "data": {"id": payment_id, "attributes": {"payment_link_id": link_id}},
    }}}


def _order_with_link(client, link_id="link_abc"):
    items = [{"id": "x", "pid": 4, "name": "Care Kit", "price": 650, "qty": 1}]
    order_id = client.post("/api/checkout/create-order", json=order_payload(items)).json()["order_id"]
    client.post(f"/api/orders/{order_id}/update-payment-link", json={"paymongo_link_id": link_id})
    return order_id


def test_webhook_marks_order_paid(seeded):
    order_id = _order_with_link(seeded)
    res = seeded.post("/api/webhooks/paymongo", json=webhook_event("link.payment.paid"))
    assert res.json() == {"message": "Payment processed"}
    assert seeded.get(f"/api/orders/{order_id}/details").json()["order"]["payment_status"] == "paid"


def test_webhook_failed_and_other_events(seeded):
    order_id = _order_with_link(seeded)
    res = seeded.post("/api/webhooks/paymongo", json=webhook_event("link.payment.failed"))
    assert res.json() == {"message": "Payment failure recorded"}
    res = seeded.post("/api/webhooks/paymongo", json=webhook_event("source.chargeable"))
    assert res.json() == {"message": "Event received"}
    assert seeded.get(f"/api/orders/{order_id}/details").json()["order"]["payment_status"] == "pending"


def test_webhook_unknown_link_and_bad_payload(seeded):
    res = seeded.post("/api/webhooks/paymongo", json=webhook_event("link.payment.paid", link_id="nope"))
    assert res.status_code == 404
    assert seeded.post("/api/webhooks/paymongo", json={"data": {}}).status_code == 400


@pytest.mark.parametrize("event", [
    {"data": {"attributes": {"type": "link.payment.paid", "data": ["pay_123"]}}},
    {"data": {"attributes": {"type": "link.payment.paid", "data": "pay_123"}}},
    {"data": {"attributes": "link.payment.paid"}},
    {"data": ["link.payment.paid"]},
    ["link.payment.paid"],
])
def test_webhook_rejects_malformed_event_shapes(seeded, event):
    res = seeded.post("/api/webhooks/paymongo", json=event)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid payload"


def test_webhook_signature(seeded, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "PAYMONGO_WEBHOOK_SECRET", "whsec")
    _order_with_link(seeded)
    body = json.dumps(webhook_event("link.payment.paid")).encode()

    bad = seeded.post("/api/webhooks/paymongo", content=body, headers={"Paymongo-Signature": "deadbeef"})
    assert bad.status_code == 401

    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    ok = seeded.post("/api/webhooks/paymongo", content=body, headers={"Paymongo-Signature": signature})
    assert ok.status_code == 200


def test_webhook_skips_csrf(seeded, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "CSRF_TOKEN", "tok")
    csrf = {"X-CSRF-TOKEN": "tok"}
    items = [{"id": "x", "pid": 4, "name": "Care Kit", "price": 650, "qty": 1}]
    order_id = seeded.post(
        "/api/checkout/create-order", json=order_payload(items), headers=csrf
    ).json()["order_id"]
    seeded.post(
        f"/api/orders/{order_id}/update-payment-link", json={"paymongo_link_id": "link_abc"},
        headers=csrf,
    )
    res = seeded.post("/api/webhooks/paymongo", json=webhook_event("link.payment.paid"))
    assert res.status_code == 200
