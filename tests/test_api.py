"""Route-level tests via TestClient."""

from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

import orders
from database import get_db
from errors import StoreUnavailable


def _brand(client, name="Acme"):
    response = client.post("/api/brands", json={"name": name})
    assert response.status_code == 201
    return response.json()


def _product(client, brand_id, name="Widget"):
    response = client.post("/api/products", json={"name": name, "brandId": brand_id})
    assert response.status_code == 201
    return response.json()


def _order(client, items, bit="Andur"):
    response = client.post(
        "/api/orders",
        json={"counterName": "Shree Stores", "bit": bit, "totalItems": len(items), "totalAmount": 100, "items": items},
    )
    assert response.status_code == 201
    return response.json()


def test_order_flow_through_pending_demand(client):
    brand = _brand(client)
    product = _product(client, brand["_id"])

    first = _order(client, [{"productId": product["_id"], "unit": "Pc", "quantity": 5}])
    second = _order(client, [{"productId": product["_id"], "unit": "Pc", "quantity": 3}])
    assert first["orderNumber"] == "ORD-001"
    assert second["orderNumber"] == "ORD-002"
    assert first["items"][0]["productName"] == "Widget"

    response = client.get("/api/orders/pending-demand")
    assert response.status_code == 200
    body = response.json()
    assert body["items"]["Pc"] == [{
        "productId": product["_id"],
        "productName": "Widget",
        "brandName": "Acme",
        "unit": "Pc",
        "totalQuantity": 8,
        "orderCount": 2,
        "orderNumbers": ["ORD-001", "ORD-002"],
    }]
    assert body["totals"]["totalOrders"] == 2

    response = client.patch(f"/api/orders/{first['_id']}/status", json={"status": "Completed"})
    assert response.json()["status"] == "Completed"
    assert client.get("/api/orders/pending-demand").json()["totals"]["Pc"] == 3

    stats = client.get("/api/orders/stats/dashboard").json()
    assert stats == {"totalOrders": 2, "totalItems": 1, "pendingOrders": 1, "totalBits": 8}


def test_order_crud_routes(client):
    order = _order(client, [])

    assert client.get(f"/api/orders/{order['_id']}").json()["orderNumber"] == "ORD-001"
    assert len(client.get("/api/orders", params={"status": "Pending"}).json()) == 1
    assert len(client.get("/api/orders/recent/5").json()) == 1

    response = client.put(f"/api/orders/{order['_id']}", json={"counterName": "New Name", "orderNumber": "X"})
    assert response.status_code == 200
    assert response.json()["counterName"] == "New Name"
    assert response.json()["orderNumber"] == "ORD-001"

    assert client.delete(f"/api/orders/{order['_id']}").json() == {"message": "Order deleted successfully"}
    assert client.get(f"/api/orders/{order['_id']}").status_code == 404


def test_cleanup_route_reports_deleted_count(client, db):
    order = _order(client, [])
    db.order.update_one({"_id": ObjectId(order["_id"])}, {"$set": {"status": "Completed", "date": "01/01/2020"}})

    response = client.post("/api/orders/cleanup", json={"orderIds": [order["_id"]]})

    assert response.json() == {"deletedCount": 1}


def test_error_kinds_are_distinct(client):
    brand = _brand(client)
    _product(client, brand["_id"])

    missing = client.get(f"/api/orders/{ObjectId()}")
    assert (missing.status_code, missing.json()["kind"]) == (404, "not_found")

    malformed = client.get("/api/products/not-an-id")
    assert (malformed.status_code, malformed.json()["kind"]) == (404, "not_found")

    invalid = client.post("/api/orders", json={"bit": "Andur"})
    assert (invalid.status_code, invalid.json()["kind"]) == (400, "validation_error")

    bad_status = client.patch(f"/api/orders/{ObjectId()}/status", json={"status": "Shipped"})
    assert (bad_status.status_code, bad_status.json()["kind"]) == (400, "validation_error")

    duplicate = client.post("/api/brands", json={"name": "Acme"})
    assert (duplicate.status_code, duplicate.json()["kind"]) == (409, "conflict")

    blocked = client.delete(f"/api/brands/{brand['_id']}")
    assert (blocked.status_code, blocked.json()["kind"]) == (422, "integrity_violation")

    no_brand = client.post("/api/products", json={"name": "Gadget", "brandId": str(ObjectId())})
    assert (no_brand.status_code, no_brand.json()["kind"]) == (404, "not_found")


def test_body_type_errors_map_to_validation_kind(client):
    response = client.post("/api/orders", json={"counterName": "A", "bit": "Andur", "totalItems": "many", "totalAmount": 1})
    assert response.status_code == 400
    assert response.json()["kind"] == "validation_error"


def test_store_timeouts_are_retryable(client, monkeypatch):
    def timeout(*args, **kwargs):
        raise ServerSelectionTimeoutError("no primary")

    monkeypatch.setattr(orders, "list_orders", timeout)
    response = client.get("/api/orders")

    assert response.status_code == 503
    assert response.json() == {"error": "Database temporarily unavailable", "kind": "store_unavailable", "retryable": True}


def test_unconfigured_database(client):
    from main import app

    def unavailable():
        raise StoreUnavailable("Database is not configured")

    app.dependency_overrides[get_db] = unavailable
    response = client.get("/api/brands")

    assert response.status_code == 503
    assert response.json()["kind"] == "store_unavailable"


def test_product_and_brand_routes(client):
    acme = _brand(client, "Acme")
    globex = _brand(client, "Globex")
    widget = _product(client, acme["_id"], "Widget")
    _product(client, globex["_id"], "Sprocket")

    assert client.get("/api/products/brands/unique").json() == ["Acme", "Globex"]
    assert [p["name"] for p in client.get("/api/products", params={"brand": "Acme"}).json()] == ["Widget"]

    response = client.put(f"/api/products/{widget['_id']}", json={"name": "Widget", "brandId": globex["_id"]})
    assert response.json()["brandName"] == "Globex"
    assert client.get(f"/api/brands/{acme['_id']}").status_code == 404
    assert client.get(f"/api/brands/{globex['_id']}").json()["productCount"] == 2

    response = client.put("/api/brands/order", json={"brandOrders": [{"brandId": globex["_id"], "order": 2}]})
    assert response.json() == {"updated": 1, "missing": []}

    response = client.put("/api/products/order", json={"productOrders": [{"productId": widget["_id"], "order": 9}]})
    assert response.json()["updated"] == 1

    response = client.post("/api/brands/cleanup")
    assert response.json() == {"message": "Brand cleanup completed successfully", "deleted": 0, "repaired": 0}

    assert client.delete(f"/api/products/{widget['_id']}").status_code == 200
    assert client.get(f"/api/brands/{globex['_id']}").json()["productCount"] == 1


def test_retailer_routes(client):
    payload = {"name": "Laxmi Traders", "phone": "+91 98765 43210", "bit": "Andur"}
    created = client.post("/api/retailers", json=payload)
    assert created.status_code == 201
    retailer = created.json()

    duplicate = client.post("/api/retailers", json=dict(payload, name="Other"))
    assert (duplicate.status_code, duplicate.json()["kind"]) == (409, "conflict")

    bad_phone = client.post("/api/retailers", json=dict(payload, phone="12ab"))
    assert bad_phone.status_code == 400

    bad_bit = client.post("/api/retailers", json=dict(payload, phone="9876500000", bit="Atlantis"))
    assert bad_bit.status_code == 400

    missing = client.post("/api/retailers", json={"name": "No Phone"})
    assert missing.json()["kind"] == "validation_error"

    client.post("/api/retailers", json={"name": "Anand Stores", "phone": "9876500001", "bit": "Omerga"})
    assert client.get("/api/retailers/bits/unique").json() == ["Andur", "Omerga"]
    assert [r["name"] for r in client.get("/api/retailers/bit/Omerga").json()] == ["Anand Stores"]
    assert [r["name"] for r in client.get("/api/retailers", params={"search": "laxmi"}).json()] == ["Laxmi Traders"]

    updated = client.put(f"/api/retailers/{retailer['_id']}", json=dict(payload, name="Laxmi Wholesale"))
    assert updated.json()["name"] == "Laxmi Wholesale"

    clash = client.put(f"/api/retailers/{retailer['_id']}", json=dict(payload, phone="9876500001"))
    assert clash.status_code == 409

    assert client.delete(f"/api/retailers/{retailer['_id']}").status_code == 200
    assert client.get(f"/api/retailers/{retailer['_id']}").status_code == 404


def test_routes_require_a_token(anonymous_client):
    assert anonymous_client.get("/api/orders").status_code == 401

    bogus = anonymous_client.get("/api/orders", headers={"Authorization": "Bearer nonsense"})
    assert bogus.status_code == 401


def test_register_and_login(anonymous_client):
    credentials = {"email": "staff@orderdesk.in", "password": "s3cret-pass"}

    registered = anonymous_client.post("/auth/register", json=credentials)
    assert registered.status_code == 200
    token = registered.json()["access_token"]

    again = anonymous_client.post("/auth/register", json=credentials)
    assert again.status_code == 409

    wrong = anonymous_client.post("/auth/token", json=dict(credentials, password="nope"))
    assert wrong.status_code == 401

    login = anonymous_client.post("/auth/token", data={"username": "staff@orderdesk.in", "password": "s3cret-pass"})
    assert login.status_code == 200

    response = anonymous_client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == []
