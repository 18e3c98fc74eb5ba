import io
import json

import bcrypt
from flask_jwt_extended import create_access_token

from qotore.fragrances import PNG_SIGNATURE

PNG_BYTES = PNG_SIGNATURE + b"\x00" * 64


def seed_fragrance(fake_db, name="Oud Royal", slug="oud-royal", hidden=False, variants=None):
    fragrance = fake_db.seed(
        "fragrances",
        name=name,
        slug=slug,
        brand="Qotore",
        description="Smoky oud",
        image_path=f"fragrance-images/{slug}.png",
        hidden=hidden,
    )
    for variant in variants if variants is not None else [{"size_ml": 10, "price_cents": 8500}]:
        fake_db.seed("variants", fragrance_id=fragrance["id"], is_whole_bottle=False, **variant)
    return fragrance


# --- Session ---


def test_login_requires_credentials(client):
    response = client.post("/admin/login", json={"username": "admin"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "Username and password are required"


def test_login_rejects_wrong_password(client):
    response = client.post("/admin/login", json={"username": "admin", "password": "nope"})

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid username or password"


def test_login_without_configured_admin(make_app):
    client = make_app(ADMIN_USER="", ADMIN_PASS="").test_client()

    response = client.post("/admin/login", json={"username": "admin", "password": "x"})

    assert response.status_code == 500
    assert "Server configuration error" in response.get_json()["error"]


def test_login_sets_session_cookie(client):
    response = client.post("/admin/login", json={"username": "admin", "password": "correct-horse"})

    assert response.status_code == 200
    cookie = next(
        header for header in response.headers.getlist("Set-Cookie") if header.startswith("admin_session=")
    )
    assert "HttpOnly" in cookie
    assert "Max-Age=86400" in cookie


def test_login_with_bcrypt_hash(make_app):
    password_hash = bcrypt.hashpw(b"hashed-secret", bcrypt.gensalt(rounds=4)).decode("utf-8")
    client = make_app(ADMIN_PASS="", ADMIN_PASS_HASH=password_hash).test_client()

    ok = client.post("/admin/login", json={"username": "admin", "password": "hashed-secret"})
    bad = client.post("/admin/login", json={"username": "admin", "password": "correct-horse"})

    assert ok.status_code == 200
    assert bad.status_code == 401


def test_admin_routes_require_session(client):
    response = client.get("/admin/orders")

    assert response.status_code == 401
    assert response.get_json() == {
        "success": False,
        "error": "Authentication required",
        "redirectUrl": "/login.html",
    }


def test_forged_or_foreign_tokens_are_rejected(app, client):
    with app.app_context():
        review_token = create_access_token(identity="5", additional_claims={"purpose": "order_review"})

    forged = client.get("/admin/orders", headers={"Cookie": "admin_session=not-a-jwt"})
    foreign = client.get("/admin/orders", headers={"Cookie": f"admin_session={review_token}"})

    assert forged.status_code == 401
    assert foreign.status_code == 401


def test_check_and_logout(admin_client):
    assert admin_client.get("/admin/check").get_json() == {"authenticated": True, "username": "admin"}

    response = admin_client.post("/admin/logout")
    assert response.get_json()["success"] is True
    assert admin_client.get("/admin/check").status_code == 401


def test_logout_get_redirects_to_login(admin_client):
    response = admin_client.get("/admin/logout")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login.html")


# --- Orders ---


def test_list_orders_with_items_and_stats(admin_client, seed_order):
    seed_order(status="completed", total_amount=12500)
    seed_order(status="pending")

    body = admin_client.get("/admin/orders").get_json()

    assert body["count"] == 2
    assert body["stats"]["completed"] == 1
    assert body["stats"]["pending"] == 1
    assert body["stats"]["revenue"] == 12.5
    first_item = body["data"][0]["items"][0]
    assert first_item == {
        "id": first_item["id"],
        "fragrance_id": 1,
        "variant_id": 11,
        "name": "Oud Royal",
        "brand": "Qotore",
        "size": "10ml",
        "price": 8.5,
        "quantity": 3,
        "total": 25.5,
    }


def test_update_status_rejects_other_statuses(admin_client, seed_order, fake_db):
    order = seed_order()

    for status in ("reviewed", "cancelled", "shipped"):
        response = admin_client.post("/admin/update-order-status", json={"id": order["id"], "status": status})
        assert response.status_code == 400
        assert response.get_json()["validOptions"] == ["pending", "completed"]

    assert fake_db.tables["orders"][0]["status"] == "pending"


def test_update_status_validation_and_missing_order(admin_client):
    missing_fields = admin_client.post("/admin/update-order-status", json={"id": 1})
    missing_order = admin_client.post("/admin/update-order-status", json={"id": 999, "status": "completed"})

    assert missing_fields.status_code == 400
    assert missing_fields.get_json()["error"] == "Missing required fields: id, status"
    assert missing_order.status_code == 404


def test_update_status_changes_order(admin_client, seed_order, fake_db):
    order = seed_order(order_number="ORD-00000042")

    response = admin_client.post("/admin/update-order-status", json={"id": order["id"], "status": "completed"})

    body = response.get_json()
    assert response.status_code == 200
    assert body["data"]["previousStatus"] == "pending"
    assert body["data"]["newStatus"] == "completed"
    assert body["data"]["totalAmount"] == 25.5
    assert body["data"]["customer_name"] == "Aisha Al Balushi"
    assert fake_db.tables["orders"][0]["status"] == "completed"
    assert "updated_at" in fake_db.tables["orders"][0]


def test_update_status_same_status_short_circuits(admin_client, seed_order):
    order = seed_order(order_number="ORD-00000042")

    response = admin_client.post("/admin/update-order-status", json={"id": order["id"], "status": "pending"})

    assert response.get_json()["message"] == "Order ORD-00000042 is already pending"


def test_malformed_json_is_rejected(admin_client):
    response = admin_client.post(
        "/admin/update-order-status", data="{broken", content_type="application/json"
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid request data format"


def test_mark_order_reviewed(admin_client, seed_order, fake_db):
    order = seed_order()
    completed = seed_order(status="completed")

    ok = admin_client.post("/admin/mark-order-reviewed", json={"order_id": order["id"]})
    refused = admin_client.post("/admin/mark-order-reviewed", json={"order_id": completed["id"]})
    again = admin_client.post("/admin/mark-order-reviewed", json={"order_id": order["id"]})

    assert ok.status_code == 200
    assert fake_db.tables["orders"][0]["reviewed"] is True
    assert fake_db.tables["orders"][0]["status"] == "reviewed"
    assert refused.status_code == 400
    assert again.status_code == 400


def test_toggle_order_review(admin_client, seed_order, fake_db):
    order = seed_order()

    not_bool = admin_client.post("/admin/toggle-order-review", json={"id": order["id"], "reviewed": "yes"})
    on = admin_client.post("/admin/toggle-order-review", json={"id": order["id"], "reviewed": True})
    assert fake_db.tables["orders"][0]["status"] == "reviewed"
    off = admin_client.post("/admin/toggle-order-review", json={"id": order["id"], "reviewed": False})

    assert not_bool.status_code == 400
    assert on.get_json()["data"]["reviewed"] is True
    assert off.get_json()["data"]["status"] == "pending"
    assert fake_db.tables["orders"][0]["reviewed"] is False


def test_admin_cancel_order(admin_client, seed_order, fake_db):
    order = seed_order(minutes_ago=600, notes="Call before delivery")
    completed = seed_order(status="completed")

    refused = admin_client.post("/admin/cancel-order", json={"id": completed["id"]})
    response = admin_client.post("/admin/cancel-order", json={"id": order["id"], "reason": "Out of stock"})
    again = admin_client.post("/admin/cancel-order", json={"id": order["id"]})

    assert refused.get_json()["error"] == "Cannot cancel completed orders"
    assert response.status_code == 200
    stored = fake_db.tables["orders"][0]
    assert stored["status"] == "cancelled"
    assert stored["notes"].startswith("Call before delivery\n\n--- CANCELLED ---")
    assert "Reason: Out of stock" in stored["notes"]
    assert again.get_json()["error"] == "Order is already cancelled"


def test_delete_order_removes_items_first(admin_client, seed_order, fake_db):
    order = seed_order(order_number="ORD-00000042")
    keep = seed_order()

    invalid = admin_client.post("/admin/delete-order", json={"id": "abc"})
    response = admin_client.post("/admin/delete-order", json={"id": str(order["id"])})

    assert invalid.status_code == 400
    assert response.get_json()["data"]["amount"] == "25.500"
    assert [row["id"] for row in fake_db.tables["orders"]] == [keep["id"]]
    assert all(item["order_id"] == keep["id"] for item in fake_db.tables["order_items"])


def admin_order_payload(**overrides):
    payload = {
        "customer": {"firstName": "Salim", "lastName": "Al Harthy", "phone": "99887766"},
        "delivery": {"address": "Al Khuwair", "city": "Muscat", "region": "Bawshar"},
        "items": [
            {
                "fragranceId": 1,
                "variantId": 11,
                "fragranceName": "Oud Royal",
                "variantSize": "10ml",
                "variantPrice": 8.5,
                "quantity": 2,
            },
            {"fragranceId": 1, "variantId": 12, "variantSize": "20ml", "variantPrice": 15, "quantity": 0},
        ],
        "total": 17,
    }
    payload.update(overrides)
    return payload


def test_admin_add_order(admin_client, fake_db):
    response = admin_client.post("/admin/add-order", json=admin_order_payload())

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["total"] == 17.0
    assert data["customer_phone"] == "96899887766"
    assert len(fake_db.tables["order_items"]) == 1
    assert fake_db.tables["orders"][0]["total_amount"] == 17000


def test_admin_add_order_requires_fields(admin_client):
    response = admin_client.post(
        "/admin/add-order", json=admin_order_payload(delivery={"city": "Muscat"})
    )

    assert response.status_code == 400
    assert response.get_json()["missing"] == ["delivery_address"]


def test_admin_add_order_rolls_back_when_items_fail(admin_client, fake_db):
    fake_db.fail_inserts.add("order_items")

    response = admin_client.post("/admin/add-order", json=admin_order_payload())

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to save order items"
    assert fake_db.tables["orders"] == []


def test_order_stats(admin_client, seed_order):
    seed_order()

    data = admin_client.get("/admin/orders/stats").get_json()["data"]

    assert data["orders_today"] + data["orders_yesterday"] >= 1
    assert len(data["recent_orders"]) == 1


# --- Catalogue ---


def test_admin_fragrances_include_hidden(admin_client, fake_db):
    seed_fragrance(fake_db)
    seed_fragrance(fake_db, name="Rose", slug="rose", hidden=True, variants=[])

    body = admin_client.get("/admin/fragrances").get_json()

    assert body["count"] == 2
    assert body["stats"] == {"total": 2, "visible": 1, "hidden": 1, "variants": 1}
    oud = next(item for item in body["data"] if item["slug"] == "oud-royal")
    assert oud["variants"][0]["price_cents"] == 8500
    assert oud["image_url"] == "/api/image/oud-royal.png"


def fragrance_payload(**overrides):
    payload = {
        "name": "Amber Night",
        "slug": "amber-night",
        "brand": "Qotore",
        "description": "Warm amber",
        "variants": [{"size_ml": 10, "price": 8.5}, {"is_whole_bottle": True}],
    }
    payload.update(overrides)
    return payload


def test_add_fragrance(admin_client, fake_db):
    response = admin_client.post("/admin/add-fragrance", json=fragrance_payload())

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["slug"] == "amber-night"
    assert [variant["price_display"] for variant in data["variants"]] == [
        "8.500 OMR",
        "Contact for pricing",
    ]
    assert [row["price_cents"] for row in fake_db.tables["variants"]] == [8500, None]


def test_add_fragrance_validation(admin_client, fake_db):
    seed_fragrance(fake_db, slug="amber-night")

    missing = admin_client.post("/admin/add-fragrance", json=fragrance_payload(description=""))
    bad_variants = admin_client.post(
        "/admin/add-fragrance", json=fragrance_payload(slug="new-one", variants=[{"size_ml": 0}])
    )
    duplicate = admin_client.post("/admin/add-fragrance", json=fragrance_payload())

    assert missing.status_code == 400
    assert bad_variants.status_code == 400
    assert bad_variants.get_json()["error"] == "At least one valid variant is required"
    assert duplicate.status_code == 409


def test_add_fragrance_reports_partial_success(admin_client, fake_db):
    fake_db.fail_inserts.add("variants")

    response = admin_client.post("/admin/add-fragrance", json=fragrance_payload())

    body = response.get_json()
    assert response.status_code == 207
    assert body["partialSuccess"] is True
    assert body["fragranceId"] == fake_db.tables["fragrances"][0]["id"]


def test_add_fragrance_with_image(admin_client, fake_db):
    response = admin_client.post(
        "/admin/add-fragrance",
        data={
            "data": json.dumps(fragrance_payload()),
            "image": (io.BytesIO(PNG_BYTES), "amber.png", "image/png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    assert fake_db.tables["fragrances"][0]["image_path"] == "fragrance-images/amber-night.png"
    assert ("fragrance-images", "amber-night.png") in fake_db.objects


def test_update_fragrance_replaces_variants(admin_client, fake_db):
    fragrance = seed_fragrance(fake_db, variants=[{"size_ml": 10, "price_cents": 8500}, {"size_ml": 20, "price_cents": 15000}])

    response = admin_client.post(
        "/admin/update-fragrance",
        json={
            "id": fragrance["id"],
            "name": "Oud Royal Intense",
            "description": "Darker",
            "variants": [{"size_ml": 30, "price_cents": 21000}],
        },
    )

    assert response.status_code == 200
    assert response.get_json()["data"]["slug"] == "oud-royal-intense"
    assert [(row["size_ml"], row["max_quantity"]) for row in fake_db.tables["variants"]] == [(30, 50)]


def test_update_fragrance_errors(admin_client, fake_db):
    first = seed_fragrance(fake_db)
    seed_fragrance(fake_db, name="Rose", slug="rose")

    missing = admin_client.post(
        "/admin/update-fragrance", json={"id": 999, "name": "X", "variants": [{"is_whole_bottle": True}]}
    )
    conflict = admin_client.post(
        "/admin/update-fragrance", json={"id": first["id"], "name": "Rose", "variants": [{"is_whole_bottle": True}]}
    )
    no_variants = admin_client.post("/admin/update-fragrance", json={"id": first["id"], "name": "X", "variants": []})

    assert missing.status_code == 404
    assert conflict.status_code == 409
    assert no_variants.status_code == 400


def test_toggle_fragrance(admin_client, fake_db):
    fragrance = seed_fragrance(fake_db)

    hidden = admin_client.post("/admin/toggle-fragrance", json={"id": fragrance["id"], "hidden": True})
    shown = admin_client.post("/admin/toggle-fragrance", json={"id": fragrance["id"], "hidden": False})
    invalid = admin_client.post("/admin/toggle-fragrance", json={"id": fragrance["id"], "hidden": "true"})
    missing = admin_client.post("/admin/toggle-fragrance", json={"id": 999, "hidden": True})

    assert hidden.get_json()["message"] == "Fragrance hidden from store successfully!"
    assert shown.get_json()["message"] == "Fragrance made visible in store successfully!"
    assert invalid.status_code == 400
    assert missing.status_code == 404


def test_delete_fragrance(admin_client, fake_db):
    fragrance = seed_fragrance(fake_db)

    response = admin_client.post("/admin/delete-fragrance", json={"id": fragrance["id"]})

    assert response.status_code == 200
    assert fake_db.tables["fragrances"] == []
    assert fake_db.tables["variants"] == []


def test_upload_image(admin_client, fake_db):
    not_png = admin_client.post(
        "/admin/upload-image",
        data={"slug": "oud", "image": (io.BytesIO(b"\xff\xd8\xff\xe0"), "oud.jpg", "image/jpeg")},
        content_type="multipart/form-data",
    )
    response = admin_client.post(
        "/admin/upload-image",
        data={"slug": "Oud Royal", "image": (io.BytesIO(PNG_BYTES), "oud.png", "image/png")},
        content_type="multipart/form-data",
    )

    assert not_png.status_code == 400
    data = response.get_json()["data"]
    assert data["filename"] == "oud-royal.png"
    assert data["path"] == "fragrance-images/oud-royal.png"
    assert data["publicUrl"].endswith("/storage/v1/object/public/fragrance-images/oud-royal.png")


def test_upload_image_size_limit(admin_client):
    too_big = PNG_BYTES + b"\x00" * (5 * 1024 * 1024)

    response = admin_client.post(
        "/admin/upload-image",
        data={"slug": "oud", "image": (io.BytesIO(too_big), "oud.png", "image/png")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "Image must be smaller than 5MB"


def test_delete_image(admin_client, fake_db):
    fake_db.objects[("fragrance-images", "oud.png")] = (PNG_BYTES, "image/png")

    invalid = admin_client.post("/admin/delete-image", json={"imagePath": "../etc/passwd"})
    deleted = admin_client.post("/admin/delete-image", json={"imagePath": "fragrance-images/oud.png"})
    already = admin_client.post("/admin/delete-image", json={"imagePath": "oud.png"})

    assert invalid.status_code == 400
    assert deleted.get_json()["message"] == "Image deleted successfully"
    assert already.get_json()["message"] == "Image already deleted"
    assert fake_db.objects == {}
