"""Tests for the FastAPI app."""

from datetime import datetime, timedelta, timezone

from bson import ObjectId

import notifications


def add_to_cart(client, headers, product_id, quantity=1):
    response = client.post("/cart/add", json={"product_id": product_id, "quantity": quantity}, headers=headers)
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Shop API running"}

    def test_schema_lists_collections(self, client):
        models = client.get("/schema").json()["models"]
        assert "items" in models["order"]
        assert "total_refund_amount" in models["refund"]

    def test_missing_database_is_reported(self, client, monkeypatch):
        import main

        monkeypatch.setattr(main, "db", None)
        response = client.get("/products")
        assert response.status_code == 500
        assert response.json() == {"detail": "Database not configured", "error_type": "DatabaseNotConfiguredError"}
        assert client.get("/").status_code == 200
        assert client.get("/test").json()["connection_status"] == "Not Connected"


class TestAuth:
    def test_signup_assigns_role_by_domain(self, client):
        response = client.post("/auth/signup", json={
            "name": "Dee", "email": "Dee@Delivery.com", "password": "secret", "password_confirm": "secret",
        })
        assert response.status_code == 201
        data = response.json()
        assert data["user"]["role"] == "delivery"
        assert data["user"]["email"] == "dee@delivery.com"
        assert client.get("/users/me", headers={"Authorization": f"Bearer {data['token']}"}).status_code == 200

    def test_signup_rejects_duplicate_and_mismatch(self, client, make_user):
        make_user(email="alice@example.com")
        dup = client.post("/auth/signup", json={
            "name": "A", "email": "alice@example.com", "password": "secret", "password_confirm": "secret",
        })
        assert dup.status_code == 409
        mismatch = client.post("/auth/signup", json={
            "name": "B", "email": "b@example.com", "password": "secret", "password_confirm": "other",
        })
        assert mismatch.status_code == 400

    def test_signup_rejects_malformed_email(self, client, mongo_db):
        response = client.post("/auth/signup", json={
            "name": "X", "email": "@", "password": "secret", "password_confirm": "secret",
        })
        assert response.status_code == 422
        assert mongo_db["user"].count_documents({}) == 0

    def test_login_wrong_password(self, client, make_user):
        make_user()
        response = client.post("/auth/login", json={"email": "alice@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["error_type"] == "AuthenticationError"

    def test_login_merges_guest_cart(self, client, mongo_db, make_user, make_product):
        user_id, headers = make_user()
        a, b = make_product("A"), make_product("B")
        add_to_cart(client, headers, a, 1)
        add_to_cart(client, headers, b, 3)
        guest = add_to_cart(client, {}, a, 2)

        response = client.post("/auth/login", json={"email": "alice@example.com", "password": "secret"},
                               headers={"cartid": guest["_id"]})

        assert response.status_code == 200
        assert response.json()["merged_cart"] is True
        cart = client.get("/cart", headers=headers).json()
        assert {line["product_id"]: line["quantity"] for line in cart["items"]} == {a: 3, b: 3}
        assert mongo_db["cart"].find_one({"_id": ObjectId(guest["_id"])}) is None

    def test_login_with_unknown_guest_cart_still_succeeds(self, client, make_user):
        make_user()
        response = client.post("/auth/login", json={
            "email": "alice@example.com", "password": "secret", "cart_id": str(ObjectId()),
        })
        assert response.status_code == 200
        assert response.json()["merged_cart"] is False
        assert "password_hash" not in response.json()["user"]


class TestGuestCart:
    def test_guest_cart_roundtrip(self, client, make_product):
        pid = make_product()
        cart = add_to_cart(client, {}, pid, 2)
        fetched = client.get("/cart", headers={"cartid": cart["_id"]}).json()
        assert fetched["items"] == [{"product_id": pid, "quantity": 2}]

        removed = client.post("/cart/remove", json={"product_id": pid, "cart_id": cart["_id"]})
        assert removed.json()["items"] == []

    def test_guest_without_cart_id(self, client):
        assert client.get("/cart").status_code == 400


class TestCheckoutEndpoint:
    def test_checkout_writes_invoice_and_emails_it(self, client, mongo_db, make_user, make_product,
                                                  invoice_dir, sent_emails, stock_of):
        user_id, headers = make_user()
        pid = make_product("P1", price=10.0, stock=5)
        add_to_cart(client, headers, pid, 2)

        response = client.post("/orders/checkout", headers=headers)

        assert response.status_code == 200
        data = response.json()
        order_id = data["order"]["_id"]
        assert data["order"]["total"] == 20.0
        assert data["invoice_url"] == f"/invoices/invoice-{order_id}.pdf"
        assert stock_of(pid) == 3
        assert (invoice_dir / f"invoice-{order_id}.pdf").is_file()
        assert len(sent_emails) == 1
        assert sent_emails[0]["to"] == "alice@example.com"
        assert sent_emails[0]["attachments"][0][0] == f"invoice-{order_id}.pdf"
        assert mongo_db["notification"].count_documents({"user_id": user_id, "type": "order"}) == 1

        invoice = client.get(data["invoice_url"], headers=headers)
        assert invoice.status_code == 200
        assert invoice.content.startswith(b"%PDF")

    def test_invoice_url_is_404_when_rendering_failed(self, client, mongo_db, make_user, make_product,
                                                      monkeypatch, sent_emails):
        import invoices

        monkeypatch.setattr(invoices, "INVOICE_MAX_BYTES", 10)
        user_id, headers = make_user()
        add_to_cart(client, headers, make_product(), 1)

        response = client.post("/orders/checkout", headers=headers)

        assert response.status_code == 200
        assert client.get(response.json()["invoice_url"], headers=headers).status_code == 404
        assert sent_emails == []
        assert mongo_db["notification"].find_one({"user_id": user_id})["link"] is None

    def test_invoice_hidden_from_other_customers(self, client, make_user, make_product):
        _, headers = make_user()
        _, other = make_user(email="bob@example.com")
        add_to_cart(client, headers, make_product(), 1)
        url = client.post("/orders/checkout", headers=headers).json()["invoice_url"]
        assert client.get(url, headers=other).status_code == 403
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        assert client.get(url, headers=sales).status_code == 200

    def test_missing_invoice(self, client, make_user):
        _, headers = make_user()
        assert client.get(f"/invoices/invoice-{ObjectId()}.pdf", headers=headers).status_code == 404
        assert client.get("/invoices/notes.txt", headers=headers).status_code == 404

    def test_email_failure_does_not_fail_checkout(self, client, mongo_db, make_user, make_product, monkeypatch):
        def broken_send(*args, **kwargs):
            raise RuntimeError("smtp down")

        monkeypatch.setattr(notifications, "send_email", broken_send)
        _, headers = make_user()
        add_to_cart(client, headers, make_product(), 1)
        response = client.post("/orders/checkout", headers=headers)
        assert response.status_code == 200
        assert mongo_db["order"].count_documents({}) == 1

    def test_renderer_failure_does_not_fail_checkout(self, client, make_user, make_product, monkeypatch,
                                                     sent_emails):
        import invoices

        def broken_render(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(invoices, "write_invoice", broken_render)
        _, headers = make_user()
        add_to_cart(client, headers, make_product(), 1)
        response = client.post("/orders/checkout", headers=headers)
        assert response.status_code == 200
        assert sent_emails == []

    def test_empty_cart(self, client, make_user):
        _, headers = make_user()
        response = client.post("/orders/checkout", headers=headers)
        assert response.status_code == 400
        assert response.json()["error_type"] == "EmptyCartError"

    def test_stock_conflict(self, client, mongo_db, make_user, make_product, stock_of):
        _, headers = make_user()
        pid = make_product("P2", stock=1)
        add_to_cart(client, headers, pid, 10)
        response = client.post("/orders/checkout", headers=headers)
        assert response.status_code == 409
        assert response.json()["error_type"] == "StockConflictError"
        assert mongo_db["order"].count_documents({}) == 0
        assert stock_of(pid) == 1

    def test_incomplete_address(self, client, make_user, make_product):
        _, headers = make_user(address={"street": "1 Main St", "city": "", "postal_code": "12345"})
        add_to_cart(client, headers, make_product(), 1)
        assert client.post("/orders/checkout", headers=headers).status_code == 400

    def test_requires_authentication(self, client):
        assert client.post("/orders/checkout").status_code == 401
        assert client.post("/orders/checkout", headers={"Authorization": "Bearer forged.1.abc"}).status_code == 401


class TestOrderEndpoints:
    def test_status_update_requires_delivery_role(self, client, make_user, make_product, make_order):
        user_id, headers = make_user()
        order_id = make_order(user_id, make_product(), status="processing")
        body = {"status": "in-transit"}
        assert client.patch(f"/orders/{order_id}/status", json=body, headers=headers).status_code == 403

        _, courier = make_user(email="dan@delivery.com", role="delivery")
        response = client.patch(f"/orders/{order_id}/status", json=body, headers=courier)
        assert response.status_code == 200
        assert response.json()["status"] == "in-transit"

        assert client.post(f"/orders/{order_id}/cancel", headers=headers).status_code == 400

    def test_status_value_validated(self, client, make_user, make_product, make_order):
        user_id, _ = make_user()
        _, courier = make_user(email="dan@delivery.com", role="delivery")
        order_id = make_order(user_id, make_product(), status="processing")
        response = client.patch(f"/orders/{order_id}/status", json={"status": "cancelled"}, headers=courier)
        assert response.status_code == 422

    def test_cancel_by_other_user_forbidden(self, client, make_user, make_product, make_order):
        owner, _ = make_user()
        _, other = make_user(email="bob@example.com")
        order_id = make_order(owner, make_product(), status="processing")
        assert client.post(f"/orders/{order_id}/cancel", headers=other).status_code == 403

    def test_history_lists_own_orders(self, client, make_user, make_product, make_order):
        user_id, headers = make_user()
        other_id, _ = make_user(email="bob@example.com")
        pid = make_product()
        make_order(user_id, pid)
        make_order(other_id, pid)
        assert len(client.get("/orders/history", headers=headers).json()) == 1

    def test_refund_request(self, client, make_user, make_product, make_order):
        user_id, headers = make_user()
        pid = make_product()
        order_id = make_order(user_id, pid, quantity=2, price=10.0)
        response = client.post(f"/orders/{order_id}/refund", headers=headers,
                               json={"items": [{"product_id": pid, "quantity": 2, "reason": "wrong size"}]})
        assert response.status_code == 201
        assert response.json()["total_refund_amount"] == 20.0

    def test_refund_outside_window(self, client, make_user, make_product, make_order):
        user_id, headers = make_user()
        pid = make_product()
        order_id = make_order(user_id, pid, created_at=datetime.now(timezone.utc) - timedelta(days=40))
        response = client.post(f"/orders/{order_id}/refund", headers=headers,
                               json={"items": [{"product_id": pid, "quantity": 1}]})
        assert response.status_code == 400
        assert response.json()["error_type"] == "RefundNotAllowedError"

    def test_refund_approval_flow(self, client, mongo_db, make_user, make_product, make_order, stock_of):
        user_id, headers = make_user()
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        pid = make_product(stock=5)
        order_id = make_order(user_id, pid, quantity=2)
        refund = client.post(f"/orders/{order_id}/refund", headers=headers,
                             json={"items": [{"product_id": pid, "quantity": 1}]}).json()

        pending = client.get("/sales/refunds/pending", headers=sales).json()
        assert pending["results"] == 1

        assert client.post(f"/sales/refunds/{refund['_id']}/approve", headers=headers).status_code == 403
        assert client.post(f"/sales/refunds/{refund['_id']}/approve", headers=sales).status_code == 200
        assert stock_of(pid) == 6
        again = client.post(f"/sales/refunds/{refund['_id']}/approve", headers=sales)
        assert again.status_code == 409
        assert stock_of(pid) == 6
        assert mongo_db["notification"].count_documents({"user_id": user_id}) == 1


class TestSales:
    def test_discount_updates_price_and_notifies_wishlist(self, client, mongo_db, make_user, make_product,
                                                         sent_emails):
        _, headers = make_user()
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        pid = make_product(price=100.0)
        assert client.post("/wishlist", json={"product_id": pid}, headers=headers).status_code == 201

        response = client.patch(f"/sales/discount/{pid}", json={"discount_percent": 20}, headers=sales)

        assert response.status_code == 200
        data = response.json()
        assert data["product"]["discounted_price"] == 80.0
        assert data["notifications_scheduled"] is True
        assert mongo_db["notification"].count_documents({"type": "discount"}) == 1
        assert len(sent_emails) == 1

        # same price again does not notify twice
        client.patch(f"/sales/discount/{pid}", json={"discount_percent": 20}, headers=sales)
        assert len(sent_emails) == 1

    def test_discount_alerts_are_deferred(self, mongo_db, make_user, make_product, sent_emails):
        from fastapi import BackgroundTasks

        import main

        user_id, _ = make_user()
        sales_id, _ = make_user(email="sam@sales.com", role="sales-manager")
        pid = make_product(price=100.0)
        mongo_db["wishlist"].insert_one({"user_id": user_id, "product_id": pid, "notify_on_discount": True,
                                         "last_notified_price": 100.0})
        tasks = BackgroundTasks()
        sales_user = mongo_db["user"].find_one({"_id": ObjectId(sales_id)})

        result = main.set_discount(pid, main.DiscountBody(discount_percent=10), tasks, sales_user)

        assert result["notifications_scheduled"] is True
        assert sent_emails == []
        assert [task.func for task in tasks.tasks] == [notifications.notify_discount]

    def test_discount_out_of_range(self, client, make_user, make_product):
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        pid = make_product()
        assert client.patch(f"/sales/discount/{pid}", json={"discount_percent": 120}, headers=sales).status_code == 422

    def test_reports_skip_cancelled_orders(self, client, make_user, make_product, make_order):
        user_id, _ = make_user()
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        pid = make_product()
        day = datetime(2024, 3, 5, 12, tzinfo=timezone.utc)
        make_order(user_id, pid, quantity=2, price=10.0, created_at=day)
        make_order(user_id, pid, quantity=1, price=10.0, created_at=day, status="cancelled")

        params = {"start": "2024-03-01", "end": "2024-03-31"}
        revenue = client.get("/sales/revenue", params=params, headers=sales).json()
        assert revenue["report"] == [{"date": "2024-03-05", "revenue": 20.0}]
        profit = client.get("/sales/profit", params=params, headers=sales).json()
        assert profit["report"] == [{"date": "2024-03-05", "profit": 10.0}]
        listed = client.get("/sales/invoices", params=params, headers=sales).json()
        assert listed["results"] == 2

    def test_bad_report_dates(self, client, make_user):
        _, sales = make_user(email="sam@sales.com", role="sales-manager")
        response = client.get("/sales/revenue", params={"start": "03/01/2024", "end": "2024-03-31"}, headers=sales)
        assert response.status_code == 400


class TestReviews:
    def test_review_requires_delivery(self, client, make_user, make_product, make_order):
        user_id, headers = make_user()
        pid = make_product()
        body = {"rating": 4, "comment": "Great grinder"}
        assert client.post(f"/products/{pid}/reviews", json=body, headers=headers).status_code == 400

        make_order(user_id, pid, status="delivered")
        created = client.post(f"/products/{pid}/reviews", json=body, headers=headers)
        assert created.status_code == 201
        assert created.json()["approved"] is False

        listed = client.get(f"/products/{pid}/reviews").json()
        assert listed["reviews"][0]["comment"] == ""
        assert listed["average_rating"] == 4

        _, manager = make_user(email="pm@product.com", role="product-manager")
        review_id = created.json()["_id"]
        assert client.patch(f"/manager/reviews/{review_id}/approve", headers=manager).status_code == 200
        assert client.get(f"/products/{pid}/reviews").json()["reviews"][0]["comment"] == "Great grinder"


class TestProducts:
    def test_product_manager_creates_product(self, client, make_user):
        _, manager = make_user(email="pm@product.com", role="product-manager")
        body = {"name": "Burr Grinder", "model": "BG-1", "serial_number": "SN-1", "price": 50.0,
                "stock": 3, "discount": 10, "distributor_info": "Acme"}
        response = client.post("/products", json=body, headers=manager)
        assert response.status_code == 201
        product = client.get(f"/products/{response.json()['_id']}").json()
        assert product["discounted_price"] == 45.0
        assert client.post("/products", json=body, headers=manager).status_code == 409

    def test_customer_cannot_create_product(self, client, make_user):
        _, headers = make_user()
        response = client.post("/products", json={"name": "x", "model": "x", "serial_number": "x", "price": 1,
                                                  "stock": 1, "distributor_info": "x"}, headers=headers)
        assert response.status_code == 403

    def test_invalid_product_id(self, client):
        assert client.get("/products/not-an-id").status_code == 400
        assert client.get(f"/products/{ObjectId()}").status_code == 404
