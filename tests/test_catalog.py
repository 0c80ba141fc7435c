from datetime import datetime, timedelta

from bson import ObjectId


def seed_products(store, count):
    base = datetime(2024, 1, 1)
    for index in range(count):
        store.products.insert_one(
            {
                "name": f"Product {index}",
                "price": 10 + index,
                "show_on_home": False,
                "createdAt": base + timedelta(minutes=index),
            }
        )


class TestCreateProduct:
    def test_server_stamps_fields(self, client, store):
        response = client.post("/products", json={"name": "Chair", "price": 10})

        assert response.status_code == 201
        data = response.get_json()
        assert data["acknowledged"] is True

        stored = store.products.find_one({"_id": ObjectId(data["insertedId"])})
        assert stored["name"] == "Chair"
        assert stored["show_on_home"] is False
        assert isinstance(stored["createdAt"], datetime)

    def test_client_cannot_override_server_fields(self, client, store):
        response = client.post(
            "/products",
            json={"name": "Lamp", "show_on_home": True, "createdAt": "2001-01-01"},
        )

        stored = store.products.find_one({"_id": ObjectId(response.get_json()["insertedId"])})
        assert stored["show_on_home"] is False
        assert isinstance(stored["createdAt"], datetime)

    def test_newest_product_leads_featured_list(self, client, store):
        seed_products(store, 8)

        client.post("/products", json={"name": "Chair", "price": 10})
        response = client.get("/all-products-limited")

        assert response.status_code == 200
        products = response.get_json()
        assert len(products) == 6
        assert products[0]["name"] == "Chair"

    def test_rejects_non_object_body(self, client):
        response = client.post("/products", json=["not", "an", "object"])

        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"

    def test_rejects_operator_keys(self, client):
        response = client.post("/products", json={"$where": "1"})

        assert response.status_code == 400


class TestListProducts:
    def test_page_is_sorted_and_counted(self, client, store):
        seed_products(store, 15)

        response = client.get("/all-products?limit=5&skip=5")

        assert response.status_code == 200
        data = response.get_json()
        assert data["totalProducts"] == 15
        assert [item["name"] for item in data["result"]] == [
            f"Product {index}" for index in range(9, 4, -1)
        ]

    def test_total_ignores_limit_and_skip(self, client, store):
        seed_products(store, 3)

        data = client.get("/all-products?limit=1&skip=2").get_json()

        assert len(data["result"]) == 1
        assert data["totalProducts"] == 3

    def test_defaults_apply_when_params_missing(self, client, store):
        seed_products(store, 12)

        data = client.get("/all-products").get_json()

        assert len(data["result"]) == 10
        assert data["result"][0]["name"] == "Product 11"

    def test_zero_limit_returns_empty_page(self, client, store):
        seed_products(store, 4)

        data = client.get("/all-products?limit=0").get_json()

        assert data["result"] == []
        assert data["totalProducts"] == 4

    def test_limit_is_clamped(self, app, store):
        seed_products(store, 5)
        catalog = app.extensions["storefront"]["catalog"]
        catalog.max_page_size = 2

        products, total = catalog.list_products("50", "0")

        assert len(products) == 2
        assert total == 5

    def test_garbage_params_are_rejected(self, client):
        for query in (
            "limit=abc",
            "limit=-1",
            "skip=1.5",
            "skip=ten",
            "limit=%C2%B2",
            f"skip={2**63}",
        ):
            response = client.get(f"/all-products?{query}")
            assert response.status_code == 400, query
            assert response.get_json()["error"] == "validation_error"


class TestProductDetails:
    def test_returns_product(self, client, store):
        product_id = store.products.insert_one(
            {"name": "Desk", "createdAt": datetime(2024, 5, 1)}
        ).inserted_id

        response = client.get(f"/productDetails/{product_id}")

        assert response.status_code == 200
        data = response.get_json()
        assert data["_id"] == str(product_id)
        assert data["createdAt"] == "2024-05-01T00:00:00Z"

    def test_missing_product_is_not_found(self, client):
        response = client.get(f"/productDetails/{ObjectId()}")

        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_malformed_id_is_rejected(self, client):
        response = client.get("/productDetails/not-an-id")

        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"
