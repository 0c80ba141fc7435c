from datetime import datetime
from unittest.mock import MagicMock

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from storefront.errors import ValidationError
from storefront.store import (
    DocumentStore,
    clean_payload,
    parse_object_id,
    serialize_document,
)


def test_liveness_text(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.get_data(as_text=True) == "storefront is running"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_database_errors_become_structured_responses(client, store):
    store.products.count_documents = MagicMock(side_effect=PyMongoError("down"))

    response = client.get("/all-products")

    assert response.status_code == 502
    assert response.get_json()["error"] == "external_service_error"


def test_serialize_document_handles_nested_values():
    object_id = ObjectId()
    document = {
        "_id": object_id,
        "createdAt": datetime(2024, 2, 3, 4, 5, 6),
        "items": [{"productId": object_id}],
    }

    assert serialize_document(document) == {
        "_id": str(object_id),
        "createdAt": "2024-02-03T04:05:06Z",
        "items": [{"productId": str(object_id)}],
    }


def test_parse_object_id_rejects_malformed_values():
    for value in ("abc", "", None, "z" * 24):
        with pytest.raises(ValidationError):
            parse_object_id(value)


def test_clean_payload_drops_client_id_and_reserved_keys():
    cleaned = clean_payload({"_id": "x", "name": "Chair", "createdAt": "now"}, reserved=("createdAt",))

    assert cleaned == {"name": "Chair"}


def test_clean_payload_rejects_dotted_keys():
    with pytest.raises(ValidationError):
        clean_payload({"a.b": 1})


def test_index_failures_are_logged_not_raised():
    database = mongomock.MongoClient()["storefront_indexes"]
    logger = MagicMock()
    store = DocumentStore(database, logger=logger)
    store.products.create_index = MagicMock(side_effect=PyMongoError("no permission"))

    store.ensure_indexes()

    logger.warning.assert_called_once()


def test_close_releases_owned_client():
    client = MagicMock()
    store = DocumentStore(mongomock.MongoClient()["storefront_close"], client=client)

    store.close()
    store.close()

    client.close.assert_called_once()
