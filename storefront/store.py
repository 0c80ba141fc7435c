"""MongoDB access for the storefront: collections, ids and JSON shaping."""

from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from .errors import ValidationError

USERS_COLLECTION = "users"
PRODUCTS_COLLECTION = "products"
ORDERS_COLLECTION = "orderedProducts"
SUSPENDED_COLLECTION = "suspended"


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def parse_object_id(value, label: str = "record") -> ObjectId:
    object_id = normalize_object_id_value(value)
    if object_id is None:
        raise ValidationError(f"Invalid {label} identifier.")
    return object_id


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def clean_payload(payload, reserved=()) -> Dict[str, object]:
    """Copy a client JSON object so it is safe to store as a document.

    Keys in ``reserved`` and the client ``_id`` are dropped; operator and
    dotted keys are rejected.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    cleaned: Dict[str, object] = {}
    for key, value in payload.items():
        key = str(key)
        if key == "_id" or key in reserved:
            continue
        if key.startswith("$") or "." in key:
            raise ValidationError(f"Field name '{key}' is not allowed.")
        cleaned[key] = value
    return cleaned


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {str(key): serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document) -> Dict[str, object]:
    if not document:
        return {}
    return serialize_value(dict(document))


def serialize_insert_result(result) -> Dict[str, object]:
    return {
        "acknowledged": bool(result.acknowledged),
        "insertedId": str(result.inserted_id),
    }


def serialize_update_result(result) -> Dict[str, object]:
    return {
        "acknowledged": bool(result.acknowledged),
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": str(result.upserted_id) if result.upserted_id else None,
    }


class DocumentStore:
    """Holds the four storefront collections of one database.

    ``client`` is closed by :meth:`close` only when it was handed in, so a
    store built on a shared database does not tear the connection down.
    """

    def __init__(self, database, client=None, logger=None):
        self.database = database
        self.client = client
        self.logger = logger
        self.users = database[USERS_COLLECTION]
        self.products = database[PRODUCTS_COLLECTION]
        self.orders = database[ORDERS_COLLECTION]
        self.suspended = database[SUSPENDED_COLLECTION]

    def connect(self) -> bool:
        try:
            self.database.client.admin.command("ping")
        except PyMongoError as exc:
            self._warn("Unable to reach MongoDB: %s", exc)
            return False
        if self.logger:
            self.logger.info("Pinged MongoDB deployment for database %s", self.database.name)
        return True

    def ensure_indexes(self):
        index_specs = [
            (self.products, [("createdAt", DESCENDING)], {}),
            (self.orders, [("email", ASCENDING), ("orderedAt", DESCENDING)], {}),
            (self.users, [("userEmail", ASCENDING)], {"unique": True}),
            (self.suspended, [("userId", ASCENDING)], {"unique": True}),
        ]
        for collection, keys, options in index_specs:
            try:
                collection.create_index(keys, **options)
            except PyMongoError as exc:
                self._warn("Unable to ensure index on %s: %s", collection.name, exc)

    def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None

    def _warn(self, message, *args):
        if self.logger:
            self.logger.warning(message, *args)
