from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pymongo import DESCENDING

from .errors import NotFoundError, ValidationError
from .store import clean_payload, parse_object_id

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
FEATURED_SHOWCASE_LIMIT = 6
# BSON encodes skip and limit as signed 64-bit integers.
MAX_PAGE_OFFSET = 2**63 - 1

PRODUCT_SORT = [("createdAt", DESCENDING), ("_id", DESCENDING)]


def parse_page_param(raw_value, name: str, default: int) -> int:
    """Parse a non-negative integer query parameter.

    Missing or blank values fall back to ``default``; anything else that is
    not a whole, non-negative number is rejected.
    """
    if raw_value is None or str(raw_value).strip() == "":
        return default
    candidate = str(raw_value).strip()
    if not (candidate.isascii() and candidate.isdigit()):
        raise ValidationError(f"`{name}` must be a non-negative integer.")
    value = int(candidate)
    if value > MAX_PAGE_OFFSET:
        raise ValidationError(f"`{name}` is too large.")
    return value


class CatalogService:
    def __init__(self, store, logger=None, max_page_size: int = MAX_PAGE_SIZE):
        self.store = store
        self.logger = logger
        self.max_page_size = max_page_size

    def list_products(self, limit=None, skip=None) -> Tuple[List[Dict], int]:
        page_size = min(
            parse_page_param(limit, "limit", DEFAULT_PAGE_SIZE), self.max_page_size
        )
        offset = parse_page_param(skip, "skip", 0)

        total = self.store.products.count_documents({})
        if page_size == 0:
            return [], total

        cursor = (
            self.store.products.find()
            .sort(PRODUCT_SORT)
            .skip(offset)
            .limit(page_size)
        )
        return list(cursor), total

    def list_featured(self) -> List[Dict]:
        cursor = self.store.products.find().sort(PRODUCT_SORT).limit(
            FEATURED_SHOWCASE_LIMIT
        )
        return list(cursor)

    def get_product(self, product_id: str) -> Dict:
        object_id = parse_object_id(product_id, "product")
        product_document = self.store.products.find_one({"_id": object_id})
        if not product_document:
            raise NotFoundError("Product not found.")
        return product_document

    def create_product(self, payload, now: Optional[datetime] = None):
        product_document = clean_payload(payload, reserved=("show_on_home", "createdAt"))
        product_document["show_on_home"] = False
        product_document["createdAt"] = now or datetime.utcnow()

        result = self.store.products.insert_one(product_document)
        if self.logger:
            self.logger.info("Created product %s", result.inserted_id)
        return result
