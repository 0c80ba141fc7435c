import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import ExternalServiceError, NotFoundError, ValidationError
from .store import clean_payload, normalize_email, parse_object_id

SUSPENDED = "suspended"


def email_filter(email: str) -> Dict:
    """Match ``userEmail`` regardless of case, including legacy mixed-case rows."""
    return {"userEmail": re.compile(f"^{re.escape(email)}$", re.IGNORECASE)}


def require_text(payload: Dict, field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"`{field}` is required.")
    return value.strip()


class UserService:
    def __init__(self, store, logger=None):
        self.store = store
        self.logger = logger

    def list_users(self) -> List[Dict]:
        return list(self.store.users.find())

    def get_role(self, email: str) -> Optional[str]:
        user_document = self.store.users.find_one(email_filter(normalize_email(email)))
        if not user_document:
            raise NotFoundError("User not found.")
        return user_document.get("role")

    def create_user(self, payload) -> Tuple[bool, Optional[object]]:
        """Insert the user unless one with the same email already exists.

        Returns ``(created, inserted_id)``; ``inserted_id`` is None when the
        user was already present.
        """
        user_document = clean_payload(payload)
        email = normalize_email(user_document.get("userEmail"))
        if not email:
            raise ValidationError("`userEmail` is required.")
        user_document["userEmail"] = email

        if self.store.users.find_one(email_filter(email)):
            return False, None

        try:
            result = self.store.users.insert_one(user_document)
        except DuplicateKeyError:
            return False, None
        return True, result.inserted_id

    def update_role(self, user_id: str, payload):
        object_id = parse_object_id(user_id, "user")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")
        role = require_text(payload, "role")
        status = require_text(payload, "status")

        result = self.store.users.update_one(
            {"_id": object_id}, {"$set": {"role": role, "status": status}}
        )
        if result.matched_count == 0:
            raise NotFoundError("User not found.")
        return result

    def suspend_user(self, user_id: str, reason, now: Optional[datetime] = None):
        """Mark the user suspended and upsert their suspension record.

        The two writes hit different collections. When the record write
        fails the user's previous role and status are restored.
        """
        object_id = parse_object_id(user_id, "user")
        suspension_document = clean_payload(
            {} if reason is None else reason, reserved=("userId", "suspendedAt")
        )

        user_document = self.store.users.find_one({"_id": object_id})
        if not user_document:
            raise NotFoundError("User not found.")
        previous = {
            "role": user_document.get("role"),
            "status": user_document.get("status"),
        }

        self.store.users.update_one(
            {"_id": object_id}, {"$set": {"role": SUSPENDED, "status": SUSPENDED}}
        )

        user_key = str(object_id)
        suspension_document["userId"] = user_key
        suspension_document["suspendedAt"] = now or datetime.utcnow()
        try:
            result = self._upsert_suspension(user_key, suspension_document)
        except PyMongoError as exc:
            self._restore_user(object_id, previous, exc)
            raise ExternalServiceError(
                "Unable to record the suspension; the user was not suspended."
            ) from exc

        if self.logger:
            self.logger.info("Suspended user %s", user_key)
        return result

    def _upsert_suspension(self, user_key: str, suspension_document: Dict):
        # A concurrent upsert for the same user can win the unique userId
        # index; the retry then matches that record and updates it.
        try:
            return self.store.suspended.update_one(
                {"userId": user_key}, {"$set": suspension_document}, upsert=True
            )
        except DuplicateKeyError:
            return self.store.suspended.update_one(
                {"userId": user_key}, {"$set": suspension_document}, upsert=True
            )

    def _restore_user(self, object_id, previous: Dict, cause: Exception):
        if self.logger:
            self.logger.error(
                "Suspension record for user %s failed (%s); restoring role", object_id, cause
            )
        update: Dict[str, Dict] = {}
        restored = {key: value for key, value in previous.items() if value is not None}
        cleared = {key: "" for key, value in previous.items() if value is None}
        if restored:
            update["$set"] = restored
        if cleared:
            update["$unset"] = cleared
        try:
            self.store.users.update_one({"_id": object_id}, update)
        except PyMongoError as exc:
            if self.logger:
                self.logger.error(
                    "Could not restore role for user %s after failed suspension: %s",
                    object_id,
                    exc,
                )
