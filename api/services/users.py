# SPDX-License-Identifier: Apache-2.0

"""
User repository.

Accounts are keyed by verified phone. The phone is unique: the MongoDB
backend relies on the `users.phone` unique index, so two concurrent first
logins for the same phone produce exactly one account and one
UserCreationConflict.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from opentelemetry import trace

from models.base import utc_now
from models.entities import UserProfile
from services.mongodb import MongoDBService, USERS_COLLECTION

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class UserCreationConflict(Exception):
    """Raised when an account for the phone was created concurrently."""

    def __init__(self, phone: str):
        super().__init__("An account for this phone already exists")
        self.phone = phone


class UserNotFound(Exception):
    """Raised when an update targets a missing user."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class UserRepository(ABC):
    """Persistence of user profiles."""

    @abstractmethod
    def find_by_phone(self, phone: str) -> Optional[UserProfile]:
        """Find a user by normalized phone."""

    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[UserProfile]:
        """Find a user by ID."""

    @abstractmethod
    def create_with_phone(self, phone: str, verified_at: Optional[datetime] = None) -> UserProfile:
        """
        Create an account for a phone.

        Raises:
            UserCreationConflict: If an account for the phone already exists
        """

    @abstractmethod
    def mark_phone_verified(self, user_id: str, verified_at: datetime) -> UserProfile:
        """Record a successful phone verification and login."""

    @abstractmethod
    def mark_profile_completed(self, user_id: str, name: str, terms_accepted_at: datetime,
                               neighborhood_id: Optional[str] = None) -> UserProfile:
        """Store onboarding data and flag the profile complete."""


class InMemoryUserRepository(UserRepository):
    """Process-local repository for development and tests."""

    def __init__(self):
        self._users: Dict[str, UserProfile] = {}
        self._by_phone: Dict[str, str] = {}
        self._lock = threading.Lock()

    def find_by_phone(self, phone: str) -> Optional[UserProfile]:
        user_id = self._by_phone.get(phone)
        return self._users.get(user_id) if user_id else None

    def find_by_id(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(user_id)

    def create_with_phone(self, phone: str, verified_at: Optional[datetime] = None) -> UserProfile:
        with self._lock:
            if phone in self._by_phone:
                raise UserCreationConflict(phone)
            user = UserProfile(phone=phone, phone_verified_at=verified_at, last_login=verified_at)
            self._users[user.id] = user
            self._by_phone[phone] = user.id
        return user

    def _update(self, user_id: str, **fields: Any) -> UserProfile:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFound(user_id)
            updated = user.model_copy(update={**fields, "updated_at": utc_now()})
            self._users[user_id] = updated
        return updated

    def mark_phone_verified(self, user_id: str, verified_at: datetime) -> UserProfile:
        return self._update(user_id, phone_verified_at=verified_at, last_login=verified_at)

    def mark_profile_completed(self, user_id: str, name: str, terms_accepted_at: datetime,
                               neighborhood_id: Optional[str] = None) -> UserProfile:
        return self._update(
            user_id,
            name=name,
            terms_accepted_at=terms_accepted_at,
            neighborhood_id=neighborhood_id,
            profile_completed=True
        )

    def __len__(self) -> int:
        return len(self._users)


class MongoUserRepository(UserRepository):
    """MongoDB-backed repository on the `users` collection."""

    _FIELD_MAP = {
        "phone": "phone",
        "name": "name",
        "profile_completed": "profileCompleted",
        "phone_verified_at": "phoneVerifiedAt",
        "terms_accepted_at": "termsAcceptedAt",
        "neighborhood_id": "neighborhoodId",
        "last_login": "lastLogin",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
        "schema_version": "schemaVersion",
    }

    def __init__(self, mongodb_service: MongoDBService):
        self.mongodb = mongodb_service

    @property
    def collection(self):
        return self.mongodb.get_collection(USERS_COLLECTION)

    def _to_document(self, user: UserProfile) -> Dict[str, Any]:
        document = {"_id": ObjectId(user.id)}
        for field, key in self._FIELD_MAP.items():
            document[key] = getattr(user, field)
        return document

    def _from_document(self, document: Optional[Dict[str, Any]]) -> Optional[UserProfile]:
        if document is None:
            return None
        data = {field: document.get(key) for field, key in self._FIELD_MAP.items() if key in document}
        data["id"] = str(document["_id"])
        return UserProfile(**data)

    def find_by_phone(self, phone: str) -> Optional[UserProfile]:
        with tracer.start_as_current_span("users.find_by_phone"):
            return self._from_document(self.collection.find_one({"phone": phone}))

    def find_by_id(self, user_id: str) -> Optional[UserProfile]:
        try:
            object_id = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        return self._from_document(self.collection.find_one({"_id": object_id}))

    def create_with_phone(self, phone: str, verified_at: Optional[datetime] = None) -> UserProfile:
        with tracer.start_as_current_span("users.create_with_phone") as span:
            user = UserProfile(phone=phone, phone_verified_at=verified_at, last_login=verified_at)
            try:
                self.collection.insert_one(self._to_document(user))
            except DuplicateKeyError:
                span.set_attribute("users.conflict", True)
                logger.warning("Concurrent account creation for phone", extra={"user_id": user.id})
                raise UserCreationConflict(phone)

            span.set_attribute("user.id", user.id)
            logger.info(f"Created user account: {user.id}")
            return user

    def _update(self, user_id: str, **fields: Any) -> UserProfile:
        updates = {self._FIELD_MAP[field]: value for field, value in fields.items()}
        updates["updatedAt"] = utc_now()
        try:
            object_id = ObjectId(user_id)
        except (InvalidId, TypeError):
            raise UserNotFound(user_id)
        document = self.collection.find_one_and_update(
            {"_id": object_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        if document is None:
            raise UserNotFound(user_id)
        return self._from_document(document)

    def mark_phone_verified(self, user_id: str, verified_at: datetime) -> UserProfile:
        return self._update(user_id, phone_verified_at=verified_at, last_login=verified_at)

    def mark_profile_completed(self, user_id: str, name: str, terms_accepted_at: datetime,
                               neighborhood_id: Optional[str] = None) -> UserProfile:
        return self._update(
            user_id,
            name=name,
            terms_accepted_at=terms_accepted_at,
            neighborhood_id=neighborhood_id,
            profile_completed=True
        )
