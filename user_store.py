"""User record storage.

The OTP flows only need a handful of document operations: fetch by id,
equality query, merge, update and the two write markers (delete a field,
stamp the server time). ``UserStore`` is that surface; Firestore backs it
in production and ``MemoryUserStore`` backs tests and local runs.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

logger = logging.getLogger(__name__)


@dataclass
class UserDocument:
    """A user record as read from the store"""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class UserStore(ABC):
    """Document operations used by the OTP flows"""

    # Write markers understood by merge_fields/update_fields
    delete_field: Any = None
    server_timestamp: Any = None

    @abstractmethod
    def get_by_id(self, doc_id: str) -> Optional[UserDocument]:
        ...

    @abstractmethod
    def query_equals(self, field_name: str, value: Any, limit: int = 1) -> List[UserDocument]:
        ...

    @abstractmethod
    def merge_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        ...


class FirestoreUserStore(UserStore):
    def __init__(self, client, collection: str = "users"):
        self.client = client
        self.collection_name = collection
        self.delete_field = firestore.DELETE_FIELD
        self.server_timestamp = firestore.SERVER_TIMESTAMP

    @classmethod
    def from_app(cls, app=None, collection: str = "users") -> "FirestoreUserStore":
        return cls(firestore.client(app=app), collection)

    @property
    def collection(self):
        return self.client.collection(self.collection_name)

    def get_by_id(self, doc_id: str) -> Optional[UserDocument]:
        snap = self.collection.document(doc_id).get()
        if not snap.exists:
            return None
        return UserDocument(id=snap.id, data=snap.to_dict() or {})

    def query_equals(self, field_name: str, value: Any, limit: int = 1) -> List[UserDocument]:
        query = self.collection.where(filter=FieldFilter(field_name, "==", value)).limit(limit)
        return [UserDocument(id=snap.id, data=snap.to_dict() or {}) for snap in query.stream()]

    def merge_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self.collection.document(doc_id).set(fields, merge=True)

    def update_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self.collection.document(doc_id).update(fields)


class _Marker:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


class MemoryUserStore(UserStore):
    """Dict-backed store with Firestore write semantics.

    ``update_fields`` on a missing document raises ``KeyError``, the same way
    a Firestore update fails when the document does not exist.
    """

    delete_field = _Marker("DELETE_FIELD")
    server_timestamp = _Marker("SERVER_TIMESTAMP")

    def __init__(
        self,
        documents: Optional[Dict[str, Dict[str, Any]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.documents: Dict[str, Dict[str, Any]] = copy.deepcopy(documents or {})
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_json_file(cls, path: str) -> "MemoryUserStore":
        with open(path, "r", encoding="utf-8") as f:
            documents = json.load(f)
        logger.info(f"Loaded {len(documents)} user records from {path}")
        return cls(documents)

    def get_by_id(self, doc_id: str) -> Optional[UserDocument]:
        if doc_id not in self.documents:
            return None
        return UserDocument(id=doc_id, data=copy.deepcopy(self.documents[doc_id]))

    def query_equals(self, field_name: str, value: Any, limit: int = 1) -> List[UserDocument]:
        matches = []
        for doc_id, data in self.documents.items():
            if field_name in data and data[field_name] == value:
                matches.append(UserDocument(id=doc_id, data=copy.deepcopy(data)))
                if len(matches) >= limit:
                    break
        return matches

    def merge_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self._apply(self.documents.setdefault(doc_id, {}), fields)

    def update_fields(self, doc_id: str, fields: Dict[str, Any]) -> None:
        if doc_id not in self.documents:
            raise KeyError(f"No document to update: {doc_id}")
        self._apply(self.documents[doc_id], fields)

    def _apply(self, data: Dict[str, Any], fields: Dict[str, Any]) -> None:
        for key, value in fields.items():
            if value is self.delete_field:
                data.pop(key, None)
            elif value is self.server_timestamp:
                data[key] = self.clock()
            else:
                data[key] = value
