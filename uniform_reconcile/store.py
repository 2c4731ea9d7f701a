"""
Document store access for the reconciliation commands.

Everything else in the package talks to a ``DocumentStore``. ``MongoStore``
is the production adapter; ``ReadOnlyStore`` wraps any store and refuses
writes, which is how the verifier and the discovery scan guarantee they
never mutate data.
"""

import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId
from pymongo import MongoClient, ReadPreference, UpdateOne
from pymongo.errors import (
    BulkWriteError,
    ConfigurationError,
    ConnectionFailure,
    PyMongoError,
)

logger = logging.getLogger(__name__)

HEX_ID_RE = re.compile(r"[0-9a-fA-F]{24}")

Filter = Dict[str, Any]
UpdateOp = Tuple[Filter, Dict[str, Any]]


class StoreError(Exception):
    """Base class for store failures."""


class StoreConnectionError(StoreError):
    """The store is unreachable or the connection was lost."""


class StoreWriteError(StoreError):
    """The store rejected a write.

    ``modified`` is the number of documents the failed call still managed
    to change (unordered bulk writes apply what they can).
    """

    def __init__(self, message: str, modified: int = 0):
        super().__init__(message)
        self.modified = modified


class ReadOnlyStoreError(RuntimeError):
    """A write was attempted through a read-only view of the store."""


def is_hex_id(value: Any) -> bool:
    """True for strings of exactly 24 hexadecimal characters."""
    return isinstance(value, str) and HEX_ID_RE.fullmatch(value) is not None


class DocumentStore:
    """Interface shared by the MongoDB adapter and test fakes."""

    read_only = False

    def connect(self) -> "DocumentStore":
        return self

    def close(self) -> None:
        pass

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # Identifier handling

    def is_internal_id(self, value: Any) -> bool:
        raise NotImplementedError

    def to_internal_id(self, value: Any) -> Optional[Any]:
        """Convert a hex string to the internal id type, None if it cannot be."""
        raise NotImplementedError

    # Reads

    def list_collections(self) -> List[str]:
        raise NotImplementedError

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        projection: Optional[Dict[str, int]] = None,
    ) -> Iterator[Dict[str, Any]]:
        raise NotImplementedError

    def find_one(self, collection: str, filter: Filter) -> Optional[Dict[str, Any]]:
        for document in self.find(collection, filter):
            return document
        return None

    # Writes

    def bulk_update(self, collection: str, updates: List[UpdateOp]) -> Dict[str, int]:
        """Apply ``(filter, fields)`` pairs as unordered single-document $set updates.

        Returns ``{"matched": n, "modified": n}``. A filter that no longer
        matches (the document changed since it was read) is not an error.
        """
        raise NotImplementedError

    def update_one(self, collection: str, filter: Filter, fields: Dict[str, Any]) -> int:
        """$set ``fields`` on the first match; returns the matched count (0 or 1)."""
        raise NotImplementedError

    def delete_one(self, collection: str, filter: Filter) -> int:
        raise NotImplementedError

    def insert_one(self, collection: str, document: Dict[str, Any]) -> Any:
        raise NotImplementedError


class MongoStore(DocumentStore):
    """pymongo-backed store. Call ``connect()`` (or use ``with``) before use."""

    def __init__(
        self,
        uri: str,
        database: Optional[str] = None,
        read_only: bool = False,
        server_selection_timeout_ms: int = 10000,
    ):
        self.uri = uri
        self.database_name = database
        self.read_only = read_only
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client = None
        self._db = None

    def connect(self) -> "MongoStore":
        if self._db is not None:
            return self
        try:
            client = MongoClient(self.uri, serverSelectionTimeoutMS=self.server_selection_timeout_ms)
            client.admin.command("ping")
        except ConfigurationError as exc:
            raise StoreConnectionError(f"Invalid MongoDB configuration: {exc}") from exc
        except PyMongoError as exc:
            raise StoreConnectionError(f"Could not connect to MongoDB: {exc}") from exc

        # Verification and scans may be pointed at a replica set, prefer secondaries there
        read_preference = ReadPreference.SECONDARY_PREFERRED if self.read_only else None
        try:
            if self.database_name:
                db = client.get_database(self.database_name, read_preference=read_preference)
            else:
                db = client.get_default_database(read_preference=read_preference)
        except ConfigurationError as exc:
            client.close()
            raise StoreConnectionError(
                "No database selected: put it in MONGODB_URI or set MONGODB_DATABASE"
            ) from exc

        self._client = client
        self._db = db
        logger.info("Connected to MongoDB database %s", db.name)
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            logger.info("MongoDB connection closed")
        self._client = None
        self._db = None

    @property
    def db(self):
        if self._db is None:
            raise StoreConnectionError("MongoStore is not connected")
        return self._db

    def is_internal_id(self, value: Any) -> bool:
        return isinstance(value, ObjectId)

    def to_internal_id(self, value: Any) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        if is_hex_id(value):
            return ObjectId(value)
        return None

    def list_collections(self) -> List[str]:
        try:
            return sorted(self.db.list_collection_names())
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc

    def count(self, collection: str, filter: Optional[Filter] = None) -> int:
        try:
            return self.db[collection].count_documents(filter or {})
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc

    def find(self, collection, filter=None, projection=None):
        try:
            for document in self.db[collection].find(filter or {}, projection):
                yield document
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc

    def find_one(self, collection, filter):
        try:
            return self.db[collection].find_one(filter)
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc

    def bulk_update(self, collection, updates):
        if self.read_only:
            raise ReadOnlyStoreError("bulk_update on a read-only MongoStore")
        if not updates:
            return {"matched": 0, "modified": 0}
        requests = [UpdateOne(filter, {"$set": fields}) for filter, fields in updates]
        try:
            result = self.db[collection].bulk_write(requests, ordered=False)
        except BulkWriteError as exc:
            details = exc.details or {}
            errors = details.get("writeErrors") or []
            message = errors[0].get("errmsg") if errors else str(exc)
            raise StoreWriteError(
                f"{len(errors)} write error(s) in {collection}: {message}",
                modified=details.get("nModified", 0),
            ) from exc
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreWriteError(str(exc)) from exc
        return {"matched": result.matched_count, "modified": result.modified_count}

    def update_one(self, collection, filter, fields):
        if self.read_only:
            raise ReadOnlyStoreError("update_one on a read-only MongoStore")
        try:
            return self.db[collection].update_one(filter, {"$set": fields}).matched_count
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreWriteError(str(exc)) from exc

    def delete_one(self, collection, filter):
        if self.read_only:
            raise ReadOnlyStoreError("delete_one on a read-only MongoStore")
        try:
            return self.db[collection].delete_one(filter).deleted_count
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreWriteError(str(exc)) from exc

    def insert_one(self, collection, document):
        if self.read_only:
            raise ReadOnlyStoreError("insert_one on a read-only MongoStore")
        try:
            return self.db[collection].insert_one(document).inserted_id
        except ConnectionFailure as exc:
            raise StoreConnectionError(str(exc)) from exc
        except PyMongoError as exc:
            raise StoreWriteError(str(exc)) from exc


class ReadOnlyStore(DocumentStore):
    """Delegates reads to ``inner`` and raises ReadOnlyStoreError on any write."""

    read_only = True

    def __init__(self, inner: DocumentStore):
        self.inner = inner

    def connect(self):
        self.inner.connect()
        return self

    def close(self):
        self.inner.close()

    def is_internal_id(self, value):
        return self.inner.is_internal_id(value)

    def to_internal_id(self, value):
        return self.inner.to_internal_id(value)

    def list_collections(self):
        return self.inner.list_collections()

    def count(self, collection, filter=None):
        return self.inner.count(collection, filter)

    def find(self, collection, filter=None, projection=None):
        return self.inner.find(collection, filter, projection)

    def find_one(self, collection, filter):
        return self.inner.find_one(collection, filter)

    def _refuse(self, operation: str, collection: str):
        raise ReadOnlyStoreError(f"{operation} on {collection} refused: store is read-only")

    def bulk_update(self, collection, updates):
        self._refuse("bulk_update", collection)

    def update_one(self, collection, filter, fields):
        self._refuse("update_one", collection)

    def delete_one(self, collection, filter):
        self._refuse("delete_one", collection)

    def insert_one(self, collection, document):
        self._refuse("insert_one", collection)
